from __future__ import annotations

import logging
from functools import wraps
from typing import Callable, Optional

from flask import (
    Blueprint,
    abort,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask_login import login_required, login_user, logout_user

from config.settings import get_settings
from models import (
    DatabaseError,
    IntegrityError,
    count_clues,
    count_mysteries,
    count_search_clues,
    count_search_mysteries,
    count_search_mysteries_by_clue,
    create_clue,
    create_user,
    delete_clue,
    delete_mystery,
    get_clue,
    get_mystery_with_clues,
    get_user_by_username,
    list_all_clues,
    list_clues,
    list_mysteries,
    rename_clue,
    search_clues,
    search_mysteries,
    search_mysteries_by_clue,
    username_exists,
)

from .context import current_context
from .errors import NotFoundError, PageError, ReconcileError, ValidationError
from .security import grants_admin, hash_password, verify_password
from .services.associations import (
    add_clue,
    create_mystery_with_clues,
    is_checked,
    parse_clue_form,
    remove_clues,
    session_additions,
    update_mystery_with_clues,
)
from .services.minigame import HackingGame, mix
from .services.pagination import PageWindow, paginate, parse_page

logger = logging.getLogger(__name__)

bp = Blueprint("core", __name__)
minigames_bp = Blueprint("minigames", __name__, url_prefix="/minigames")

SEARCH_TYPES = {
    "mysteries": (search_mysteries, count_search_mysteries),
    "clues": (search_clues, count_search_clues),
    "mysteriesByClue": (search_mysteries_by_clue, count_search_mysteries_by_clue),
}


def admin_required(view: Callable) -> Callable:
    """Signed-in users without the admin flag get a 403."""

    @wraps(view)
    @login_required
    def wrapped(*args, **kwargs):
        if not current_context().is_admin:
            abort(403, description="You do not have permission to access the Manage Clues page.")
        return view(*args, **kwargs)

    return wrapped


def _parse_id_or_none(value: object) -> Optional[int]:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _require_id(value: object, label: str) -> int:
    parsed = _parse_id_or_none(value)
    if parsed is None:
        abort(400, description=f"Invalid {label} ID. Please provide a valid numeric {label} ID.")
    return parsed


def _page_window(total_items: int, per_page: int) -> PageWindow:
    try:
        page = parse_page(request.args.get("page"))
        return paginate(total_items, per_page, page)
    except PageError as exc:
        abort(400, description=str(exc))


def _flash_warnings(warnings: list[str]) -> None:
    for message in dict.fromkeys(warnings):
        flash(message, "error")


def _form_clue_selection(entries) -> dict[str, dict[str, object]]:
    return {
        str(entry.clue_id): {"checked": is_checked(entry.checked), "quantity": str(entry.quantity or "")}
        for entry in entries
    }


@bp.get("/health")
def health():
    return jsonify({"status": "ok", "service": "cluebook"}), 200


@bp.get("/")
def index():
    ctx = current_context()
    if not ctx.signed_in:
        return render_template("index.html", prompt_login=True, mysteries=[], window=None)

    settings = get_settings()
    try:
        total = count_mysteries()
        window = _page_window(total, settings.MYSTERIES_PER_PAGE)
        mysteries = list_mysteries(limit=window.limit, offset=window.offset)
    except DatabaseError:
        logger.exception("Failed to fetch mysteries")
        abort(500, description="An unexpected error occurred while fetching mysteries.")

    return render_template("index.html", prompt_login=False, mysteries=mysteries, window=window)


@bp.get("/search")
@login_required
def search():
    search_type = (request.args.get("searchType") or "mysteries").strip()
    query = request.args.get("query", "")
    if search_type not in SEARCH_TYPES:
        flash("Invalid search type selected.", "error")
        return redirect(url_for("core.index"))

    fetch, count = SEARCH_TYPES[search_type]
    settings = get_settings()
    try:
        total = count(query)
        window = _page_window(total, settings.MYSTERIES_PER_PAGE)
        results = fetch(query, limit=window.limit, offset=window.offset)
    except DatabaseError:
        logger.exception("Search failed for %s=%r", search_type, query)
        abort(500, description="Failed to execute search.")

    return render_template(
        "search_results.html",
        search_type=search_type,
        query=query,
        results=results,
        window=window,
    )


@bp.route("/login", methods=["GET"])
def login():
    if current_context().signed_in:
        return redirect(url_for("core.index"))
    return render_template("login.html")


@bp.post("/login")
def login_submit():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form
    username = str(payload.get("username", "")).strip()
    password = payload.get("password", "")
    if not isinstance(password, str):
        password = ""

    if not username or not password:
        return jsonify({"error": "Username and password are required."}), 400

    try:
        user = get_user_by_username(username)
    except DatabaseError:
        logger.exception("Login lookup failed for %r", username)
        return jsonify({"error": "An unexpected error occurred. Please try again."}), 500

    if user is None:
        return jsonify({"error": "No user found with the given username."}), 401
    if not verify_password(password, user.password_hash):
        return jsonify({"error": "Invalid password. Please try again."}), 401

    login_user(user)
    session.permanent = True
    redirect_url = session.pop("return_to", None) or url_for("core.index")
    logger.info("User %s signed in", user.id)
    return jsonify({"success": True, "redirectUrl": redirect_url}), 200


@bp.route("/register", methods=["GET", "POST"])
def register():
    if request.method == "GET":
        return render_template("register.html", username="")

    username = request.form.get("username", "").strip()
    password = request.form.get("password", "")
    admin_password = request.form.get("adminPassword", "")

    if not username or not password:
        flash("Username and password are required", "error")
        return render_template("register.html", username=username)

    try:
        if username_exists(username):
            flash("Username already taken, please choose another one.", "error")
            return render_template("register.html", username=username)

        is_admin = grants_admin(admin_password, get_settings().ADMIN_REGISTRATION_PASSWORD)
        user = create_user(
            username=username,
            password_hash=hash_password(password),
            is_admin=is_admin,
        )
    except ValueError as exc:
        flash(str(exc), "error")
        return render_template("register.html", username=username)
    except DatabaseError:
        logger.exception("Registration failed for %r", username)
        flash("Error registering user, please try again.", "error")
        return render_template("register.html", username=username)

    login_user(user)
    session.permanent = True
    flash("Registration successful", "success")
    return redirect(url_for("core.index"))


@bp.post("/logout")
@login_required
def logout():
    logout_user()
    session.clear()
    return redirect(url_for("core.login"))


@bp.get("/mysteries")
@login_required
def mysteries_root():
    return redirect(url_for("core.index"))


def _render_new_mystery(form_data: dict[str, str], selection: dict[str, str]):
    try:
        clues = list_all_clues()
    except DatabaseError:
        logger.exception("Error fetching clues")
        abort(500, description="Error loading clues.")
    return render_template(
        "new_mystery.html",
        clues=clues,
        form_data=form_data,
        selection=selection,
    )


@bp.get("/mysteries/new")
@login_required
def new_mystery():
    return _render_new_mystery({"title": "", "description": ""}, {})


@bp.post("/mysteries")
@bp.post("/mysteries/new")
@login_required
def create_mystery():
    ctx = current_context()
    form_data = {
        "title": request.form.get("title", ""),
        "description": request.form.get("description", ""),
    }
    submitted = parse_clue_form(request.form)

    try:
        result = create_mystery_with_clues(
            title=form_data["title"],
            description=form_data["description"],
            author_id=ctx.user_id,
            submitted=submitted,
        )
    except ValidationError as exc:
        for message in exc.fields.values() or [exc.message]:
            flash(message, "error")
        return _render_new_mystery(form_data, _form_clue_selection(submitted))
    except ReconcileError as exc:
        abort(500, description=str(exc))

    _flash_warnings(result.warnings)
    flash("Mystery added successfully.", "success")
    return redirect(url_for("core.mystery_detail", mystery_id=result.mystery_id))


@bp.get("/mysteries/<mystery_id>")
@login_required
def mystery_detail(mystery_id: str):
    mystery_pk = _parse_id_or_none(mystery_id)
    if mystery_pk is None:
        flash("Invalid mystery ID.", "error")
        return redirect(url_for("core.index"))

    try:
        mystery = get_mystery_with_clues(mystery_pk)
    except DatabaseError:
        logger.exception("Error fetching mystery %s", mystery_pk)
        flash("An unexpected error occurred while fetching the mystery.", "error")
        return redirect(url_for("core.index"))

    if mystery is None:
        flash("Mystery not found.", "error")
        return redirect(url_for("core.index"))
    return render_template("mystery.html", mystery=mystery)


def _load_mystery_or_404(mystery_pk: int) -> dict:
    try:
        mystery = get_mystery_with_clues(mystery_pk)
    except DatabaseError:
        logger.exception("Error fetching mystery %s", mystery_pk)
        abort(500, description="An unexpected error occurred while fetching the mystery.")
    if mystery is None:
        abort(404, description="Mystery not found. The mystery you are trying to edit does not exist.")
    return mystery


@bp.get("/mysteries/<mystery_id>/edit")
@login_required
def edit_mystery(mystery_id: str):
    mystery_pk = _require_id(mystery_id, "mystery")
    session.pop("new_clues", None)
    mystery = _load_mystery_or_404(mystery_pk)
    try:
        all_clues = list_all_clues()
    except DatabaseError:
        logger.exception("Error fetching clues")
        abort(500, description="Error loading clues.")
    return render_template("edit_mystery.html", mystery=mystery, all_clues=all_clues)


@bp.post("/mysteries/<mystery_id>/edit")
@login_required
def save_mystery(mystery_id: str):
    mystery_pk = _require_id(mystery_id, "mystery")
    submitted = parse_clue_form(request.form, default_checked=True)
    additions = session_additions(session.get("new_clues"))

    try:
        result = update_mystery_with_clues(
            mystery_id=mystery_pk,
            title=request.form.get("title", ""),
            description=request.form.get("description", ""),
            submitted=submitted,
            prior_session_additions=additions,
        )
    except NotFoundError as exc:
        abort(404, description=str(exc))
    except (ValidationError, ReconcileError) as exc:
        flash(str(exc), "error")
        return redirect(url_for("core.edit_mystery", mystery_id=mystery_pk))

    session.pop("new_clues", None)
    _flash_warnings(result.warnings)
    flash("Mystery updated successfully.", "success")
    return redirect(url_for("core.mystery_detail", mystery_id=mystery_pk))


@bp.post("/mysteries/<mystery_id>/add-clue")
@login_required
def add_clue_to_mystery(mystery_id: str):
    mystery_pk = _require_id(mystery_id, "mystery")
    clue_id = request.form.get("newClue[id]", "")
    quantity = request.form.get("newClue[quantity]", "")

    try:
        add_clue(mystery_pk, clue_id, quantity)
    except ValidationError as exc:
        flash(exc.message, "error")
    except ReconcileError:
        flash("Failed to add clue.", "error")
    else:
        flash("Clue saved to the mystery.", "success")
    return redirect(url_for("core.edit_mystery", mystery_id=mystery_pk))


@bp.get("/mysteries/<mystery_id>/remove-clues")
@login_required
def remove_clues_page(mystery_id: str):
    mystery_pk = _require_id(mystery_id, "mystery")
    mystery = _load_mystery_or_404(mystery_pk)
    return render_template("remove_clues.html", mystery=mystery)


@bp.post("/mysteries/<mystery_id>/remove-clue")
@bp.post("/mysteries/<mystery_id>/remove-clues")
@login_required
def remove_clues_submit(mystery_id: str):
    mystery_pk = _require_id(mystery_id, "mystery")
    selected = request.form.getlist("cluesToRemove") or request.form.getlist("cluesToRemove[]")

    try:
        remove_clues(mystery_pk, selected)
    except ValidationError as exc:
        flash(exc.message, "error")
    except ReconcileError as exc:
        flash(str(exc), "error")
    else:
        flash("Selected clues removed successfully.", "success")
    return redirect(url_for("core.remove_clues_page", mystery_id=mystery_pk))


@bp.post("/mysteries/<mystery_id>/delete")
@login_required
def delete_mystery_submit(mystery_id: str):
    ctx = current_context()
    mystery_pk = _require_id(mystery_id, "mystery")

    try:
        deleted = delete_mystery(mystery_pk, user_id=ctx.user_id, is_admin=ctx.is_admin)
    except DatabaseError:
        logger.exception("Error deleting mystery %s", mystery_pk)
        deleted = False

    if deleted:
        flash("Mystery deleted successfully.", "success")
        return redirect(url_for("core.index"))
    flash("Failed to delete mystery. You might not have permission.", "error")
    return redirect(url_for("core.mystery_detail", mystery_id=mystery_pk))


@bp.get("/clues/manage")
@admin_required
def manage_clues():
    settings = get_settings()
    try:
        total = count_clues()
        window = _page_window(total, settings.CLUES_PER_PAGE)
        clues = list_clues(limit=window.limit, offset=window.offset)
    except DatabaseError:
        logger.exception("Error fetching clues")
        flash("Failed to load clues.", "error")
        return redirect(url_for("core.index"))
    return render_template("manage_clues.html", clues=clues, window=window)


@bp.post("/clues/add")
@admin_required
def add_clue_submit():
    name = request.form.get("name", "").strip()
    if not name:
        flash("Clue name is required.", "error")
        return redirect(url_for("core.manage_clues"))

    try:
        create_clue(name)
    except DatabaseError:
        logger.exception("Error adding clue %r", name)
        flash("Failed to add clue. It may already exist.", "error")
    else:
        flash("Clue added successfully.", "success")
    return redirect(url_for("core.manage_clues"))


@bp.get("/clues/<clue_id>/edit")
@admin_required
def edit_clue(clue_id: str):
    clue_pk = _require_id(clue_id, "clue")
    clue = get_clue(clue_pk)
    if clue is None:
        abort(404, description="Clue not found.")
    return render_template("edit_clue.html", clue=clue)


@bp.post("/clues/<clue_id>/edit")
@admin_required
def edit_clue_submit(clue_id: str):
    clue_pk = _require_id(clue_id, "clue")
    name = request.form.get("name", "").strip()
    if not name:
        flash("Clue name is required.", "error")
        return redirect(url_for("core.manage_clues"))

    try:
        renamed = rename_clue(clue_pk, name)
    except IntegrityError:
        flash("Failed to update clue. That name is already in use.", "error")
    except DatabaseError:
        logger.exception("Error updating clue %s", clue_pk)
        flash("Failed to update clue.", "error")
    else:
        if renamed:
            flash("Clue updated successfully.", "success")
        else:
            flash("Clue not found.", "error")
    return redirect(url_for("core.manage_clues"))


@bp.post("/clues/<clue_id>/delete")
@admin_required
def delete_clue_submit(clue_id: str):
    clue_pk = _require_id(clue_id, "clue")
    try:
        deleted = delete_clue(clue_pk)
    except DatabaseError:
        logger.exception("Error deleting clue %s", clue_pk)
        flash("Failed to delete clue.", "error")
    else:
        if deleted:
            flash("Clue deleted successfully.", "success")
        else:
            flash("Clue not found.", "error")
    return redirect(url_for("core.manage_clues"))


def _load_game() -> Optional[HackingGame]:
    return HackingGame.from_session(
        session.get("hacking"),
        max_attempts=get_settings().MINIGAME_MAX_ATTEMPTS,
    )


@minigames_bp.get("/")
def hacking_game():
    game = _load_game()
    if game is None or request.args.get("reset"):
        game = HackingGame.new(max_attempts=get_settings().MINIGAME_MAX_ATTEMPTS)
        session["hacking"] = game.to_session()

    return render_template(
        "hacking.html",
        attempts=game.attempts,
        attempts_left=game.attempts_left,
        mixed_symbols=mix(game.correct_word),
    )


@minigames_bp.post("/guess")
def hacking_guess():
    game = _load_game()
    if game is None:
        return redirect(url_for("minigames.hacking_game"))

    result = game.guess(request.form.get("guess", ""))
    if result is None:
        flash("Guesses must be exactly 5 letters.", "error")
        return redirect(url_for("minigames.hacking_game"))

    if result.finished:
        session.pop("hacking", None)
        template = "hacking_win.html" if result.won else "hacking_lose.html"
        return render_template(
            template,
            correct_word=game.correct_word,
            attempts=game.attempts,
            mixed_symbols=mix(game.correct_word),
        )

    session["hacking"] = game.to_session()
    return redirect(url_for("minigames.hacking_game"))
