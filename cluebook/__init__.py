from __future__ import annotations

import datetime
import logging
import os
import traceback
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, flash, g, redirect, render_template, request, session, url_for
from flask_login import LoginManager
from werkzeug.exceptions import HTTPException

from config.settings import get_settings
from models import get_user_by_id, init_db

from .context import build_request_context, current_context

logger = logging.getLogger(__name__)

_ENV_LOADED = False


def _ensure_env_loaded() -> None:
    global _ENV_LOADED
    if _ENV_LOADED:
        return

    base_dir = Path(__file__).resolve().parent.parent
    env_path = base_dir / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()

    _ENV_LOADED = True


login_manager = LoginManager()
login_manager.login_view = "core.login"


@login_manager.user_loader
def load_user(user_id: str) -> Optional[object]:
    try:
        return get_user_by_id(int(user_id))
    except (TypeError, ValueError):
        return None


def _safe_return_path(path: str) -> Optional[str]:
    if not path or not path.startswith("/") or path.startswith("//"):
        return None
    return path


@login_manager.unauthorized_handler
def remember_and_redirect_to_login():
    target = request.full_path if request.query_string else request.path
    return_to = _safe_return_path(target)
    if return_to:
        session["return_to"] = return_to
    flash("You must be signed in to view this page.", "error")
    return redirect(url_for("core.login"))


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(level)


def _register_error_handlers(app: Flask) -> None:
    settings = get_settings()

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        status = exc.code or 500
        if status >= 500:
            logger.error("HTTP %s on %s: %s", status, request.path, exc.description)
        return (
            render_template(
                "error.html",
                status=status,
                message=exc.description or "An unexpected error occurred.",
                stack=None,
            ),
            status,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        logger.exception("Unhandled error on %s", request.path)
        stack = None
        if settings.show_error_details:
            stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return (
            render_template(
                "error.html",
                status=500,
                message="An unexpected error occurred.",
                stack=stack,
            ),
            500,
        )


def create_app() -> Flask:
    _ensure_env_loaded()
    settings = get_settings()
    _configure_logging(settings.LOG_LEVEL)

    base_dir = os.path.dirname(os.path.dirname(__file__))
    template_dir = os.path.join(base_dir, "templates")
    app = Flask(__name__, template_folder=template_dir, static_folder=None)
    app.config["SECRET_KEY"] = settings.SECRET_KEY

    app.config["SESSION_COOKIE_NAME"] = "cluebook-session"
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SECURE"] = settings.SESSION_COOKIE_SECURE
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["PERMANENT_SESSION_LIFETIME"] = datetime.timedelta(
        days=settings.SESSION_LIFETIME_DAYS
    )

    login_manager.init_app(app)
    init_db()

    @app.before_request
    def attach_request_context():
        g.request_ctx = build_request_context()

    @app.context_processor
    def inject_request_context():
        return {"ctx": current_context()}

    _register_error_handlers(app)

    from .routes import bp as core_bp
    from .routes import minigames_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(minigames_bp)

    logger.info("Cluebook application created (env=%s)", settings.APP_ENV)
    return app
