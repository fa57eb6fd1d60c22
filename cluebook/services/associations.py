"""Reconcile the clues attached to a mystery against a submitted form.

Every write path here runs inside ``models.transaction()`` so that a failed
statement leaves neither a half-created mystery nor a partial set of
associations behind. Association rows are written with a single upsert keyed
on ``(mystery_id, clue_id)``; the unique constraint on ``mystery_clues``
makes concurrent submissions for the same pair converge on one row.
"""

from __future__ import annotations

import enum
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence, Union

from cluebook.errors import NotFoundError, ReconcileError, ValidationError
from models import (
    DatabaseError,
    delete_mystery_clue,
    insert_mystery,
    list_mystery_clue_ids,
    transaction,
    update_mystery_fields,
    upsert_mystery_clue,
)

logger = logging.getLogger(__name__)

TRUE_VALUES = {"true", "on", "1", "yes"}
NO_VALID_CLUE_MESSAGE = (
    "You must add at least one clue with a valid quantity "
    "(if numeric, it must be positive) to create a mystery."
)

_FIELD_RE = re.compile(r"^clues\[([^\]]+)\]\[(id|checked|quantity)\]$")


@dataclass(frozen=True, slots=True)
class NumericQuantity:
    value: float
    text: str

    @property
    def is_valid(self) -> bool:
        return self.value > 0


@dataclass(frozen=True, slots=True)
class LabelQuantity:
    text: str

    @property
    def is_valid(self) -> bool:
        return bool(self.text)


Quantity = Union[NumericQuantity, LabelQuantity]


def parse_quantity(raw: object) -> Optional[Quantity]:
    """Classify a free-form quantity; blank input yields None."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        value = float(text)
    except ValueError:
        return LabelQuantity(text)
    if not math.isfinite(value):
        return LabelQuantity(text)
    return NumericQuantity(value, text)


class Outcome(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED_INVALID = "skipped_invalid"


@dataclass(frozen=True, slots=True)
class SubmittedClue:
    clue_id: object
    checked: object
    quantity: object


@dataclass(frozen=True, slots=True)
class EntryOutcome:
    clue_id: Optional[int]
    status: Outcome
    quantity: Optional[str] = None
    reason: Optional[str] = None


@dataclass(slots=True)
class ReconcileResult:
    mystery_id: int
    outcomes: list[EntryOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def count(self, status: Outcome) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)


def is_checked(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (list, tuple)):
        return any(is_checked(item) for item in value)
    if value is None:
        return False
    return str(value).strip().lower() in TRUE_VALUES


def _first_non_empty(value: object) -> object:
    if isinstance(value, (list, tuple)):
        for item in value:
            if item is not None and str(item).strip():
                return item
        return ""
    return value


def _parse_clue_id(value: object) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_clue_form(form, *, default_checked: bool = False) -> list[SubmittedClue]:
    """Collect ``clues[<key>][field]`` form-array entries in submission order.

    ``form`` is a werkzeug ``MultiDict`` or a plain mapping. Entries without an
    explicit ``id`` use their key as the clue id. Edit forms carry no checkbox,
    so they pass ``default_checked=True``.
    """
    grouped: dict[str, dict[str, object]] = {}
    for name in form.keys():
        match = _FIELD_RE.match(name)
        if not match:
            continue
        key, field_name = match.groups()
        if hasattr(form, "getlist"):
            values = form.getlist(name)
            value: object = values if len(values) > 1 else (values[0] if values else "")
        else:
            value = form[name]
        grouped.setdefault(key, {})[field_name] = value

    entries: list[SubmittedClue] = []
    for key, fields in grouped.items():
        entries.append(
            SubmittedClue(
                clue_id=fields.get("id", key),
                checked=fields.get("checked", default_checked),
                quantity=_first_non_empty(fields.get("quantity", "")),
            )
        )
    return entries


def session_additions(raw: Optional[Iterable[Mapping[str, object]]]) -> list[SubmittedClue]:
    """Turn clue additions parked in the session into submitted entries."""
    if not raw:
        return []
    return [
        SubmittedClue(clue_id=item.get("id"), checked=True, quantity=item.get("quantity"))
        for item in raw
    ]


@dataclass(frozen=True, slots=True)
class _ValidEntry:
    clue_id: int
    quantity: Quantity


def _classify(entry: SubmittedClue) -> tuple[Optional[_ValidEntry], Optional[EntryOutcome]]:
    clue_id = _parse_clue_id(entry.clue_id)
    if not is_checked(entry.checked):
        return None, EntryOutcome(clue_id, Outcome.SKIPPED_INVALID, reason="not selected")
    if clue_id is None:
        return None, EntryOutcome(None, Outcome.SKIPPED_INVALID, reason="invalid clue id")
    quantity = parse_quantity(_first_non_empty(entry.quantity))
    if quantity is None:
        return None, EntryOutcome(clue_id, Outcome.SKIPPED_INVALID, reason="missing quantity")
    if not quantity.is_valid:
        return None, EntryOutcome(
            clue_id,
            Outcome.SKIPPED_INVALID,
            quantity=quantity.text,
            reason="numeric quantity must be positive",
        )
    return _ValidEntry(clue_id, quantity), None


def _partition(
    entries: Sequence[SubmittedClue],
) -> tuple[dict[int, _ValidEntry], list[EntryOutcome], list[str]]:
    valid: dict[int, _ValidEntry] = {}
    skipped: list[EntryOutcome] = []
    warnings: list[str] = []
    for entry in entries:
        accepted, rejected = _classify(entry)
        if accepted is not None:
            valid[accepted.clue_id] = accepted
            continue
        skipped.append(rejected)
        if rejected.reason != "not selected":
            warnings.append("Invalid clue or quantity provided.")
    return valid, skipped, warnings


def _require_positive_id(value: object, label: str = "mystery") -> int:
    parsed = _parse_clue_id(value)
    if parsed is None or parsed <= 0:
        raise ValidationError(f"Invalid {label} ID.")
    return parsed


def _write_associations(mystery_id: int, valid: Mapping[int, _ValidEntry]) -> list[EntryOutcome]:
    # caller holds the transaction
    existing = list_mystery_clue_ids(mystery_id)
    outcomes: list[EntryOutcome] = []
    for clue_id, entry in valid.items():
        upsert_mystery_clue(mystery_id, clue_id, entry.quantity.text)
        status = Outcome.UPDATED if clue_id in existing else Outcome.INSERTED
        outcomes.append(EntryOutcome(clue_id, status, quantity=entry.quantity.text))
    return outcomes


def reconcile(
    mystery_id: object,
    submitted: Sequence[SubmittedClue],
    prior_session_additions: Sequence[SubmittedClue] = (),
) -> ReconcileResult:
    """Insert or update every valid entry for ``mystery_id`` in one transaction.

    Outcomes list written entries first (in submission order), then skipped
    ones. Database failures roll everything back and surface as
    ``ReconcileError``.
    """
    mystery_pk = _require_positive_id(mystery_id)
    valid, skipped, warnings = _partition([*submitted, *prior_session_additions])

    try:
        with transaction():
            written = _write_associations(mystery_pk, valid)
    except DatabaseError as exc:
        logger.exception("Failed to reconcile clues for mystery %s", mystery_pk)
        raise ReconcileError("Failed to save clues for the mystery.") from exc

    return ReconcileResult(mystery_pk, [*written, *skipped], warnings)


def _clean_text(value: object) -> str:
    return str(value or "").strip()


def create_mystery_with_clues(
    *,
    title: object,
    description: object,
    author_id: Optional[int],
    submitted: Sequence[SubmittedClue],
) -> ReconcileResult:
    """Create a mystery and its clue links, or nothing at all."""
    clean_title = _clean_text(title)
    clean_description = _clean_text(description)

    fields: dict[str, str] = {}
    if not clean_title:
        fields["title"] = "Title is required."
    valid, skipped, warnings = _partition(submitted)
    if not valid:
        fields["clues"] = NO_VALID_CLUE_MESSAGE
    if fields:
        message = fields.get("clues") or fields["title"]
        raise ValidationError(message, fields=fields)

    try:
        with transaction():
            mystery_id = insert_mystery(
                title=clean_title,
                description=clean_description,
                author_id=author_id,
            )
            written = _write_associations(mystery_id, valid)
    except DatabaseError as exc:
        logger.exception("Failed to create mystery %r", clean_title)
        raise ReconcileError("Failed to add mystery due to a server error.") from exc

    logger.info("Created mystery %s with %d clue(s)", mystery_id, len(written))
    return ReconcileResult(mystery_id, [*written, *skipped], warnings)


def update_mystery_with_clues(
    *,
    mystery_id: object,
    title: object,
    description: object,
    submitted: Sequence[SubmittedClue],
    prior_session_additions: Sequence[SubmittedClue] = (),
) -> ReconcileResult:
    """Save edited fields and clue quantities together."""
    mystery_pk = _require_positive_id(mystery_id)
    clean_title = _clean_text(title)
    if not clean_title:
        raise ValidationError("Title is required.", fields={"title": "Title is required."})

    valid, skipped, warnings = _partition([*submitted, *prior_session_additions])

    try:
        with transaction():
            updated = update_mystery_fields(
                mystery_pk,
                title=clean_title,
                description=_clean_text(description),
            )
            if not updated:
                raise NotFoundError("Mystery not found.")
            written = _write_associations(mystery_pk, valid)
    except DatabaseError as exc:
        logger.exception("Failed to update mystery %s", mystery_pk)
        raise ReconcileError("Failed to update mystery due to a server error.") from exc

    return ReconcileResult(mystery_pk, [*written, *skipped], warnings)


def add_clue(mystery_id: object, clue_id: object, quantity: object) -> EntryOutcome:
    """Attach one clue to a mystery, or update its quantity when present."""
    mystery_pk = _require_positive_id(mystery_id)
    if clue_id in (None, "") or quantity in (None, ""):
        raise ValidationError("Clue and quantity are required.")

    parsed = parse_quantity(quantity)
    if isinstance(parsed, NumericQuantity) and not parsed.is_valid:
        raise ValidationError("Quantity must be greater than zero if it is a numeric value.")

    clue_pk = _parse_clue_id(clue_id)
    if clue_pk is None or parsed is None:
        raise ValidationError("Invalid clue or quantity provided.")

    result = reconcile(mystery_pk, [SubmittedClue(clue_pk, True, parsed.text)])
    return result.outcomes[0]


def remove_clues(mystery_id: object, clue_ids: Iterable[object]) -> int:
    """Delete the selected associations together; unparseable ids are ignored."""
    mystery_pk = _require_positive_id(mystery_id)
    parsed_ids = [pk for pk in (_parse_clue_id(value) for value in clue_ids) if pk is not None]
    if not parsed_ids:
        raise ValidationError("No clues were selected to remove.")

    try:
        with transaction():
            removed = sum(delete_mystery_clue(mystery_pk, clue_pk) for clue_pk in parsed_ids)
    except DatabaseError as exc:
        logger.exception("Failed to remove clues from mystery %s", mystery_pk)
        raise ReconcileError("Failed to remove clues.") from exc
    return removed
