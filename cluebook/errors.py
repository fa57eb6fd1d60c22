"""Exceptions raised by Cluebook services and translated at the route layer."""

from __future__ import annotations


class ValidationError(ValueError):
    """Raised when user input is rejected before any row is written."""

    def __init__(self, message: str, *, fields: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.fields = dict(fields or {})


class ReconcileError(RuntimeError):
    """Raised after a rolled-back write; the cause stays on ``__cause__``."""


class PageError(ValueError):
    """Raised for page numbers that are not positive or lie past the last page."""

    status_code = 400


class NotFoundError(LookupError):
    """Raised when the mystery or clue being changed does not exist."""
