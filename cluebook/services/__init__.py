"""Service layer helpers for clue associations, pagination and the minigame."""

from . import associations, minigame, pagination

__all__ = [
    "associations",
    "minigame",
    "pagination",
]
