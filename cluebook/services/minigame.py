"""Word-guessing "hacking" minigame."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional

WORD_LENGTH = 5
DISTRACTOR_COUNT = 200
MISS_PLACEHOLDER = "_ "

WORD_POOL = (
    "apple",
    "melon",
    "peach",
    "bloat",
    "toast",
    "float",
    "crack",
    "track",
    "broke",
    "joker",
    "poker",
    "flame",
    "frame",
    "crane",
    "train",
    "brain",
    "drain",
    "plain",
    "grain",
    "grape",
    "grate",
    "crate",
)

SYMBOLS = (
    "@", "#", "$", "%", "^", "&", "*", "(", ")", "-",
    "+", "=", "|", "{", "}", "[", "]", ":", ";", "?",
)


def pick_word(rng: random.Random | None = None) -> str:
    """Return a word chosen uniformly from the pool."""
    return (rng or random).choice(WORD_POOL)


def mix(word: str, rng: random.Random | None = None) -> str:
    """Scatter the word's letters, the word itself and symbol noise."""
    rng = rng or random
    pieces = list(word)
    pieces.extend(rng.choice(SYMBOLS) for _ in range(DISTRACTOR_COUNT))
    pieces.append(word)
    rng.shuffle(pieces)
    return " ".join(pieces)


def score_guess(guess: str, target: str) -> str:
    """Keep letters in the right position, mark every miss with ``"_ "``."""
    return "".join(
        letter if index < len(target) and letter == target[index] else MISS_PLACEHOLDER
        for index, letter in enumerate(guess)
    )


@dataclass(frozen=True, slots=True)
class GuessResult:
    guess: str
    feedback: str
    won: bool
    lost: bool

    @property
    def finished(self) -> bool:
        return self.won or self.lost


@dataclass
class HackingGame:
    """Game state kept in the user's session between requests."""

    correct_word: str
    attempts: list[dict[str, str]] = field(default_factory=list)
    max_attempts: int = 5

    @classmethod
    def new(cls, *, max_attempts: int = 5, rng: random.Random | None = None) -> "HackingGame":
        return cls(correct_word=pick_word(rng), max_attempts=max_attempts)

    @classmethod
    def from_session(cls, data: Optional[dict], *, max_attempts: int = 5) -> Optional["HackingGame"]:
        if not data or not data.get("correct_word"):
            return None
        return cls(
            correct_word=str(data["correct_word"]),
            attempts=[dict(item) for item in data.get("attempts", [])],
            max_attempts=max_attempts,
        )

    def to_session(self) -> dict[str, object]:
        return {"correct_word": self.correct_word, "attempts": list(self.attempts)}

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - len(self.attempts))

    def guess(self, raw_guess: str) -> Optional[GuessResult]:
        """Score a guess; anything that is not exactly five letters is ignored."""
        guess = (raw_guess or "").strip().lower()
        if len(guess) != WORD_LENGTH or self.attempts_left == 0:
            return None

        feedback = score_guess(guess, self.correct_word)
        self.attempts.append({"guess": guess, "feedback": feedback})
        won = guess == self.correct_word
        lost = not won and len(self.attempts) >= self.max_attempts
        return GuessResult(guess=guess, feedback=feedback, won=won, lost=lost)
