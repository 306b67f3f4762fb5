"""Classification result types and the outcome returned by the adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


@dataclass(frozen=True)
class ResultItem:
    """A single predicted label with its confidence score."""

    label: str
    score: float

    @property
    def percentage(self) -> str:
        return format_percentage(self.score)


@dataclass(frozen=True)
class ClassificationResult:
    """Predictions for one image, ordered by descending score."""

    items: tuple[ResultItem, ...] = ()

    @property
    def top(self) -> ResultItem | None:
        return self.items[0] if self.items else None

    def __iter__(self) -> Iterator[ResultItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


class FailureReason(StrEnum):
    MODEL_LOAD = "model_load"
    IMAGE_DECODE = "image_decode"
    INFERENCE = "inference"


@dataclass(frozen=True)
class Success:
    result: ClassificationResult = field(default_factory=ClassificationResult)

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    reason: FailureReason
    message: str

    @property
    def ok(self) -> bool:
        return False


Outcome = Success | Failure


def format_percentage(score: float) -> str:
    """Format a 0-1 score as a whole percentage, e.g. ``0.82 -> "82%"``."""
    return f"{round(score * 100)}%"


def format_results(result: ClassificationResult) -> str:
    """Render one line per prediction: label followed by its percentage."""
    return "".join(f" {item.label}  {item.percentage}\n" for item in result)
