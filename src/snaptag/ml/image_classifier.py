"""Classification result types, outcomes, and error kinds.

A classification run ends in exactly one ``Outcome``: either ``Success`` with
the model's ranked labels, or ``Failure`` tagged with an ``ErrorKind``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    Image = NDArray[np.uint8] | bytes


@dataclass(frozen=True)
class ClassificationLabel:
    """A single classification prediction."""

    identifier: str
    confidence: float


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    MODEL_LOAD_FAILED = "model_load_failed"
    INFERENCE_FAILED = "inference_failed"
    UNEXPECTED_RESULT_SHAPE = "unexpected_result_shape"


class ClassificationError(Exception):
    """Base class for errors that end up in a ``Failure`` outcome."""

    kind: ErrorKind


class ModelLoadFailedError(ClassificationError):
    kind = ErrorKind.MODEL_LOAD_FAILED


class InferenceFailedError(ClassificationError):
    kind = ErrorKind.INFERENCE_FAILED


class UnexpectedResultShapeError(ClassificationError):
    kind = ErrorKind.UNEXPECTED_RESULT_SHAPE


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    """Ranked labels exactly as the model produced them."""

    labels: tuple[ClassificationLabel, ...]


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str

    @classmethod
    def from_error(cls, error: ClassificationError) -> Failure:
        return cls(kind=error.kind, message=str(error))


Outcome = Success | Failure


# ---------------------------------------------------------------------------
# Model boundary
# ---------------------------------------------------------------------------


class Scorer(Protocol):
    """Protocol for loaded classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def reentrant(self) -> bool:
        """Whether ``score`` may run concurrently on several threads."""
        ...

    def score(self, image: Image) -> Sequence[ClassificationLabel]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array, or encoded image bytes.

        Returns:
            Labels sorted by confidence (descending).

        Raises:
            InferenceFailedError: If the image cannot be scored.
        """
        ...


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def confidence_percent(confidence: float) -> int:
    """Convert a [0, 1] confidence to an integer percentage, rounding half up."""
    percent = Decimal(str(confidence)) * 100
    return int(percent.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_label(label: ClassificationLabel) -> str:
    """Render a label as ``"<percent>% <identifier>"``."""
    return f"{confidence_percent(label.confidence)}% {label.identifier}"
