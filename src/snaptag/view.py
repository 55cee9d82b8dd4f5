"""Text rendering of classification outcomes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from snaptag.ml.image_classifier import Failure, format_label

if TYPE_CHECKING:
    from snaptag.ml.image_classifier import Outcome

logger = logging.getLogger(__name__)


def render_outcome(outcome: Outcome) -> list[str]:
    """Render an outcome as display lines, one per label in model order."""
    if isinstance(outcome, Failure):
        return [f"Error: {outcome.message}"]
    return [format_label(label) for label in outcome.labels]


class TextResultView:
    """A result owner holding a progress flag and the rendered lines.

    Stands in for a UI widget: ``busy`` drives a progress indicator and
    ``lines`` is the text shown beneath the image.
    """

    def __init__(self) -> None:
        self.busy = False
        self.lines: list[str] = []
        self.outcomes: list[Outcome] = []

    def on_progress_start(self) -> None:
        self.busy = True
        self.lines = []

    def on_result(self, outcome: Outcome) -> None:
        self.busy = False
        self.outcomes.append(outcome)
        self.lines = render_outcome(outcome)
        logger.debug("Rendered %d lines", len(self.lines))

    @property
    def text(self) -> str:
        return "\n".join(self.lines)
