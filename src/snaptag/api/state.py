"""Result owners used by the HTTP layer."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from snaptag.ml.image_classifier import Failure

if TYPE_CHECKING:
    import asyncio

    from snaptag.ml.image_classifier import Outcome

logger = logging.getLogger(__name__)


class ModelStatus:
    """Application-wide owner; only ever receives the startup load outcome."""

    def __init__(self) -> None:
        self.load_error: str | None = None

    def on_progress_start(self) -> None:
        pass

    def on_result(self, outcome: Outcome) -> None:
        if isinstance(outcome, Failure):
            self.load_error = outcome.message
            logger.error("Classification unavailable: %s", outcome.message)


class AwaitingOwner:
    """Per-request owner that resolves an event-loop future with the outcome.

    The route handler holds the only strong reference. If the handler is
    cancelled (client disconnect, timeout) the owner can be collected and the
    late outcome is dropped.
    """

    def __init__(self, future: asyncio.Future[Outcome]) -> None:
        self._future = future

    def on_progress_start(self) -> None:
        logger.debug("Classification started")

    def on_result(self, outcome: Outcome) -> None:
        if not self._future.done():
            self._future.set_result(outcome)
