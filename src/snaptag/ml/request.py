"""A single pending classification and its lifecycle."""

from __future__ import annotations

import itertools
import logging
import threading
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from snaptag.ml.image_classifier import Image, Outcome, Scorer

logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


class RequestState(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"


class RequestStateError(RuntimeError):
    """Raised on an illegal lifecycle transition, e.g. completing twice."""


class ClassificationRequest:
    """One image, the model to score it with, and where the outcome goes.

    The request keeps strong references to the model and the image until its
    outcome is produced. ``complete`` fires the completion callback exactly
    once; a second call is a programming error.
    """

    def __init__(
        self,
        model: Scorer,
        image: Image,
        on_complete: Callable[[Outcome], None],
    ) -> None:
        if image is None:
            raise ValueError("image must not be None")
        self.request_id = next(_request_ids)
        self.model = model
        self.image = image
        self._on_complete = on_complete
        self._state = RequestState.CREATED
        self._outcome: Outcome | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> RequestState:
        with self._lock:
            return self._state

    @property
    def outcome(self) -> Outcome | None:
        with self._lock:
            return self._outcome

    def mark_running(self) -> None:
        """Transition ``CREATED -> RUNNING``."""
        with self._lock:
            if self._state is not RequestState.CREATED:
                raise RequestStateError(f"Request {self.request_id} cannot start from state {self._state}")
            self._state = RequestState.RUNNING
        logger.debug("Request %d running on %s", self.request_id, self.model.model_name)

    def complete(self, outcome: Outcome) -> None:
        """Transition ``RUNNING -> COMPLETED`` and invoke the completion callback."""
        with self._lock:
            if self._state is RequestState.COMPLETED:
                raise RequestStateError(f"Request {self.request_id} already completed")
            if self._state is not RequestState.RUNNING:
                raise RequestStateError(f"Request {self.request_id} completed before it started")
            self._state = RequestState.COMPLETED
            self._outcome = outcome
        logger.debug("Request %d completed: %s", self.request_id, type(outcome).__name__)
        self._on_complete(outcome)

    def __repr__(self) -> str:
        return f"ClassificationRequest(id={self.request_id}, model={self.model.model_name!r}, state={self.state})"
