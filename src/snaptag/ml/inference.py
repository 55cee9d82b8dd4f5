"""Inference execution layer.

Architecture:
    submit (caller thread) -> ThreadPoolExecutor(N) -> model.score -> Outcome -> request.complete

``submit`` returns immediately. Scoring never runs on the caller's thread and
is not interruptible once started. Each request produces exactly one
``Success`` or ``Failure``; partial results are never delivered.
"""

from __future__ import annotations

import contextlib
import logging
import numbers
import threading
import weakref
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from snaptag.ml.image_classifier import (
    ClassificationError,
    ClassificationLabel,
    ErrorKind,
    Failure,
    Success,
    UnexpectedResultShapeError,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from concurrent.futures import Future

    from snaptag.config import Settings
    from snaptag.ml.image_classifier import Outcome, Scorer
    from snaptag.ml.request import ClassificationRequest

logger = logging.getLogger(__name__)


def conform_labels(raw: object) -> tuple[ClassificationLabel, ...]:
    """Check that a model's output is a non-empty ranked list of labels.

    Accepts ``ClassificationLabel`` items or ``(identifier, confidence)``
    pairs. Order is preserved as given.

    Raises:
        UnexpectedResultShapeError: If the output is empty or not classification-shaped.
    """
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
        raise UnexpectedResultShapeError(f"Expected a sequence of labels, got {type(raw).__name__}")
    if len(raw) == 0:
        raise UnexpectedResultShapeError("Model returned no labels")
    return tuple(_conform_label(item, position) for position, item in enumerate(raw))


def _conform_label(item: object, position: int) -> ClassificationLabel:
    if isinstance(item, ClassificationLabel):
        identifier, confidence = item.identifier, item.confidence
    elif isinstance(item, tuple) and len(item) == 2:
        identifier, confidence = item
    else:
        raise UnexpectedResultShapeError(f"Result {position} is not a label: {item!r}")

    if not isinstance(identifier, str) or isinstance(confidence, bool) or not isinstance(confidence, numbers.Real):
        raise UnexpectedResultShapeError(f"Result {position} has invalid types: {item!r}")
    value = float(confidence)
    if not 0.0 <= value <= 1.0:
        raise UnexpectedResultShapeError(f"Result {position} confidence {value} is outside [0, 1]")
    return ClassificationLabel(identifier=identifier, confidence=value)


class InferenceExecutor:
    """Runs classification requests on a background thread pool.

    Handles whose ``reentrant`` attribute is false are scored one request at
    a time; reentrant handles are scored concurrently.
    """

    def __init__(self, settings: Settings) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="snaptag-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()
        self._handle_locks: weakref.WeakKeyDictionary[Scorer, threading.Lock] = weakref.WeakKeyDictionary()
        self._handle_locks_guard = threading.Lock()

    def submit(
        self,
        request: ClassificationRequest,
        on_started: Callable[[], None] | None = None,
    ) -> Future[Outcome]:
        """Start a request and schedule its scoring.

        ``on_started`` is called on the caller's thread after the request
        enters ``RUNNING`` and before scoring is scheduled.

        Returns:
            A future resolving to the request's outcome.
        """
        request.mark_running()
        if on_started is not None:
            on_started()

        with self._counter_lock:
            self._queue_depth += 1
        try:
            return self._executor.submit(self._run, request)
        except RuntimeError:
            # Pool already shut down; the owner already saw "started".
            with self._counter_lock:
                self._queue_depth -= 1
            request.complete(Failure(ErrorKind.INFERENCE_FAILED, "Inference executor is shut down"))
            raise

    @property
    def active_count(self) -> int:
        """Number of requests currently being scored."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of submitted requests waiting for a worker."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self, wait: bool = True) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=wait)

    # -- Worker side --------------------------------------------------------

    def _run(self, request: ClassificationRequest) -> Outcome:
        with self._counter_lock:
            self._queue_depth -= 1
            self._active_count += 1
        try:
            outcome = self._score(request)
        finally:
            with self._counter_lock:
                self._active_count -= 1

        request.complete(outcome)
        return outcome

    def _score(self, request: ClassificationRequest) -> Outcome:
        model = request.model
        try:
            with self._lock_for(model):
                raw = model.score(request.image)
            labels = conform_labels(raw)
        except ClassificationError as exc:
            logger.warning("Request %d failed (%s): %s", request.request_id, exc.kind, exc)
            return Failure.from_error(exc)
        except Exception as exc:
            logger.exception("Request %d: %s raised during scoring", request.request_id, model.model_name)
            return Failure(ErrorKind.INFERENCE_FAILED, str(exc) or type(exc).__name__)

        logger.debug("Request %d produced %d labels", request.request_id, len(labels))
        return Success(labels)

    def _lock_for(self, model: Scorer) -> contextlib.AbstractContextManager[object]:
        if getattr(model, "reentrant", False):
            return contextlib.nullcontext()
        with self._handle_locks_guard:
            return self._handle_locks.setdefault(model, threading.Lock())
