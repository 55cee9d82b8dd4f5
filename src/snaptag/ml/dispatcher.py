"""Delivery of progress and outcomes to a weakly referenced owner.

The owner (a view, controller, or request handler) is never kept alive by an
in-flight classification. Its liveness is checked on the consumer context at
the moment of delivery, not when the work was submitted; a gone owner simply
receives nothing.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from snaptag.ml.context import ConsumerContext
    from snaptag.ml.image_classifier import Outcome

logger = logging.getLogger(__name__)


class ResultOwner(Protocol):
    """Receives pipeline notifications on the consumer context."""

    def on_progress_start(self) -> None:
        """Called when a classification has been scheduled."""
        ...

    def on_result(self, outcome: Outcome) -> None:
        """Called exactly once per classification with its outcome."""
        ...


class OwnerRef:
    """Non-owning handle to a ``ResultOwner``.

    Resolves to ``None`` once the owner has been garbage collected or the
    reference has been cancelled on owner teardown.
    """

    def __init__(self, owner: ResultOwner) -> None:
        self._ref = weakref.ref(owner)
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop all future deliveries, even if the owner is still alive."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def resolve(self) -> ResultOwner | None:
        if self._cancelled.is_set():
            return None
        return self._ref()


class ResultDispatcher:
    """Marshals notifications onto the consumer context."""

    def notify_started(self, owner: OwnerRef, context: ConsumerContext) -> None:
        context.call_soon(self._run_started, owner)

    def deliver(self, owner: OwnerRef, outcome: Outcome, context: ConsumerContext) -> None:
        """Schedule ``owner.on_result(outcome)`` on ``context``.

        Always goes through ``context``, even when already running on it, so
        deliveries keep their submission order.
        """
        context.call_soon(self._run_deliver, owner, outcome)

    # -- Consumer-context side ----------------------------------------------

    @staticmethod
    def _run_started(owner: OwnerRef) -> None:
        target = owner.resolve()
        if target is None:
            logger.debug("Owner gone; dropping progress notification")
            return
        target.on_progress_start()

    @staticmethod
    def _run_deliver(owner: OwnerRef, outcome: Outcome) -> None:
        target = owner.resolve()
        if target is None:
            logger.debug("Owner gone; dropping %s", type(outcome).__name__)
            return
        target.on_result(outcome)
