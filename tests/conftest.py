"""Shared fixtures: settings, fake models, recording owners."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest

from snaptag.config import Settings
from snaptag.ml.image_classifier import ClassificationLabel

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from snaptag.ml.image_classifier import Outcome

CAT_DOG = [
    ClassificationLabel(identifier="cat", confidence=0.92),
    ClassificationLabel(identifier="dog", confidence=0.05),
]


class FakeScorer:
    """Scripted model: returns ``result`` or raises ``error``.

    ``gate`` blocks scoring until set; ``barrier`` makes concurrent calls
    rendezvous. Calls and the threads they ran on are recorded.
    """

    def __init__(
        self,
        result: object = None,
        error: BaseException | None = None,
        *,
        name: str = "fake",
        reentrant: bool = True,
        delay: float = 0.0,
        gate: threading.Event | None = None,
        barrier: threading.Barrier | None = None,
    ) -> None:
        self.result = list(CAT_DOG) if result is None and error is None else result
        self.error = error
        self._name = name
        self._reentrant = reentrant
        self.delay = delay
        self.gate = gate
        self.barrier = barrier
        self.calls = 0
        self.threads: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._name

    @property
    def reentrant(self) -> bool:
        return self._reentrant

    def score(self, image: object) -> object:
        with self._lock:
            self.calls += 1
            self.threads.append(threading.get_ident())
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.barrier is not None:
                self.barrier.wait()
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return self.result
        finally:
            with self._lock:
                self.in_flight -= 1


class RecordingOwner:
    """Result owner that records every notification and the thread it ran on."""

    def __init__(self, events: list[tuple[str, object, int]] | None = None) -> None:
        self.events = events if events is not None else []

    def on_progress_start(self) -> None:
        self.events.append(("started", None, threading.get_ident()))

    def on_result(self, outcome: Outcome) -> None:
        self.events.append(("result", outcome, threading.get_ident()))

    @property
    def outcomes(self) -> list[object]:
        return [payload for kind, payload, _ in self.events if kind == "result"]


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(models_dir=str(tmp_path), max_concurrent=4, top_k=5)  # type: ignore[arg-type]


@pytest.fixture()
def make_scorer() -> Callable[..., FakeScorer]:
    return FakeScorer


@pytest.fixture()
def make_owner() -> Callable[..., RecordingOwner]:
    return RecordingOwner


@pytest.fixture()
def stub_loader() -> Callable[..., MagicMock]:
    """Build a loader whose ``load`` returns the given scorer or raises the given error."""

    def _make(scorer: FakeScorer | None = None, error: BaseException | None = None) -> MagicMock:
        loader = MagicMock()
        if error is not None:
            loader.load.side_effect = error
        else:
            loader.load.return_value = scorer
        return loader

    return _make


@pytest.fixture()
def image() -> np.ndarray:
    return np.zeros((32, 48, 3), dtype=np.uint8)

