"""Tests for the inference executor and result-shape checks."""

from __future__ import annotations

import gc
import threading
import time
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest

from snaptag.ml.image_classifier import (
    ClassificationLabel,
    ErrorKind,
    Failure,
    InferenceFailedError,
    Success,
    UnexpectedResultShapeError,
)
from snaptag.ml.inference import InferenceExecutor, conform_labels
from snaptag.ml.request import ClassificationRequest, RequestState

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from conftest import FakeScorer

    from snaptag.config import Settings


@pytest.fixture()
def executor(settings: Settings) -> Iterator[InferenceExecutor]:
    pool = InferenceExecutor(settings)
    yield pool
    pool.shutdown()


# ---------------------------------------------------------------------------
# Shape checks
# ---------------------------------------------------------------------------


class TestConformLabels:
    def test_labels_pass_through_in_order(self) -> None:
        raw = [
            ClassificationLabel("zebra", 0.1),
            ClassificationLabel("aardvark", 0.7),
            ClassificationLabel("moose", 0.2),
        ]
        assert conform_labels(raw) == tuple(raw)

    def test_pairs_are_converted(self) -> None:
        labels = conform_labels([("cat", 0.92), ("dog", np.float32(0.05))])
        assert [label.identifier for label in labels] == ["cat", "dog"]
        assert labels[1].confidence == pytest.approx(0.05)
        assert isinstance(labels[1].confidence, float)

    def test_empty_list_rejected(self) -> None:
        with pytest.raises(UnexpectedResultShapeError, match="no labels"):
            conform_labels([])

    @pytest.mark.parametrize("raw", [None, "cat", {"cat": 0.9}, 0.5, np.array([0.1, 0.9])])
    def test_non_sequence_rejected(self, raw: object) -> None:
        with pytest.raises(UnexpectedResultShapeError):
            conform_labels(raw)

    @pytest.mark.parametrize(
        "item",
        [
            ("cat",),
            ("cat", 0.5, "extra"),
            (3, 0.5),
            ("cat", "high"),
            ("cat", True),
            ("cat", 1.5),
            ("cat", -0.1),
            ("cat", float("nan")),
            {"label": "cat", "confidence": 0.5},
        ],
    )
    def test_malformed_items_rejected(self, item: object) -> None:
        with pytest.raises(UnexpectedResultShapeError):
            conform_labels([ClassificationLabel("ok", 0.5), item])

    def test_boundary_confidences_accepted(self) -> None:
        labels = conform_labels([("certain", 1.0), ("never", 0.0), ("int", 1)])
        assert [label.confidence for label in labels] == [1.0, 0.0, 1.0]


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


def _request(scorer: object, image: np.ndarray) -> tuple[ClassificationRequest, MagicMock]:
    callback = MagicMock()
    return ClassificationRequest(scorer, image, callback), callback  # type: ignore[arg-type]


class TestInferenceExecutor:
    def test_success_preserves_model_order(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        ranked = [ClassificationLabel(f"label{i}", (10 - i) / 10) for i in range(4)]
        request, callback = _request(make_scorer(ranked), image)

        outcome = executor.submit(request).result(timeout=5)

        assert outcome == Success(labels=tuple(ranked))
        assert len(outcome.labels) == 4
        callback.assert_called_once_with(outcome)
        assert request.state is RequestState.COMPLETED

    def test_scoring_runs_off_caller_thread(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        scorer = make_scorer()
        request, _ = _request(scorer, image)
        executor.submit(request).result(timeout=5)
        assert scorer.threads
        assert threading.get_ident() not in scorer.threads

    def test_on_started_runs_before_scoring(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        scorer = make_scorer()
        request, _ = _request(scorer, image)
        observed: list[tuple[RequestState, int]] = []

        future = executor.submit(request, on_started=lambda: observed.append((request.state, scorer.calls)))
        future.result(timeout=5)

        assert observed == [(RequestState.RUNNING, 0)]

    def test_submit_returns_before_scoring_finishes(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        gate = threading.Event()
        request, callback = _request(make_scorer(gate=gate), image)

        future = executor.submit(request)
        assert not future.done()
        callback.assert_not_called()

        gate.set()
        assert isinstance(future.result(timeout=5), Success)

    def test_empty_result_is_failure(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        request, _ = _request(make_scorer([]), image)
        outcome = executor.submit(request).result(timeout=5)
        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.UNEXPECTED_RESULT_SHAPE

    def test_inference_error_is_failure(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        request, callback = _request(make_scorer(error=InferenceFailedError("decode error")), image)
        outcome = executor.submit(request).result(timeout=5)
        assert outcome == Failure(ErrorKind.INFERENCE_FAILED, "decode error")
        callback.assert_called_once_with(outcome)

    def test_shape_error_from_model_keeps_kind(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        request, _ = _request(make_scorer(error=UnexpectedResultShapeError("logits (1, 3, 3)")), image)
        outcome = executor.submit(request).result(timeout=5)
        assert outcome == Failure(ErrorKind.UNEXPECTED_RESULT_SHAPE, "logits (1, 3, 3)")

    def test_foreign_exception_is_inference_failure(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        request, _ = _request(make_scorer(error=ValueError("bad tensor")), image)
        outcome = executor.submit(request).result(timeout=5)
        assert outcome == Failure(ErrorKind.INFERENCE_FAILED, "bad tensor")

    def test_exception_without_message_uses_type_name(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        request, _ = _request(make_scorer(error=MemoryError()), image)
        outcome = executor.submit(request).result(timeout=5)
        assert outcome == Failure(ErrorKind.INFERENCE_FAILED, "MemoryError")

    def test_request_cannot_be_submitted_twice(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        request, callback = _request(make_scorer(), image)
        executor.submit(request).result(timeout=5)
        with pytest.raises(RuntimeError):
            executor.submit(request)
        callback.assert_called_once()

    def test_counters_track_work(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        gate = threading.Event()
        scorer = make_scorer(gate=gate)
        request, _ = _request(scorer, image)
        future = executor.submit(request)

        for _ in range(500):
            if executor.active_count == 1:
                break
            time.sleep(0.01)
        assert executor.active_count == 1
        assert executor.queue_depth == 0

        gate.set()
        future.result(timeout=5)
        assert executor.active_count == 0
        assert executor.queue_depth == 0

    def test_reentrant_model_scored_concurrently(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        # Both calls must be inside score at once to pass the barrier.
        scorer = make_scorer(reentrant=True, barrier=threading.Barrier(2, timeout=5))
        futures = [executor.submit(_request(scorer, image)[0]) for _ in range(2)]
        outcomes = [f.result(timeout=10) for f in futures]
        assert all(isinstance(o, Success) for o in outcomes)
        assert scorer.max_in_flight == 2

    def test_non_reentrant_model_is_serialized(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        scorer = make_scorer(reentrant=False, delay=0.02)
        futures = [executor.submit(_request(scorer, image)[0]) for _ in range(4)]
        outcomes = [f.result(timeout=10) for f in futures]
        assert all(isinstance(o, Success) for o in outcomes)
        assert scorer.calls == 4
        assert scorer.max_in_flight == 1

    def test_independent_non_reentrant_models_do_not_block_each_other(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        barrier = threading.Barrier(2, timeout=5)
        first = make_scorer(reentrant=False, barrier=barrier)
        second = make_scorer(reentrant=False, barrier=barrier)
        futures = [executor.submit(_request(m, image)[0]) for m in (first, second)]
        assert all(isinstance(f.result(timeout=10), Success) for f in futures)

    def test_submit_after_shutdown_completes_request_with_failure(
        self, settings: Settings, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        pool = InferenceExecutor(settings)
        pool.shutdown()
        request, callback = _request(make_scorer(), image)
        started = MagicMock()

        with pytest.raises(RuntimeError):
            pool.submit(request, on_started=started)

        started.assert_called_once()
        assert request.state is RequestState.COMPLETED
        callback.assert_called_once_with(Failure(ErrorKind.INFERENCE_FAILED, "Inference executor is shut down"))
        assert pool.queue_depth == 0

    def test_non_reentrant_model_reuses_one_lock(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        scorer = make_scorer(reentrant=False)
        for _ in range(3):
            executor.submit(_request(scorer, image)[0]).result(timeout=5)
        assert len(executor._handle_locks) == 1

    def test_handle_lock_released_with_model(
        self, executor: InferenceExecutor, make_scorer: Callable[..., FakeScorer], image: np.ndarray
    ) -> None:
        scorer = make_scorer(reentrant=False)
        request, _ = _request(scorer, image)
        executor.submit(request).result(timeout=5)
        assert len(executor._handle_locks) == 1

        del request, scorer
        # The worker drops its work item just after the future resolves.
        for _ in range(500):
            gc.collect()
            if len(executor._handle_locks) == 0:
                break
            time.sleep(0.01)
        assert len(executor._handle_locks) == 0
