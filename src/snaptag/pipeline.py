"""Single-image classification pipeline.

Wires the model loader, inference executor, and result dispatcher together
for one owner and one consumer context. The model is loaded once in
``start``; every ``submit`` afterwards is fire-and-forget.
"""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING

from snaptag.config import get_settings
from snaptag.ml.dispatcher import OwnerRef, ResultDispatcher
from snaptag.ml.image_classifier import Failure, ModelLoadFailedError
from snaptag.ml.inference import InferenceExecutor
from snaptag.ml.model_manager import OnnxModelLoader
from snaptag.ml.request import ClassificationRequest

if TYPE_CHECKING:
    from concurrent.futures import Future

    from snaptag.config import Settings
    from snaptag.ml.context import ConsumerContext
    from snaptag.ml.dispatcher import ResultOwner
    from snaptag.ml.image_classifier import Image, Outcome, Scorer
    from snaptag.ml.model_manager import ModelLoader

logger = logging.getLogger(__name__)


class PipelineNotReadyError(RuntimeError):
    """Raised when submitting to a pipeline without a loaded model."""


class ClassificationPipeline:
    """Classifies images off-thread and reports to an owner on its context."""

    def __init__(
        self,
        owner: ResultOwner,
        context: ConsumerContext,
        *,
        settings: Settings | None = None,
        loader: ModelLoader | None = None,
        executor: InferenceExecutor | None = None,
        dispatcher: ResultDispatcher | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._owner = OwnerRef(owner)
        self._context = context
        self._loader = loader
        self._executor = executor or InferenceExecutor(self._settings)
        self._dispatcher = dispatcher or ResultDispatcher()
        self._model: Scorer | None = None
        self._load_attempted = False

    @property
    def owner(self) -> OwnerRef:
        return self._owner

    @property
    def executor(self) -> InferenceExecutor:
        return self._executor

    @property
    def model(self) -> Scorer | None:
        return self._model

    @property
    def ready(self) -> bool:
        return self._model is not None

    def start(self) -> bool:
        """Load the configured model once.

        On failure the owner is sent a single ``MODEL_LOAD_FAILED`` outcome
        and the pipeline stays unready; there is no retry.

        Returns:
            Whether a model is loaded.
        """
        if self._load_attempted:
            return self.ready
        self._load_attempted = True

        loader = self._loader or OnnxModelLoader(self._settings)
        try:
            self._model = loader.load(self._settings.model_name)
        except ModelLoadFailedError as exc:
            logger.error("Model load failed: %s", exc)
            self._dispatcher.deliver(self._owner, Failure.from_error(exc), self._context)
            return False

        logger.info("Pipeline ready with %s", self._model.model_name)
        return True

    def submit(
        self,
        image: Image,
        model: Scorer | None = None,
        *,
        owner: ResultOwner | None = None,
    ) -> Future[Outcome]:
        """Classify ``image`` in the background.

        Requests run concurrently and complete independently; a second
        submit never cancels or waits on an earlier one.

        Args:
            image: Image to classify.
            model: Handle to score with. Defaults to the loaded model.
            owner: Receives this request's notifications instead of the
                pipeline's owner. Held weakly, like the pipeline's owner.

        Raises:
            PipelineNotReadyError: If no model was given and none is loaded.
        """
        if model is None:
            model = self._model
        if model is None:
            raise PipelineNotReadyError("No classification model is loaded")

        owner_ref = self._owner if owner is None else OwnerRef(owner)
        deliver = functools.partial(self._dispatcher.deliver, owner_ref, context=self._context)
        request = ClassificationRequest(model, image, on_complete=deliver)
        return self._executor.submit(
            request,
            on_started=functools.partial(self._dispatcher.notify_started, owner_ref, self._context),
        )

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
