"""Model loading: download, load, and wrap ONNX classification models.

Handles downloading models and their label maps from HuggingFace, creating
the ONNX InferenceSession, and exposing the loaded model as an immutable
``OnnxModelHandle`` whose ``score`` runs a single forward pass.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from snaptag.ml.image_classifier import (
    ClassificationLabel,
    InferenceFailedError,
    ModelLoadFailedError,
    UnexpectedResultShapeError,
)
from snaptag.ml.preprocessing import decode_image, softmax, to_input_tensor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snaptag.config import Settings
    from snaptag.ml.image_classifier import Image, Scorer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelLoader(Protocol):
    """Protocol for one-shot model loading."""

    def load(self, model_name: str | None = None) -> Scorer:
        """Load a model and return its handle.

        Raises:
            ModelLoadFailedError: If the model is unknown, missing, or corrupt.
        """
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------

_IMAGENET_MEAN = (0.485, 0.456, 0.406)
_IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    labels_filename: str
    input_size: tuple[int, int]
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "resnet50": ModelSpec(
        name="resnet50",
        repo_id="Xenova/resnet-50",
        filename="model.onnx",
        subfolder="onnx",
        labels_filename="config.json",
        input_size=(224, 224),
        mean=_IMAGENET_MEAN,
        std=_IMAGENET_STD,
        license="Apache-2.0",
    ),
    "convnext_tiny": ModelSpec(
        name="convnext_tiny",
        repo_id="Xenova/convnext-tiny-224",
        filename="model.onnx",
        subfolder="onnx",
        labels_filename="config.json",
        input_size=(224, 224),
        mean=_IMAGENET_MEAN,
        std=_IMAGENET_STD,
        license="Apache-2.0",
    ),
    "vit_base_patch16_224": ModelSpec(
        name="vit_base_patch16_224",
        repo_id="Xenova/vit-base-patch16-224",
        filename="model.onnx",
        subfolder="onnx",
        labels_filename="config.json",
        input_size=(224, 224),
        mean=(0.5, 0.5, 0.5),
        std=(0.5, 0.5, 0.5),
        license="Apache-2.0",
    ),
}


# ---------------------------------------------------------------------------
# Loaded model
# ---------------------------------------------------------------------------


class OnnxModelHandle:
    """A loaded, read-only classification model.

    ONNX Runtime sessions allow concurrent ``run`` calls, so the handle is
    reentrant and may be shared across in-flight requests.
    """

    def __init__(
        self,
        spec: ModelSpec,
        session: InferenceSession,
        labels: tuple[str, ...],
        *,
        top_k: int,
        max_image_pixels: int,
    ) -> None:
        self._spec = spec
        self._session = session
        self._labels = labels
        self._top_k = top_k
        self._max_image_pixels = max_image_pixels
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def reentrant(self) -> bool:
        return True

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def score(self, image: Image) -> list[ClassificationLabel]:
        """Run one forward pass and return the top-k labels, best first.

        Raises:
            InferenceFailedError: If decoding or the forward pass fails.
            UnexpectedResultShapeError: If the model output is not a single row of logits.
        """
        if isinstance(image, (bytes, bytearray)):
            pixels = decode_image(bytes(image), self._max_image_pixels)
        else:
            pixels = np.asarray(image, dtype=np.uint8)

        tensor = to_input_tensor(pixels, self._spec.input_size, self._spec.mean, self._spec.std)
        try:
            outputs = self._session.run(None, {self._input_name: tensor})
        except Exception as exc:
            raise InferenceFailedError(f"{self.model_name} forward pass failed: {exc}") from exc

        logits: NDArray[np.float32] = np.asarray(outputs[0], dtype=np.float32)
        if logits.shape != (1, len(self._labels)):
            raise UnexpectedResultShapeError(
                f"{self.model_name} returned shape {logits.shape}, expected (1, {len(self._labels)})"
            )

        probs = softmax(logits[0])
        ranked = np.argsort(probs)[::-1][: self._top_k]
        return [ClassificationLabel(identifier=self._labels[i], confidence=float(probs[i])) for i in ranked]


# ---------------------------------------------------------------------------
# Concrete loader
# ---------------------------------------------------------------------------


class OnnxModelLoader:
    """Downloads a classification model and creates its inference session."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def load(self, model_name: str | None = None) -> OnnxModelHandle:
        """Download (if needed) and load a model, returning its handle."""
        name = model_name or self._settings.model_name
        spec = self._get_spec(name)
        model_path, labels_path = self.ensure_downloaded(spec)
        labels = self._read_labels(spec, labels_path)

        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadFailedError(f"Could not load {name} from {model_path}: {exc}") from exc

        logger.info("Loaded %s (%d labels, providers=%s)", name, len(labels), self._providers)
        return OnnxModelHandle(
            spec,
            session,
            labels,
            top_k=self._settings.top_k,
            max_image_pixels=self._settings.max_image_pixels,
        )

    def ensure_downloaded(self, spec: ModelSpec) -> tuple[Path, Path]:
        """Download the model weights and label map if not already present locally."""
        try:
            model_path = hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
            labels_path = hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.labels_filename,
                local_dir=str(self._models_dir),
            )
        except Exception as exc:
            raise ModelLoadFailedError(f"Could not download {spec.name} from {spec.repo_id}: {exc}") from exc

        logger.info("Model %s available at %s", spec.name, model_path)
        return Path(model_path), Path(labels_path)

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise ModelLoadFailedError(f"Unknown model: {model_name}") from None

    @staticmethod
    def _read_labels(spec: ModelSpec, labels_path: Path) -> tuple[str, ...]:
        try:
            id2label = json.loads(labels_path.read_text(encoding="utf-8"))["id2label"]
            indexed = {int(idx): str(label) for idx, label in id2label.items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ModelLoadFailedError(f"Corrupt label map for {spec.name}: {exc}") from exc

        if not indexed or sorted(indexed) != list(range(len(indexed))):
            raise ModelLoadFailedError(f"Label map for {spec.name} is empty or not contiguous")
        return tuple(indexed[i] for i in range(len(indexed)))

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
