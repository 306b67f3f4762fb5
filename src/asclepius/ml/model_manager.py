"""Model manager: locate, download, and load ONNX classification models.

Resolves a model name to a bundled ONNX file under ``models_dir`` (fetching it
from HuggingFace when a repository is configured), creates the
InferenceSession, and pairs it with the model's labels.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from asclepius.errors import ModelLoadError
from asclepius.ml.image_classifier import ORT_ERRORS, OnnxImageClassifier

if TYPE_CHECKING:
    from asclepius.config import ClassifierConfig, Settings
    from asclepius.ml.image_classifier import ImageClassifier

logger = logging.getLogger(__name__)

LABELS_SUFFIX = ".labels.txt"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model asset is present locally and return its file path."""
        ...

    def load_classifier(self, config: ClassifierConfig) -> ImageClassifier:
        """Load the configured model into a ready-to-use classifier.

        Raises:
            ModelLoadError: If the asset is missing, corrupt, or unsupported.
        """
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    filename: str
    task: ModelTask
    license: str
    labels: tuple[str, ...] = ()
    input_mean: float = 0.0
    input_std: float = 255.0


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "cancer_classification": ModelSpec(
        name="cancer_classification",
        filename="cancer_classification.onnx",
        task=ModelTask.IMAGE_CLASSIFICATION,
        license="Apache-2.0",
        labels=("Cancer", "Non Cancer"),
    ),
}


def resolve_spec(model_name: str) -> ModelSpec:
    """Look up a registered model, or describe an unregistered ``*.onnx`` file."""
    spec = MODEL_REGISTRY.get(model_name)
    if spec is not None:
        return spec
    if model_name.endswith(".onnx"):
        return ModelSpec(
            name=Path(model_name).stem,
            filename=model_name,
            task=ModelTask.IMAGE_CLASSIFICATION,
            license="unknown",
        )
    raise KeyError(f"Unknown model: {model_name}")


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Locates model assets and builds onnxruntime-backed classifiers."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._model_paths: dict[str, Path] = {}
        self._providers = self._build_providers()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model path, downloading from HuggingFace if configured.

        Raises:
            ModelLoadError: If the asset is absent and cannot be fetched.
        """
        spec = resolve_spec(model_name)

        cached = self._model_paths.get(model_name)
        if cached is not None and cached.exists():
            return cached

        local = self._models_dir / spec.filename
        if local.exists():
            self._model_paths[model_name] = local
            return local

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise ModelLoadError(f"Model asset not found: {local}")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=spec.filename,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def create_session(self, model_name: str, num_threads: int) -> InferenceSession:
        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._build_session_options(num_threads),
            providers=self._providers,
        )
        logger.info("Loaded session for %s (intra_op_threads=%s)", model_name, num_threads)
        return session

    def load_classifier(self, config: ClassifierConfig) -> OnnxImageClassifier:
        try:
            spec = resolve_spec(config.model_name)
            session = self.create_session(config.model_name, config.num_threads)
            labels = self.read_labels(spec, session)
        except ModelLoadError:
            raise
        except (KeyError, OSError, RuntimeError, ValueError, *ORT_ERRORS) as exc:
            raise ModelLoadError(f"Cannot load model '{config.model_name}': {exc}") from exc

        return OnnxImageClassifier(
            session,
            labels,
            model_name=spec.name,
            score_threshold=config.confidence_threshold,
            max_results=config.max_results,
            input_mean=spec.input_mean,
            input_std=spec.input_std,
        )

    def read_labels(self, spec: ModelSpec, session: InferenceSession) -> list[str]:
        """Labels from a sidecar file, else model metadata, else the registry."""
        sidecar = self._models_dir / (Path(spec.filename).stem + LABELS_SUFFIX)
        if sidecar.exists():
            return [line.strip() for line in sidecar.read_text(encoding="utf-8").splitlines() if line.strip()]

        metadata = session.get_modelmeta().custom_metadata_map
        raw = metadata.get("labels")
        if raw:
            labels = json.loads(raw)
            if isinstance(labels, list):
                return [str(label) for label in labels]
            logger.warning("Ignoring non-list 'labels' metadata in %s", spec.filename)

        return list(spec.labels)

    def available_models(self) -> list[ModelSpec]:
        return list(MODEL_REGISTRY.values())

    # -- Internal -----------------------------------------------------------

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

    def _build_session_options(self, num_threads: int) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = num_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
