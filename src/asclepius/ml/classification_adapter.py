"""Classification adapter: owns one model handle and reports outcomes to a listener.

State machine:
    UNINITIALIZED -> LOADED | LOAD_FAILED

``classify`` makes exactly one synchronous load attempt whenever the model is
not LOADED. Every call delivers exactly one of ``on_results`` / ``on_error``
to the listener and also returns the same outcome as a ``Success`` or
``Failure`` value. Failures are never raised to the caller.

Inference runs on the calling thread; callers that must stay responsive
should submit ``classify`` to a worker (see ``inference.InferencePool``).
"""

from __future__ import annotations

import logging
import threading
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from asclepius.errors import ImageDecodeError, InferenceError, ModelLoadError
from asclepius.ml.preprocessing import ImageProcessor, as_rgb_array, load_image
from asclepius.ml.results import ClassificationResult, Failure, FailureReason, Success

if TYPE_CHECKING:
    from types import TracebackType

    from asclepius.config import ClassifierConfig
    from asclepius.ml.image_classifier import ImageClassifier
    from asclepius.ml.model_manager import ModelManager
    from asclepius.ml.preprocessing import ImageSource
    from asclepius.ml.results import Outcome

logger = logging.getLogger(__name__)

MODEL_LOAD_FAILED_MESSAGE = "Image classifier failed to initialize"
IMAGE_LOAD_FAILED_MESSAGE = "Failed to load image from URI"
CLASSIFY_FAILED_MESSAGE = "Failed to classify image"


class ClassifierListener(Protocol):
    """Receives classification outcomes."""

    def on_error(self, error: str) -> None: ...

    def on_results(self, results: ClassificationResult) -> None: ...


class ModelState(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADED = "loaded"
    LOAD_FAILED = "load_failed"


class ClassificationAdapter:
    """Runs single-image classification against a lazily loaded model."""

    def __init__(
        self,
        config: ClassifierConfig,
        listener: ClassifierListener | None,
        model_manager: ModelManager,
        *,
        image_processor: ImageProcessor | None = None,
        eager: bool = True,
    ) -> None:
        self._config = config
        self._listener = listener
        self._model_manager = model_manager
        self._image_processor = image_processor or ImageProcessor()
        self._lock = threading.Lock()
        self._classifier: ImageClassifier | None = None
        self._state = ModelState.UNINITIALIZED

        if eager:
            with self._lock:
                loaded = self._setup()
            if loaded is None:
                self._notify(Failure(FailureReason.MODEL_LOAD, MODEL_LOAD_FAILED_MESSAGE))

    @property
    def config(self) -> ClassifierConfig:
        return self._config

    @property
    def model_name(self) -> str:
        return self._config.model_name

    @property
    def state(self) -> ModelState:
        return self._state

    def classify(self, pixels: object) -> Outcome:
        """Classify a decoded pixel buffer (HxWx3 uint8 array or PIL image)."""
        with self._lock:
            outcome = self._classify_locked(pixels)
        # Listeners may call back into the adapter.
        self._notify(outcome)
        return outcome

    def classify_source(self, source: ImageSource | None, max_pixels: int | None = None) -> Outcome:
        """Decode an image reference (bytes, path, or file object) and classify it."""
        pixels = None
        if source is not None:
            try:
                pixels = load_image(source, max_pixels=max_pixels)
            except ImageDecodeError as exc:
                logger.warning("Image decode failed: %s", exc)
        return self.classify(pixels)

    def close(self) -> None:
        """Release the model handle. A later ``classify`` loads it again."""
        with self._lock:
            if self._classifier is not None:
                self._classifier.close()
                self._classifier = None
                logger.info("Released model %s", self._config.model_name)
            self._state = ModelState.UNINITIALIZED

    def __enter__(self) -> ClassificationAdapter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -- Internal -----------------------------------------------------------

    def _setup(self) -> ImageClassifier | None:
        try:
            classifier = self._model_manager.load_classifier(self._config)
        except ModelLoadError as exc:
            self._classifier = None
            self._state = ModelState.LOAD_FAILED
            logger.error("Failed to load model %s: %s", self._config.model_name, exc)
            return None

        self._classifier = classifier
        self._state = ModelState.LOADED
        logger.info(
            "Model %s ready (threshold=%s, max_results=%s)",
            self._config.model_name,
            self._config.confidence_threshold,
            self._config.max_results,
        )
        return classifier

    def _classify_locked(self, pixels: object) -> Outcome:
        logger.debug("classify: running")

        classifier = self._classifier
        if classifier is None:
            classifier = self._setup()
        if classifier is None:
            return Failure(FailureReason.MODEL_LOAD, MODEL_LOAD_FAILED_MESSAGE)

        try:
            image = as_rgb_array(pixels)
        except ImageDecodeError as exc:
            logger.warning("Rejected pixel buffer: %s", exc)
            return Failure(FailureReason.IMAGE_DECODE, IMAGE_LOAD_FAILED_MESSAGE)

        try:
            items = classifier.classify(self._image_processor.process(image))
        except (InferenceError, RuntimeError, ValueError) as exc:
            logger.error("Inference failed on %s: %s", self._config.model_name, exc)
            return Failure(FailureReason.INFERENCE, CLASSIFY_FAILED_MESSAGE)

        if items is None:
            return Failure(FailureReason.INFERENCE, CLASSIFY_FAILED_MESSAGE)

        result = ClassificationResult(tuple(items))
        logger.debug("classify: results = %s", result)
        return Success(result)

    def _notify(self, outcome: Outcome) -> None:
        if self._listener is None:
            return
        if isinstance(outcome, Success):
            self._listener.on_results(outcome.result)
        else:
            self._listener.on_error(outcome.message)
