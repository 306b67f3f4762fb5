"""Shared fakes for classification tests."""

from __future__ import annotations

import io
import threading
import time
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from asclepius.errors import ModelLoadError
from asclepius.ml.model_manager import MODEL_REGISTRY, ModelSpec
from asclepius.ml.results import ResultItem

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from asclepius.config import ClassifierConfig
    from asclepius.ml.results import ClassificationResult


class FakeClassifier:
    """Returns canned results and records what it was asked to classify."""

    def __init__(
        self,
        items: list[ResultItem] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.items = items
        self.error = error
        self.delay = delay
        self.seen: list[NDArray[np.generic]] = []
        self.closed = False
        self.max_active = 0
        self._active = 0
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return "fake"

    def classify(self, image: NDArray[np.generic]) -> list[ResultItem] | None:
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay:
                time.sleep(self.delay)
            self.seen.append(image)
            if self.error is not None:
                raise self.error
            return None if self.items is None else list(self.items)
        finally:
            with self._lock:
                self._active -= 1

    def close(self) -> None:
        self.closed = True


class FakeModelManager:
    """Hands out a classifier, or fails the first ``failures`` loads."""

    def __init__(self, classifier: FakeClassifier | None = None, *, failures: int = 0) -> None:
        self.classifier = classifier if classifier is not None else FakeClassifier([])
        self.failures = failures
        self.load_calls = 0
        self.configs: list[ClassifierConfig] = []

    def load_classifier(self, config: ClassifierConfig) -> FakeClassifier:
        self.load_calls += 1
        self.configs.append(config)
        if self.load_calls <= self.failures:
            raise ModelLoadError(f"Model asset not found: {config.model_name}")
        return self.classifier

    def available_models(self) -> list[ModelSpec]:
        return list(MODEL_REGISTRY.values())


class RecordingListener:
    def __init__(self) -> None:
        self.errors: list[str] = []
        self.results: list[ClassificationResult] = []

    def on_error(self, error: str) -> None:
        self.errors.append(error)

    def on_results(self, results: ClassificationResult) -> None:
        self.results.append(results)


def make_png(width: int = 32, height: int = 24, mode: str = "RGB") -> bytes:
    color = 128 if mode == "L" else (200, 30, 30, 255)[: len(mode)]
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture()
def rgb_image() -> NDArray[np.uint8]:
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(48, 64, 3), dtype=np.uint8)

