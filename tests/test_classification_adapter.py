"""Tests for the classification adapter."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest
from conftest import FakeClassifier, FakeModelManager, RecordingListener, make_png
from onnxruntime.capi.onnxruntime_pybind11_state import EPFail

from asclepius.config import ClassifierConfig
from asclepius.errors import InferenceError
from asclepius.ml.classification_adapter import (
    CLASSIFY_FAILED_MESSAGE,
    IMAGE_LOAD_FAILED_MESSAGE,
    MODEL_LOAD_FAILED_MESSAGE,
    ClassificationAdapter,
    ModelState,
)
from asclepius.ml.image_classifier import OnnxImageClassifier
from asclepius.ml.preprocessing import ImageProcessor, NormalizeOp, ResizeOp
from asclepius.ml.results import ClassificationResult, Failure, FailureReason, ResultItem, Success

if TYPE_CHECKING:
    from numpy.typing import NDArray


def _make_adapter(
    manager: FakeModelManager,
    listener: RecordingListener | None,
    **kwargs: object,
) -> ClassificationAdapter:
    return ClassificationAdapter(ClassifierConfig(), listener, manager, **kwargs)  # type: ignore[arg-type]


def _onnx_classifier(scores: list[float], labels: list[str], threshold: float, max_results: int) -> OnnxImageClassifier:
    model_input = MagicMock()
    model_input.name = "input"
    model_input.shape = [1, 16, 16, 3]
    model_input.type = "tensor(float)"
    session = MagicMock()
    session.get_inputs.return_value = [model_input]
    session.run.return_value = [np.array([scores], dtype=np.float32)]
    return OnnxImageClassifier(
        session,
        labels,
        model_name="test",
        score_threshold=threshold,
        max_results=max_results,
    )


# ---------------------------------------------------------------------------
# Construction and model state
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_eager_load_marks_loaded(self, listener: RecordingListener) -> None:
        manager = FakeModelManager()
        adapter = _make_adapter(manager, listener)

        assert adapter.state == ModelState.LOADED
        assert manager.load_calls == 1
        assert manager.configs[0].num_threads == 4
        assert listener.errors == []

    def test_lazy_load_defers_until_first_classify(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        manager = FakeModelManager()
        adapter = _make_adapter(manager, listener, eager=False)
        assert adapter.state == ModelState.UNINITIALIZED
        assert manager.load_calls == 0

        adapter.classify(rgb_image)
        adapter.classify(rgb_image)

        assert adapter.state == ModelState.LOADED
        assert manager.load_calls == 1

    def test_missing_model_does_not_raise(self, listener: RecordingListener) -> None:
        manager = FakeModelManager(failures=10)
        adapter = _make_adapter(manager, listener)

        assert adapter.state == ModelState.LOAD_FAILED
        assert listener.errors == [MODEL_LOAD_FAILED_MESSAGE]


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------


class TestClassify:
    def test_results_delivered_to_listener(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        classifier = FakeClassifier([ResultItem("malignant", 0.82)])
        adapter = _make_adapter(FakeModelManager(classifier), listener)

        outcome = adapter.classify(rgb_image)

        assert outcome == Success(ClassificationResult((ResultItem("malignant", 0.82),)))
        assert listener.results == [ClassificationResult((ResultItem("malignant", 0.82),))]
        assert listener.errors == []

    def test_threshold_and_cap_come_from_runtime(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        classifier = _onnx_classifier([0.82, 0.18], ["malignant", "benign"], threshold=0.1, max_results=1)
        manager = FakeModelManager()
        manager.classifier = classifier  # type: ignore[assignment]
        adapter = _make_adapter(manager, listener)

        adapter.classify(rgb_image)

        (result,) = listener.results
        assert [item.label for item in result] == ["malignant"]
        assert result.top is not None
        assert result.top.score == pytest.approx(0.82)

    @pytest.mark.parametrize(("threshold", "max_results"), [(0.1, 1), (0.1, 3), (0.3, 3), (0.0, 5), (0.9, 2)])
    def test_results_respect_threshold_and_cap(
        self,
        listener: RecordingListener,
        rgb_image: NDArray[np.uint8],
        threshold: float,
        max_results: int,
    ) -> None:
        classifier = _onnx_classifier([0.5, 0.25, 0.15, 0.1], ["a", "b", "c", "d"], threshold, max_results)
        manager = FakeModelManager()
        manager.classifier = classifier  # type: ignore[assignment]
        adapter = _make_adapter(manager, listener)

        adapter.classify(rgb_image)

        (result,) = listener.results
        assert len(result) <= max_results
        assert all(item.score >= threshold for item in result)
        scores = [item.score for item in result]
        assert scores == sorted(scores, reverse=True)

    def test_absent_pixels_report_image_error_only(self, listener: RecordingListener) -> None:
        classifier = FakeClassifier([ResultItem("malignant", 0.82)])
        adapter = _make_adapter(FakeModelManager(classifier), listener)

        outcome = adapter.classify(None)

        assert outcome == Failure(FailureReason.IMAGE_DECODE, IMAGE_LOAD_FAILED_MESSAGE)
        assert listener.errors == ["Failed to load image from URI"]
        assert listener.results == []
        assert classifier.seen == []

    def test_non_image_buffer_reports_image_error(self, listener: RecordingListener) -> None:
        adapter = _make_adapter(FakeModelManager(), listener)

        adapter.classify(np.zeros((4, 4, 3), dtype=np.float32))

        assert listener.errors == [IMAGE_LOAD_FAILED_MESSAGE]

    def test_missing_model_retries_once_then_reports(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        manager = FakeModelManager(failures=10)
        adapter = _make_adapter(manager, listener)

        outcome = adapter.classify(rgb_image)

        assert manager.load_calls == 2
        assert outcome == Failure(FailureReason.MODEL_LOAD, MODEL_LOAD_FAILED_MESSAGE)
        assert listener.errors == [MODEL_LOAD_FAILED_MESSAGE, MODEL_LOAD_FAILED_MESSAGE]
        assert listener.results == []
        assert manager.classifier.seen == []

    def test_retry_recovers_after_failed_construction(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        classifier = FakeClassifier([ResultItem("benign", 0.6)])
        manager = FakeModelManager(classifier, failures=1)
        adapter = _make_adapter(manager, listener)
        assert adapter.state == ModelState.LOAD_FAILED

        outcome = adapter.classify(rgb_image)

        assert outcome.ok
        assert adapter.state == ModelState.LOADED
        assert manager.load_calls == 2

    def test_same_input_gives_same_result(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        classifier = _onnx_classifier([0.3, 0.7], ["benign", "malignant"], threshold=0.1, max_results=2)
        manager = FakeModelManager()
        manager.classifier = classifier  # type: ignore[assignment]
        adapter = _make_adapter(manager, listener)

        first = adapter.classify(rgb_image)
        second = adapter.classify(rgb_image)

        assert first == second
        assert listener.results[0] == listener.results[1]

    def test_empty_runtime_output_is_success_with_no_items(
        self, listener: RecordingListener, rgb_image: NDArray[np.uint8]
    ) -> None:
        adapter = _make_adapter(FakeModelManager(FakeClassifier([])), listener)

        outcome = adapter.classify(rgb_image)

        assert outcome == Success(ClassificationResult(()))
        assert listener.results == [ClassificationResult(())]
        assert listener.errors == []

    def test_missing_runtime_output_reports_classify_error(
        self, listener: RecordingListener, rgb_image: NDArray[np.uint8]
    ) -> None:
        adapter = _make_adapter(FakeModelManager(FakeClassifier(None)), listener)

        outcome = adapter.classify(rgb_image)

        assert outcome == Failure(FailureReason.INFERENCE, CLASSIFY_FAILED_MESSAGE)
        assert listener.errors == ["Failed to classify image"]
        assert listener.results == []

    def test_runtime_error_reports_classify_error(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        classifier = FakeClassifier(error=InferenceError("Model returned no output"))
        adapter = _make_adapter(FakeModelManager(classifier), listener)

        outcome = adapter.classify(rgb_image)

        assert isinstance(outcome, Failure)
        assert outcome.reason == FailureReason.INFERENCE
        assert listener.errors == [CLASSIFY_FAILED_MESSAGE]

    def test_provider_failure_during_run_reports_classify_error(
        self, listener: RecordingListener, rgb_image: NDArray[np.uint8]
    ) -> None:
        classifier = _onnx_classifier([0.82, 0.18], ["malignant", "benign"], threshold=0.1, max_results=1)
        classifier._session.run.side_effect = EPFail("CUDA execution provider failed")  # type: ignore[union-attr]
        manager = FakeModelManager()
        manager.classifier = classifier  # type: ignore[assignment]
        adapter = _make_adapter(manager, listener)

        outcome = adapter.classify(rgb_image)

        assert outcome == Failure(FailureReason.INFERENCE, CLASSIFY_FAILED_MESSAGE)
        assert listener.errors == [CLASSIFY_FAILED_MESSAGE]

    def test_normalizing_processor_is_not_applied_twice(self, listener: RecordingListener) -> None:
        classifier = _onnx_classifier([0.82, 0.18], ["malignant", "benign"], threshold=0.1, max_results=1)
        manager = FakeModelManager()
        manager.classifier = classifier  # type: ignore[assignment]
        adapter = _make_adapter(manager, listener, image_processor=ImageProcessor([NormalizeOp()]))

        assert adapter.classify(np.full((8, 8, 3), 200, dtype=np.uint8)).ok

        (_, feeds), _ = classifier._session.run.call_args  # type: ignore[union-attr]
        tensor = feeds["input"]
        assert tensor.shape == (1, 16, 16, 3)
        assert tensor.max() == pytest.approx(200 / 255, abs=1e-4)

    def test_listener_may_classify_again_from_callback(self, rgb_image: NDArray[np.uint8]) -> None:
        class RetryingListener(RecordingListener):
            adapter: ClassificationAdapter | None = None

            def on_error(self, error: str) -> None:
                super().on_error(error)
                if self.adapter is not None and len(self.errors) == 1:
                    self.adapter.classify(rgb_image)

        retrying = RetryingListener()
        manager = FakeModelManager(failures=10)
        adapter = _make_adapter(manager, retrying, eager=False)
        retrying.adapter = adapter

        worker = threading.Thread(target=adapter.classify, args=(rgb_image,), daemon=True)
        worker.start()
        worker.join(timeout=2)

        assert not worker.is_alive()
        assert retrying.errors == [MODEL_LOAD_FAILED_MESSAGE, MODEL_LOAD_FAILED_MESSAGE]
        assert manager.load_calls == 2

    def test_image_processor_runs_before_inference(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        classifier = FakeClassifier([])
        processor = ImageProcessor([ResizeOp(8, 8)])
        adapter = _make_adapter(FakeModelManager(classifier), listener, image_processor=processor)

        adapter.classify(rgb_image)

        assert classifier.seen[0].shape == (8, 8, 3)

    def test_default_processing_passes_buffer_through(
        self, listener: RecordingListener, rgb_image: NDArray[np.uint8]
    ) -> None:
        classifier = FakeClassifier([])
        adapter = _make_adapter(FakeModelManager(classifier), listener)

        adapter.classify(rgb_image)

        np.testing.assert_array_equal(classifier.seen[0], rgb_image)

    def test_works_without_listener(self, rgb_image: NDArray[np.uint8]) -> None:
        adapter = _make_adapter(FakeModelManager(FakeClassifier([ResultItem("a", 0.9)])), None)
        assert adapter.classify(rgb_image).ok
        assert not adapter.classify(None).ok

    def test_concurrent_calls_are_serialized(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        classifier = FakeClassifier([], delay=0.02)
        adapter = _make_adapter(FakeModelManager(classifier), listener)

        threads = [threading.Thread(target=adapter.classify, args=(rgb_image,)) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(listener.results) == 4
        assert classifier.max_active == 1


# ---------------------------------------------------------------------------
# classify_source
# ---------------------------------------------------------------------------


class TestClassifySource:
    def test_decodes_bytes(self, listener: RecordingListener) -> None:
        classifier = FakeClassifier([ResultItem("benign", 0.7)])
        adapter = _make_adapter(FakeModelManager(classifier), listener)

        outcome = adapter.classify_source(make_png(width=20, height=10))

        assert outcome.ok
        assert classifier.seen[0].shape == (10, 20, 3)

    def test_undecodable_bytes_report_image_error(self, listener: RecordingListener) -> None:
        adapter = _make_adapter(FakeModelManager(), listener)

        outcome = adapter.classify_source(b"not an image")

        assert outcome == Failure(FailureReason.IMAGE_DECODE, IMAGE_LOAD_FAILED_MESSAGE)
        assert listener.errors == [IMAGE_LOAD_FAILED_MESSAGE]

    def test_none_source_reports_image_error(self, listener: RecordingListener) -> None:
        adapter = _make_adapter(FakeModelManager(), listener)
        adapter.classify_source(None)
        assert listener.errors == [IMAGE_LOAD_FAILED_MESSAGE]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_close_releases_model(self, listener: RecordingListener) -> None:
        manager = FakeModelManager()
        adapter = _make_adapter(manager, listener)

        adapter.close()

        assert manager.classifier.closed is True
        assert adapter.state == ModelState.UNINITIALIZED

    def test_context_manager_closes(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        manager = FakeModelManager()
        with _make_adapter(manager, listener) as adapter:
            assert adapter.classify(rgb_image).ok
        assert manager.classifier.closed is True

    def test_classify_after_close_reloads(self, listener: RecordingListener, rgb_image: NDArray[np.uint8]) -> None:
        manager = FakeModelManager()
        adapter = _make_adapter(manager, listener)
        adapter.close()

        adapter.classify(rgb_image)

        assert manager.load_calls == 2
        assert adapter.state == ModelState.LOADED
