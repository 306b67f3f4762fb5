"""Image classification runtime wrapper.

Turns an RGB buffer into the tensor the ONNX model expects, runs the session,
and applies the score threshold and result cap the model was loaded with.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np
from onnxruntime.capi.onnxruntime_pybind11_state import (
    EngineError,
    EPFail,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    ModelLoaded,
    NoModel,
    NoSuchFile,
    NotImplemented as OrtNotImplemented,
    RuntimeException,
)

from asclepius.errors import InferenceError
from asclepius.ml.preprocessing import NormalizeOp, ResizeOp
from asclepius.ml.results import ResultItem

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)

# onnxruntime raises these pybind exception types rather than builtins.
ORT_ERRORS = (
    EngineError,
    EPFail,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    ModelLoaded,
    NoModel,
    NoSuchFile,
    OrtNotImplemented,
    RuntimeException,
)


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.generic]) -> list[ResultItem]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB array.

        Returns:
            Results with score >= threshold, at most max_results of them,
            sorted by score (descending).

        Raises:
            InferenceError: If the model produces no output.
        """
        ...

    def close(self) -> None:
        """Release the underlying model resources."""
        ...


class OnnxImageClassifier:
    """ImageClassifier backed by an onnxruntime InferenceSession."""

    def __init__(
        self,
        session: InferenceSession,
        labels: Sequence[str],
        *,
        model_name: str,
        score_threshold: float,
        max_results: int,
        input_mean: float = 0.0,
        input_std: float = 255.0,
    ) -> None:
        self._session: InferenceSession | None = session
        self._labels = list(labels)
        self._model_name = model_name
        self._score_threshold = score_threshold
        self._max_results = max_results

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._input_type: str = model_input.type
        shape = list(model_input.shape)
        self._channels_first = len(shape) == 4 and shape[1] == 3
        spatial = shape[2:4] if self._channels_first else shape[1:3]
        fixed_size = len(spatial) == 2 and all(isinstance(dim, int) and dim > 0 for dim in spatial)
        self._resize = ResizeOp(*spatial) if fixed_size else None
        self._normalize = None if self._input_type == "tensor(uint8)" else NormalizeOp(input_mean, input_std)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    def to_tensor(self, image: NDArray[np.generic]) -> NDArray[np.generic]:
        """Shape an RGB image into the model's single-image input batch."""
        if self._resize is not None:
            image = self._resize(image)
        if np.issubdtype(image.dtype, np.floating):
            # Already scaled by the caller's processing chain.
            image = image.astype(np.float32, copy=False)
        elif self._normalize is not None:
            image = self._normalize(image)
        if self._channels_first:
            image = np.transpose(image, (2, 0, 1))
        return np.ascontiguousarray(image[np.newaxis, ...])

    def classify(self, image: NDArray[np.generic]) -> list[ResultItem]:
        if self._session is None:
            raise InferenceError(f"Model '{self._model_name}' is closed")

        try:
            outputs = self._session.run(None, {self._input_name: self.to_tensor(image)})
        except ORT_ERRORS as exc:
            raise InferenceError(f"Inference failed: {exc}") from exc
        if not outputs or outputs[0] is None:
            raise InferenceError("Model returned no output")

        scores = _to_probabilities(np.asarray(outputs[0]))
        ranked = np.argsort(-scores, kind="stable")

        results: list[ResultItem] = []
        for index in ranked:
            score = float(scores[index])
            if score < self._score_threshold:
                break
            results.append(ResultItem(label=self._label_for(int(index)), score=score))
            if len(results) >= self._max_results:
                break
        logger.debug("Classified with %s: %s", self._model_name, results)
        return results

    def close(self) -> None:
        self._session = None

    def _label_for(self, index: int) -> str:
        if index < len(self._labels):
            return self._labels[index]
        return str(index)


def _to_probabilities(raw: NDArray[np.generic]) -> NDArray[np.float64]:
    if raw.dtype == np.uint8:
        # Quantized outputs are scaled to 0-255.
        return raw.reshape(-1).astype(np.float64) / 255.0
    scores = raw.reshape(-1).astype(np.float64)
    if scores.size == 0:
        return scores
    # Values outside [0, 1] are logits.
    if (scores < 0).any() or (scores > 1).any():
        exp = np.exp(scores - scores.max())
        scores = exp / exp.sum()
    return scores
