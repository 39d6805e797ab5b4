"""Image classifiers: real ONNX inference and the demo-mode fallback.

Both implementations satisfy the same protocol so callers never branch on
which one is active.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np

from imagescanner.errors import InferenceFailure
from imagescanner.ml.preprocessing import preprocess_for_classification

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from imagescanner.ml.labels import LabelTable
    from imagescanner.ml.model_manager import ModelSpec

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"

# Fallback confidence is drawn in hundredths of a percent: [85.00, 99.00)
_FALLBACK_MIN_HUNDREDTHS = 8500
_FALLBACK_MAX_HUNDREDTHS = 9900


class ClassifierMode(StrEnum):
    MODEL = "model"
    DEMO = "demo"


@dataclass(frozen=True)
class PredictionResult:
    """Top-1 prediction: label and confidence as a two-decimal percentage string."""

    label: str
    confidence: str


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def mode(self) -> ClassifierMode:
        """Return whether results come from a real model or the demo fallback."""
        ...

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> PredictionResult:
        """Classify an image and return the top prediction.

        Args:
            image: HxWx3 RGB uint8 array.
        """
        ...


def format_confidence(probability: float) -> str:
    """Format a probability in [0, 1] as a percentage with two decimals."""
    return f"{probability * 100:.2f}"


def softmax(logits: NDArray[np.floating]) -> NDArray[np.float32]:
    shifted = logits.astype(np.float32) - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


def rank_predictions(scores: NDArray[np.floating], labels: Sequence[str]) -> PredictionResult:
    """Pick the highest-scoring class and map it through the label table.

    Ties go to the lowest index. An index past the end of ``labels`` yields
    ``"Unknown"``.
    """
    flat = np.asarray(scores).reshape(-1)
    if flat.size == 0:
        raise InferenceFailure("Model returned no scores")

    index = int(np.argmax(flat))
    label = labels[index] if index < len(labels) else UNKNOWN_LABEL
    return PredictionResult(label=label, confidence=format_confidence(float(flat[index])))


class OnnxImageClassifier:
    """Runs a loaded ONNX classification model and ranks its output."""

    def __init__(self, session: InferenceSession, spec: ModelSpec, labels: LabelTable) -> None:
        self._session = session
        self._spec = spec
        self._labels = labels
        self._input_name: str = session.get_inputs()[0].name

    @property
    def mode(self) -> ClassifierMode:
        return ClassifierMode.MODEL

    @property
    def model_name(self) -> str:
        return self._spec.name

    def classify(self, image: NDArray[np.uint8]) -> PredictionResult:
        tensor = preprocess_for_classification(image, self._spec.input_size)
        if self._spec.layout == "NCHW":
            tensor = np.ascontiguousarray(tensor.transpose(0, 3, 1, 2))

        outputs = self._session.run(None, {self._input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if self._spec.output == "logits":
            scores = softmax(scores)

        result = rank_predictions(scores, self._labels.get())
        logger.debug("Classified image as %r (%s%%)", result.label, result.confidence)
        return result


class FallbackClassifier:
    """Demo-mode classifier returning a random plausible label.

    Used only when no model could be acquired.
    """

    def __init__(self, labels: Sequence[str], rng: random.Random | None = None) -> None:
        if not labels:
            raise ValueError("Fallback classifier needs at least one label")
        self._labels = tuple(labels)
        self._rng = rng or random.Random()

    @property
    def mode(self) -> ClassifierMode:
        return ClassifierMode.DEMO

    @property
    def model_name(self) -> str:
        return "demo"

    def classify(self, image: NDArray[np.uint8]) -> PredictionResult:
        label = self._rng.choice(self._labels)
        hundredths = self._rng.randrange(_FALLBACK_MIN_HUNDREDTHS, _FALLBACK_MAX_HUNDREDTHS)
        return PredictionResult(label=label, confidence=f"{hundredths / 100:.2f}")
