"""Image classification model wrapper.

The model is treated as an opaque scorer: a normalized tensor goes in, one
score per class comes out. Ultralytics-style classification exports (the
``best.onnx`` family) carry their class names in the ``names`` metadata entry.
"""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from snaplabel.ml.preprocessing import NormalizedImage

logger = logging.getLogger(__name__)

_PROBABILITY_TOLERANCE = 1e-3


@dataclass(frozen=True)
class ClassificationCandidate:
    """A single (label, confidence) prediction."""

    label: str
    confidence: float


# Ordered as the model produced them. Empty means "no identifiable class".
ClassificationResult = tuple[ClassificationCandidate, ...]


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NormalizedImage) -> Sequence[ClassificationCandidate]:
        """Classify a normalized image.

        Args:
            image: Tensor at the model's fixed input size.

        Returns:
            Candidates in model output order (no sorting is applied).
        """
        ...


class OnnxImageClassifier:
    """Runs a classification model through an ONNX Runtime session."""

    def __init__(
        self,
        session: InferenceSession,
        model_name: str,
        labels: Sequence[str] | None = None,
        min_confidence: float = 0.0,
    ) -> None:
        self._session = session
        self._model_name = model_name
        self._input_name: str = session.get_inputs()[0].name
        self._labels: list[str] = list(labels) if labels else labels_from_metadata(session)
        self._min_confidence = min_confidence

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    def classify(self, image: NormalizedImage) -> list[ClassificationCandidate]:
        outputs = self._session.run(None, {self._input_name: image.tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if not np.isfinite(scores).all():
            raise ValueError(f"Model produced non-finite scores: {scores[~np.isfinite(scores)][:5]}")
        probabilities = to_probabilities(scores)

        candidates: list[ClassificationCandidate] = []
        for index, value in enumerate(probabilities):
            # Round-trip through the float32 repr: 0.87, not 0.8700000047683716.
            confidence = float(str(np.float32(min(max(float(value), 0.0), 1.0))))
            if confidence < self._min_confidence:
                continue
            candidates.append(ClassificationCandidate(label=self._label_for(index), confidence=confidence))
        return candidates

    def _label_for(self, index: int) -> str:
        if index < len(self._labels):
            return self._labels[index]
        return f"class_{index}"


def to_probabilities(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    """Return ``scores`` unchanged if they already form a distribution, else normalize them.

    A single out-of-range score is a binary logit and goes through a sigmoid;
    several go through a softmax.
    """
    if scores.size == 0:
        return scores
    if scores.size == 1 and not 0.0 <= float(scores[0]) <= 1.0:
        return (1.0 / (1.0 + np.exp(-scores))).astype(np.float32)
    in_range = bool(scores.min() >= 0.0 and scores.max() <= 1.0)
    if in_range and (scores.size == 1 or abs(float(scores.sum()) - 1.0) <= _PROBABILITY_TOLERANCE):
        return scores
    shifted = np.exp(scores - scores.max())
    return (shifted / shifted.sum()).astype(np.float32)


def labels_from_metadata(session: InferenceSession) -> list[str]:
    """Read class names from the model's ``names`` metadata, if present."""
    raw = session.get_modelmeta().custom_metadata_map.get("names")
    if not raw:
        return []
    try:
        names = ast.literal_eval(raw)
    except (ValueError, SyntaxError):
        logger.warning("Ignoring unparseable 'names' metadata: %.80s", raw)
        return []

    if isinstance(names, dict):
        return [str(names[key]) for key in sorted(names)]
    if isinstance(names, (list, tuple)):
        return [str(name) for name in names]
    logger.warning("Ignoring 'names' metadata of type %s", type(names).__name__)
    return []
