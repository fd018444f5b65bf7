"""Top-candidate selection."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from snaplabel.ml.image_classifier import ClassificationCandidate, ClassificationResult


def select_top(result: ClassificationResult) -> ClassificationCandidate | None:
    """Return the highest-confidence candidate, or None for an empty result.

    Ties go to the candidate that appears first.
    """
    top: ClassificationCandidate | None = None
    for candidate in result:
        if top is None or candidate.confidence > top.confidence:
            top = candidate
    return top
