"""Inference execution layer.

Architecture:
    asyncio event loop (primary context) -> ThreadPoolExecutor(1) -> ONNX inference

The classifier is loaded lazily on the worker thread the first time it is
needed. A failed load is remembered and never retried: every later call
fails fast with ModelUnavailableError until the process restarts.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from snaplabel.errors import InferenceExecutionError, ModelUnavailableError

if TYPE_CHECKING:
    from collections.abc import Callable

    from snaplabel.ml.image_classifier import ClassificationResult, ImageClassifier
    from snaplabel.ml.preprocessing import NormalizedImage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferenceEngine:
    """Owns the worker thread and the lazily loaded classifier."""

    def __init__(self, loader: Callable[[], ImageClassifier]) -> None:
        self._loader = loader
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="onnx-inference",
        )
        self._load_lock = threading.Lock()
        self._classifier: ImageClassifier | None = None
        self._load_error: str | None = None

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a synchronous function on the inference worker thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def classify(self, image: NormalizedImage) -> ClassificationResult:
        """Classify ``image`` on the worker thread.

        Raises:
            ModelUnavailableError: If the model failed to load (now or earlier).
            InferenceExecutionError: If the model call itself failed.
        """
        return await self.run(self._classify_sync, image)

    async def warm_up(self) -> None:
        """Load the model ahead of the first request."""
        await self.run(self._get_classifier)

    @property
    def model_loaded(self) -> bool:
        return self._classifier is not None

    @property
    def load_error(self) -> str | None:
        return self._load_error

    def shutdown(self) -> None:
        """Shut down the worker thread, waiting for a running call."""
        self._executor.shutdown(wait=True)

    # -- Worker thread ------------------------------------------------------

    def _get_classifier(self) -> ImageClassifier:
        with self._load_lock:
            if self._classifier is not None:
                return self._classifier
            if self._load_error is not None:
                raise ModelUnavailableError(self._load_error)

            try:
                classifier = self._loader()
            except Exception as exc:
                self._load_error = f"Model could not be loaded: {exc}"
                logger.exception("Model load failed; inference disabled until restart")
                raise ModelUnavailableError(self._load_error) from exc

            self._classifier = classifier
            logger.info("Model %s ready", classifier.model_name)
            return classifier

    def _classify_sync(self, image: NormalizedImage) -> ClassificationResult:
        classifier = self._get_classifier()
        try:
            candidates = classifier.classify(image)
        except Exception as exc:
            raise InferenceExecutionError(f"Inference failed: {type(exc).__name__}: {exc}") from exc
        return tuple(candidates)
