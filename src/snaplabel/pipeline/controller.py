"""Pipeline controller: Busy/Idle gate and outcome delivery.

All state transitions happen on the asyncio event loop that calls
``submit``. Normalization and inference run on the engine's worker thread.
Exactly one outcome is delivered per accepted submission, always after the
state has been reset to IDLE.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from snaplabel.errors import PipelineBusyError, SnapLabelError
from snaplabel.pipeline.selector import select_top

if TYPE_CHECKING:
    from collections.abc import Callable

    from snaplabel.ml.image_classifier import ClassificationCandidate
    from snaplabel.ml.inference import InferenceEngine
    from snaplabel.ml.preprocessing import ImageNormalizer, RawImage

logger = logging.getLogger(__name__)

NO_RESULT_MESSAGE = "No result: no identifiable class in this image"


class PipelineState(StrEnum):
    IDLE = "idle"
    BUSY = "busy"


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reported:
    """The model produced at least one candidate; this is the best one."""

    candidate: ClassificationCandidate


@dataclass(frozen=True)
class ReportedNone:
    """The model ran successfully but produced no candidates."""


@dataclass(frozen=True)
class Failed:
    """The run ended with an error. ``error_kind`` is the exception class name."""

    error_kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> Failed:
        return cls(error_kind=type(exc).__name__, message=str(exc) or type(exc).__name__)


Outcome = Reported | ReportedNone | Failed


def format_outcome(outcome: Outcome) -> str:
    """Render an outcome as the notification text shown to the user."""
    if isinstance(outcome, Reported):
        return f"{outcome.candidate.label}, confidence: {outcome.candidate.confidence}"
    if isinstance(outcome, ReportedNone):
        return NO_RESULT_MESSAGE
    return outcome.message


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class PipelineController:
    """Runs at most one classification at a time and reports its outcome."""

    def __init__(
        self,
        normalizer: ImageNormalizer,
        engine: InferenceEngine,
        sink: Callable[[Outcome], None],
        target_size: tuple[int, int],
        on_busy_changed: Callable[[bool], None] | None = None,
    ) -> None:
        self._normalizer = normalizer
        self._engine = engine
        self._sink = sink
        self._target_size = target_size
        self._on_busy_changed = on_busy_changed

        self._lock = threading.Lock()
        self._state = PipelineState.IDLE
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    @property
    def busy(self) -> bool:
        return self.state is PipelineState.BUSY

    def submit(self, raw: RawImage | None) -> None:
        """Start classifying ``raw``. Must be called from the event loop.

        A ``None`` image (nothing selected) is ignored.

        Raises:
            PipelineBusyError: If a previous submission is still running.
        """
        if raw is None:
            logger.debug("No image selected; nothing to classify")
            return

        loop = asyncio.get_running_loop()
        with self._lock:
            if self._state is PipelineState.BUSY:
                logger.warning("Rejected submission: a classification is already running")
                raise PipelineBusyError("A classification is already in progress")
            self._state = PipelineState.BUSY

        self._notify_busy(True)
        logger.info("Classification started (%dx%d image)", raw.width, raw.height)
        self._task = loop.create_task(self._run(raw))
        self._task.add_done_callback(self._on_task_done)

    async def wait_idle(self) -> None:
        """Wait for the in-flight run, if any, to deliver its outcome."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    # -- Internal -----------------------------------------------------------

    async def _run(self, raw: RawImage) -> None:
        try:
            outcome = await self._execute(raw)
        finally:
            self._release()
        self._deliver(outcome)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        # A task cancelled before its first step never reaches the finally above.
        if task.cancelled() and task is self._task:
            self._release()

    def _release(self) -> None:
        with self._lock:
            if self._state is PipelineState.IDLE:
                return
            self._state = PipelineState.IDLE
        self._notify_busy(False)

    async def _execute(self, raw: RawImage) -> Outcome:
        try:
            normalized = await self._engine.run(self._normalizer.normalize, raw, self._target_size)
            result = await self._engine.classify(normalized)
        except SnapLabelError as exc:
            logger.warning("Classification failed (%s): %s", type(exc).__name__, exc)
            return Failed.from_exception(exc)
        except Exception as exc:
            logger.exception("Unexpected error during classification")
            return Failed.from_exception(exc)

        top = select_top(result)
        if top is None:
            logger.info("Classification finished with no candidates")
            return ReportedNone()
        logger.info("Classified as %s (confidence %.4f)", top.label, top.confidence)
        return Reported(top)

    def _deliver(self, outcome: Outcome) -> None:
        try:
            self._sink(outcome)
        except Exception:
            logger.exception("Result sink raised while handling %r", outcome)

    def _notify_busy(self, busy: bool) -> None:
        if self._on_busy_changed is None:
            return
        try:
            self._on_busy_changed(busy)
        except Exception:
            logger.exception("Busy listener raised")
