"""Prediction board: the HTTP shell's view of the pipeline.

Acts as the controller's result sink and busy listener, keeps the latest
notification for polling clients and resolves futures for requests that
wait on a run.
"""

from __future__ import annotations

import asyncio

from snaplabel.pipeline.controller import Outcome, format_outcome

INITIAL_MESSAGE = "Select an image to classify"
BUSY_MESSAGE = "Processing..."


class PredictionBoard:
    """Latest outcome, current busy flag and pending waiters."""

    def __init__(self) -> None:
        self._busy = False
        self._outcome: Outcome | None = None
        self._waiters: list[asyncio.Future[Outcome]] = []

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def outcome(self) -> Outcome | None:
        return self._outcome

    @property
    def message(self) -> str:
        if self._busy:
            return BUSY_MESSAGE
        if self._outcome is None:
            return INITIAL_MESSAGE
        return format_outcome(self._outcome)

    def set_busy(self, busy: bool) -> None:
        self._busy = busy

    def expect(self) -> asyncio.Future[Outcome]:
        """Return a future resolved by the next delivered outcome."""
        future: asyncio.Future[Outcome] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        return future

    def discard(self, future: asyncio.Future[Outcome]) -> None:
        if future in self._waiters:
            self._waiters.remove(future)
        future.cancel()

    def __call__(self, outcome: Outcome) -> None:
        self._outcome = outcome
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(outcome)
