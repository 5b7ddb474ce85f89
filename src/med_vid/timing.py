"""Timing helpers shared by the recorder and the publishing flow."""
from __future__ import annotations

import asyncio
import logging
import math

logger = logging.getLogger(__name__)


def format_duration(total_seconds: float | int | None) -> str:
    """Render ``total_seconds`` as ``MM:SS`` or ``HH:MM:SS`` past one hour."""

    try:
        seconds = float(total_seconds) if total_seconds is not None else 0.0
    except (TypeError, ValueError):
        seconds = 0.0
    if not math.isfinite(seconds) or seconds < 0:
        seconds = 0.0
    whole = int(seconds)
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class ElapsedCounter:
    """Counts whole ticks on the running event loop until frozen."""

    def __init__(self, interval: float = 1.0) -> None:
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError("Tick interval must be a positive number of seconds")
        self._interval = float(interval)
        self._value = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def value(self) -> int:
        return self._value

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Reset to zero and begin ticking."""

        self.freeze()
        self._value = 0
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="medvid-elapsed-counter"
        )

    def freeze(self) -> int:
        """Stop ticking and return the frozen value."""

        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
        return self._value

    def reset(self) -> None:
        self.freeze()
        self._value = 0

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval)
                self._value += 1
        except asyncio.CancelledError:  # pragma: no cover - cooperative exit
            pass


__all__ = ["ElapsedCounter", "format_duration"]
