"""Progress tracker: samples playback position on a fixed timer."""

import asyncio
import contextlib
import logging
from typing import Callable

from dashmark.playback import Playback

LOG = logging.getLogger(__name__)

# Only complete() publishes 100.
SAMPLE_CEILING = 99.9


class ProgressTracker:
    def __init__(
        self,
        playback: Playback,
        interval: float = 0.2,
        on_progress: Callable[[float], None] | None = None,
    ):
        self.playback = playback
        self.interval = interval
        self.on_progress = on_progress
        self.value = 0.0
        self.completed = False
        self._sampled = False
        self._task: asyncio.Task | None = None

    def _publish(self, value: float) -> None:
        value = max(value, self.value)
        if value == self.value and self._sampled:
            return
        self._sampled = True
        self.value = value
        if self.on_progress:
            self.on_progress(value)

    def sample(self) -> float:
        """Take one reading; values never decrease within a run."""
        if self.completed:
            return self.value
        duration = self.playback.duration
        if duration > 0:
            percent = self.playback.current_time / duration * 100
            self._publish(min(max(percent, 0.0), SAMPLE_CEILING))
        return self.value

    async def _run(self) -> None:
        while not self.completed:
            self.sample()
            if self.playback.ended.is_set():
                break
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    def complete(self) -> None:
        """Publish 100; no samples are taken afterwards."""
        self.completed = True
        self.value = 100.0
        if self.on_progress:
            self.on_progress(100.0)
