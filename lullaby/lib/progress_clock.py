"""
Wall-clock playback position estimator for remote playback.

The appliance never reports position, so while it plays we derive one from
elapsed monotonic time and fire a completion callback once the track's
duration has passed.  Drift of about one tick is expected; foreground
reconciliation repairs anything larger (ticks stop while the OS suspends
the process).

Usage:
    clock = ProgressClock(on_position=show_position, on_complete=advance)
    clock.start(track.duration_ms)
    ...
    clock.stop()
"""

import asyncio
import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL = 0.1  # seconds


class ProgressClock:
    def __init__(self, on_position: Callable[[int], None] | None = None,
                 on_complete: Callable[[], None] | None = None,
                 tick_interval: float = DEFAULT_TICK_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        self._on_position = on_position
        self._on_complete = on_complete
        self._tick_interval = tick_interval
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._start_epoch: float | None = None
        self._duration_ms = 0
        self._position_ms = 0
        self._completed = False

    @property
    def running(self) -> bool:
        return self._start_epoch is not None and not self._completed

    @property
    def position_ms(self) -> int:
        return self._position_ms

    @property
    def duration_ms(self) -> int:
        return self._duration_ms

    def start(self, duration_ms: int):
        """Begin a new run, replacing any run in progress."""
        self.stop()
        self._duration_ms = max(0, int(duration_ms))
        self._start_epoch = self._clock()
        self._completed = False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: caller drives tick() by hand.
            return
        self._task = loop.create_task(self._run())
        logger.debug("Progress clock started (%d ms)", self._duration_ms)

    def stop(self):
        """Cancel ticking and zero the position."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._start_epoch = None
        self._position_ms = 0
        self._completed = False

    reset = stop

    def tick(self) -> int:
        """Advance one step: publish position, complete at most once."""
        if self._start_epoch is None or self._completed:
            return self._position_ms
        elapsed = int((self._clock() - self._start_epoch) * 1000)
        elapsed = min(max(elapsed, 0), self._duration_ms)
        self._position_ms = elapsed
        if self._on_position:
            self._on_position(elapsed)
        if elapsed >= self._duration_ms:
            self._completed = True
            if self._task is not None and self._task is not _current_task():
                self._task.cancel()
            self._task = None
            logger.info("Progress clock reached %d ms — track complete", self._duration_ms)
            if self._on_complete:
                self._on_complete()
        return elapsed

    async def _run(self):
        me = asyncio.current_task()
        try:
            while self._task is me:
                await asyncio.sleep(self._tick_interval)
                if self._task is not me:
                    break  # superseded by stop() or a newer start()
                self.tick()
        except asyncio.CancelledError:
            return


def _current_task():
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
