from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable

LOGGER = logging.getLogger(__name__)

FrameSender = Callable[[bytes], Awaitable[None]]


class OutputPacer:
    """Drains queued outbound mu-law audio in fixed-size frames at a fixed cadence.

    The telephony transport plays whatever it receives immediately, so frames
    have to arrive on its clock: exactly ``frame_size`` bytes every
    ``frame_interval_ms``. The drain loop keeps ticking while the queue is empty
    so that new audio resumes on the same phase.

    ``lock`` serializes drain ticks with the owning session's handlers;
    ``tick()`` itself does not take it.
    """

    def __init__(
        self,
        send_frame: FrameSender,
        *,
        frame_size: int = 160,
        frame_interval_ms: int = 20,
        closed: Callable[[], bool] | None = None,
        lock: asyncio.Lock | None = None,
        max_queue_bytes: int = 0,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        if frame_size <= 0 or frame_interval_ms <= 0:
            raise ValueError("frame_size and frame_interval_ms must be positive")
        self._send_frame = send_frame
        self._frame_size = frame_size
        self._interval = frame_interval_ms / 1000
        self._closed = closed or (lambda: False)
        self._lock = lock or asyncio.Lock()
        self._max_queue_bytes = max_queue_bytes
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._queue = bytearray()
        self._task: asyncio.Task | None = None
        self._stopped = False
        self.frames_sent = 0
        self.send_failures = 0
        self.dropped_bytes = 0

    @property
    def frame_size(self) -> int:
        return self._frame_size

    @property
    def queued_bytes(self) -> int:
        return len(self._queue)

    @property
    def is_empty(self) -> bool:
        return not self._queue

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, data: bytes) -> None:
        """Append audio and make sure the drain loop is running."""

        if not data or self._stopped or self._closed():
            return
        self._queue.extend(data)
        self._enforce_limit()
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def pop_frame(self) -> bytes | None:
        """Take the next frame off the queue, zero-padding a short tail."""

        if not self._queue:
            return None
        frame = bytes(self._queue[: self._frame_size])
        del self._queue[: self._frame_size]
        if len(frame) < self._frame_size:
            frame += bytes(self._frame_size - len(frame))
        return frame

    async def tick(self) -> bool:
        """Run one drain step. Returns True if a frame was transmitted."""

        if self._closed():
            self._stopped = True
            return False

        frame = self.pop_frame()
        if frame is None:
            return False

        try:
            await self._send_frame(frame)
        except Exception as exc:
            # The peer may already be closing; session close is driven elsewhere.
            self.send_failures += 1
            LOGGER.warning("Outbound frame send failed: %s", exc)
            return False

        self.frames_sent += 1
        return True

    def stop(self) -> None:
        """Stop the drain loop for good. Queued audio is discarded."""

        self._stopped = True
        self._queue.clear()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        # Deadlines are absolute so a slow send never shifts the cadence.
        next_at = self._clock()
        while True:
            next_at += self._interval
            now = self._clock()
            delay = next_at - now
            if delay > 0:
                await self._sleep(delay)
            elif delay <= -self._interval:
                # Stalled for whole intervals: restart the grid instead of bursting the backlog.
                next_at = now

            async with self._lock:
                if self._stopped or self._closed():
                    self._stopped = True
                    return
                await self.tick()

    def _enforce_limit(self) -> None:
        if self._max_queue_bytes <= 0 or len(self._queue) <= self._max_queue_bytes:
            return
        excess = len(self._queue) - self._max_queue_bytes
        drop = min(len(self._queue), math.ceil(excess / self._frame_size) * self._frame_size)
        del self._queue[:drop]
        self.dropped_bytes += drop
        LOGGER.warning(
            "Outbound audio queue over %s bytes; dropped %s oldest bytes",
            self._max_queue_bytes,
            drop,
        )
