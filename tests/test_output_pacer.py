from __future__ import annotations

import asyncio

import pytest

from telephony.pacer import OutputPacer


class FakeClock:
    """Monotonic clock that only moves when the pacer sleeps."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.now += delay
        await asyncio.sleep(0)


async def _wait_for(predicate, *, spins: int = 10_000) -> None:
    for _ in range(spins):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def _on_grid(t: float, interval: float) -> bool:
    return t / interval == pytest.approx(round(t / interval))


def test_frames_are_fixed_size_and_tail_is_zero_padded() -> None:
    payload = bytes([0x55]) * 350

    async def scenario() -> list[bytes]:
        sent: list[bytes] = []

        async def send(frame: bytes) -> None:
            sent.append(frame)

        # Long interval so only explicit ticks transmit.
        pacer = OutputPacer(send, frame_size=160, frame_interval_ms=60_000)
        pacer.enqueue(payload)
        assert pacer.queued_bytes == 350

        for _ in range(3):
            assert await pacer.tick() is True
        assert await pacer.tick() is False
        assert pacer.is_empty
        pacer.stop()
        return sent

    sent = asyncio.run(scenario())

    assert [len(frame) for frame in sent] == [160, 160, 160]
    assert sent[0] + sent[1] == payload[:320]
    assert sent[2][:30] == payload[320:]
    assert sent[2][30:] == bytes(130)


def test_drain_cadence_stays_on_grid_across_bursts() -> None:
    async def scenario() -> list[float]:
        clock = FakeClock()
        times: list[float] = []

        async def send(frame: bytes) -> None:
            times.append(clock())

        pacer = OutputPacer(send, frame_interval_ms=20, clock=clock, sleep=clock.sleep)
        pacer.enqueue(bytes(160 * 3))
        await _wait_for(lambda: len(times) == 3)

        # Idle for a while; the loop keeps ticking on an empty queue.
        await _wait_for(lambda: clock.now >= 0.2)
        assert pacer.running
        pacer.enqueue(bytes(160 * 2))
        await _wait_for(lambda: len(times) == 5)
        pacer.stop()
        return times

    times = asyncio.run(scenario())

    assert times[1] - times[0] == pytest.approx(0.02)
    assert times[2] - times[1] == pytest.approx(0.02)
    assert times[4] - times[3] == pytest.approx(0.02)
    assert all(_on_grid(t, 0.02) for t in times)


def test_slow_sends_do_not_shift_cadence() -> None:
    async def scenario() -> list[float]:
        clock = FakeClock()
        times: list[float] = []

        async def send(frame: bytes) -> None:
            times.append(clock())
            clock.now += 0.007

        pacer = OutputPacer(send, frame_interval_ms=20, clock=clock, sleep=clock.sleep)
        pacer.enqueue(bytes(160 * 4))
        await _wait_for(lambda: len(times) == 4)
        pacer.stop()
        return times

    times = asyncio.run(scenario())

    assert [b - a for a, b in zip(times, times[1:])] == pytest.approx([0.02, 0.02, 0.02])


def test_send_failure_is_counted_and_drain_continues() -> None:
    async def scenario() -> tuple[OutputPacer, list[bytes]]:
        sent: list[bytes] = []
        calls = 0

        async def send(frame: bytes) -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("socket busy")
            sent.append(frame)

        pacer = OutputPacer(send, frame_interval_ms=60_000)
        pacer.enqueue(b"\x01" * 160 + b"\x02" * 160 + b"\x03" * 160)

        assert await pacer.tick() is False
        assert await pacer.tick() is True
        assert await pacer.tick() is True
        pacer.stop()
        return pacer, sent

    pacer, sent = asyncio.run(scenario())

    assert pacer.send_failures == 1
    assert pacer.frames_sent == 2
    assert sent == [b"\x02" * 160, b"\x03" * 160]


def test_idle_tick_sends_nothing() -> None:
    async def scenario() -> tuple[bool, int]:
        sent: list[bytes] = []

        async def send(frame: bytes) -> None:
            sent.append(frame)

        pacer = OutputPacer(send)
        return await pacer.tick(), len(sent)

    assert asyncio.run(scenario()) == (False, 0)


def test_closed_session_stops_drain_loop() -> None:
    async def scenario() -> tuple[OutputPacer, list[bytes]]:
        clock = FakeClock()
        sent: list[bytes] = []
        state = {"closed": False}

        async def send(frame: bytes) -> None:
            sent.append(frame)
            state["closed"] = True

        pacer = OutputPacer(
            send,
            closed=lambda: state["closed"],
            clock=clock,
            sleep=clock.sleep,
        )
        pacer.enqueue(bytes(160 * 5))
        await _wait_for(lambda: not pacer.running)

        pacer.enqueue(bytes(160))
        return pacer, sent

    pacer, sent = asyncio.run(scenario())

    assert len(sent) == 1
    assert pacer.queued_bytes == 160 * 4
    assert not pacer.running


def test_stop_discards_queue_and_ignores_later_audio() -> None:
    async def scenario() -> OutputPacer:
        async def send(frame: bytes) -> None:
            return None

        pacer = OutputPacer(send)
        pacer.enqueue(bytes(480))
        pacer.stop()
        await asyncio.sleep(0)
        pacer.enqueue(bytes(160))
        return pacer

    pacer = asyncio.run(scenario())

    assert pacer.is_empty
    assert not pacer.running


def test_queue_limit_drops_oldest_whole_frames() -> None:
    async def scenario() -> tuple[OutputPacer, bytes | None]:
        async def send(frame: bytes) -> None:
            return None

        pacer = OutputPacer(send, frame_interval_ms=60_000, max_queue_bytes=320)
        pacer.enqueue(b"\x01" * 160 + b"\x02" * 160 + b"\x03" * 180)
        frame = pacer.pop_frame()
        pacer.stop()
        return pacer, frame

    pacer, frame = asyncio.run(scenario())

    assert pacer.dropped_bytes == 320
    assert frame == b"\x03" * 160


def test_invalid_framing_is_rejected() -> None:
    async def send(frame: bytes) -> None:
        return None

    with pytest.raises(ValueError):
        OutputPacer(send, frame_size=0)


def test_stall_resumes_cadence_without_burst() -> None:
    async def scenario() -> list[float]:
        clock = FakeClock()
        times: list[float] = []

        async def send(frame: bytes) -> None:
            times.append(clock())
            if len(times) == 1:
                # Event loop blocked for five intervals.
                clock.now += 0.1

        pacer = OutputPacer(send, frame_interval_ms=20, clock=clock, sleep=clock.sleep)
        pacer.enqueue(bytes(160 * 4))
        await _wait_for(lambda: len(times) == 4)
        pacer.stop()
        return times

    times = asyncio.run(scenario())

    assert times[1] - times[0] >= 0.1
    assert [b - a for a, b in zip(times[1:], times[2:])] == pytest.approx([0.02, 0.02])
