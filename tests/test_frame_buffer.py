"""
Tests for the bounded frame buffer.

Test cases:
1. FIFO order
2. Depth never exceeds capacity under random put/take interleavings
3. put() suspends at capacity until a take()
4. close() is idempotent and still delivers buffered frames
5. put() after close() raises BufferClosedError
6. discard() on the failure path
"""

import asyncio
import random

import pytest

from framestitch.exceptions import BufferClosedError, ConfigurationError
from framestitch.render.frame_buffer import Frame, FrameBuffer


def _frame(index: int) -> Frame:
    return Frame(index=index, data=f"frame-{index}".encode())


async def _yield(times: int = 5) -> None:
    for _ in range(times):
        await asyncio.sleep(0)


class TestFrameBuffer:
    """Backpressure and ordering guarantees."""

    def test_capacity_must_be_positive(self):
        with pytest.raises(ConfigurationError) as exc_info:
            FrameBuffer(0)
        assert exc_info.value.field == "frame_buffer_depth"

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        buffer = FrameBuffer(3)
        taken = []

        async def produce():
            for i in range(20):
                await buffer.put(_frame(i))
            await buffer.close()

        async def consume():
            async for frame in buffer:
                taken.append(frame.index)

        await asyncio.gather(produce(), consume())
        assert taken == list(range(20))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
    @pytest.mark.parametrize("capacity", [1, 2, 5])
    async def test_depth_never_exceeds_capacity(self, seed: int, capacity: int):
        rng = random.Random(seed)
        buffer = FrameBuffer(capacity)
        observed = []

        async def produce():
            for i in range(50):
                await buffer.put(_frame(i))
                observed.append(buffer.depth)
                await _yield(rng.randint(0, 3))
            await buffer.close()

        async def consume():
            while (frame := await buffer.take()) is not None:
                observed.append(buffer.depth)
                await _yield(rng.randint(0, 3))

        await asyncio.gather(produce(), consume())
        assert max(observed) <= capacity
        assert buffer.high_water <= capacity

    @pytest.mark.asyncio
    async def test_third_put_suspends_until_take(self):
        buffer = FrameBuffer(2)
        await buffer.put(_frame(0))
        await buffer.put(_frame(1))

        third = asyncio.create_task(buffer.put(_frame(2)))
        await _yield()
        assert not third.done(), "put() on a full buffer must suspend"
        assert buffer.depth == 2

        frame = await buffer.take()
        assert frame.index == 0
        await asyncio.wait_for(third, timeout=1)
        assert buffer.depth == 2

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_delivers_buffered_frames(self):
        buffer = FrameBuffer(4)
        await buffer.put(_frame(0))
        await buffer.put(_frame(1))

        await buffer.close()
        await buffer.close()
        assert buffer.closed

        assert (await buffer.take()).index == 0
        assert (await buffer.take()).index == 1
        assert await buffer.take() is None
        assert await buffer.take() is None

    @pytest.mark.asyncio
    async def test_put_after_close_raises(self):
        buffer = FrameBuffer(2)
        await buffer.close()
        with pytest.raises(BufferClosedError):
            await buffer.put(_frame(0))

    @pytest.mark.asyncio
    async def test_suspended_put_fails_when_closed(self):
        buffer = FrameBuffer(1)
        await buffer.put(_frame(0))
        blocked = asyncio.create_task(buffer.put(_frame(1)))
        await _yield()

        await buffer.close()
        with pytest.raises(BufferClosedError):
            await asyncio.wait_for(blocked, timeout=1)

    @pytest.mark.asyncio
    async def test_take_waits_for_producer(self):
        buffer = FrameBuffer(2)
        waiting = asyncio.create_task(buffer.take())
        await _yield()
        assert not waiting.done()

        await buffer.put(_frame(7))
        frame = await asyncio.wait_for(waiting, timeout=1)
        assert frame.index == 7

    @pytest.mark.asyncio
    async def test_wait_drained(self):
        buffer = FrameBuffer(2)
        await buffer.put(_frame(0))
        await buffer.close()

        drained = asyncio.create_task(buffer.wait_drained())
        await _yield()
        assert not drained.done()

        await buffer.take()
        await asyncio.wait_for(drained, timeout=1)

    @pytest.mark.asyncio
    async def test_discard_drops_pending_frames(self):
        buffer = FrameBuffer(3)
        for i in range(3):
            await buffer.put(_frame(i))
        await buffer.close()

        assert await buffer.discard() == 3
        assert buffer.depth == 0
        assert await buffer.take() is None
