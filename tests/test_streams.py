"""
Tests for push streams and one-shot signals.
"""

import asyncio

import pytest

from carchat.core.streams import EventStream, OnceSignal


async def _drain(iterator) -> list:
    return [item async for item in iterator]


class TestEventStream:
    """Test the async broadcaster."""

    @pytest.mark.asyncio
    async def test_subscribers_see_events_after_subscribing(self) -> None:
        """Events emitted before subscription are not replayed."""
        stream: EventStream[int] = EventStream("numbers")
        stream.emit(1)
        early = stream.subscribe()
        stream.emit(2)
        late = stream.subscribe()
        stream.emit(3)
        stream.finish()

        assert await _drain(early) == [2, 3]
        assert await _drain(late) == [3]

    @pytest.mark.asyncio
    async def test_finish_ends_iteration_and_is_idempotent(self) -> None:
        """Finishing twice is harmless and later emits are dropped."""
        stream: EventStream[str] = EventStream("words")
        iterator = stream.subscribe()
        stream.emit("a")
        stream.finish()
        stream.finish()
        stream.emit("b")

        assert await _drain(iterator) == ["a"]
        assert stream.is_finished

    @pytest.mark.asyncio
    async def test_subscribe_after_finish_ends_immediately(self) -> None:
        """A late subscriber gets an empty iteration."""
        stream: EventStream[int] = EventStream("done")
        stream.finish()
        assert await _drain(stream.subscribe()) == []

    @pytest.mark.asyncio
    async def test_bounded_stream_drops_oldest(self) -> None:
        """A slow subscriber on a bounded stream keeps the newest events."""
        stream: EventStream[int] = EventStream("levels", maxsize=3)
        iterator = stream.subscribe()
        for value in range(6):
            stream.emit(value)

        assert [await iterator.__anext__() for _ in range(3)] == [3, 4, 5]

    @pytest.mark.asyncio
    async def test_closing_iterator_unsubscribes(self) -> None:
        """Closing a subscriber's iterator removes it."""
        stream: EventStream[int] = EventStream("numbers")
        iterator = stream.subscribe()
        stream.emit(1)
        assert await iterator.__anext__() == 1
        assert stream.subscriber_count == 1

        await iterator.aclose()
        assert stream.subscriber_count == 0


class TestOnceSignal:
    """Test the one-shot signal."""

    @pytest.mark.asyncio
    async def test_first_resolution_wins(self) -> None:
        """Later resolutions are ignored."""
        signal = OnceSignal("speech")
        assert signal.resolve("finished", value="done")
        assert not signal.resolve("cancelled")

        assert await signal.wait() == "done"
        assert signal.resolved_by == "finished"

    @pytest.mark.asyncio
    async def test_timeout_resolves_as_watchdog(self) -> None:
        """A wait that times out resolves the signal itself."""
        signal = OnceSignal("speech")
        await signal.wait(timeout=0.01)

        assert signal.is_resolved
        assert signal.resolved_by == "watchdog"
        assert not signal.resolve("finished")

    @pytest.mark.asyncio
    async def test_resolve_from_another_thread(self) -> None:
        """Threads resolve through the loop."""
        signal = OnceSignal("speech")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, signal.resolve_threadsafe, "worker")

        await signal.wait(timeout=1.0)
        assert signal.resolved_by == "worker"
