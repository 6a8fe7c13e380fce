"""Tests for supervisor event delivery."""

import asyncio

from agentvisor.core.events import EventHub, ProcessExitedUnexpectedly, ProcessRestarted, ProcessUnhealthy
from agentvisor.core.health import ProcessHealthStatus


class TestEventHub:
    """Tests for listener registration and channels."""

    def test_listener_receives_events(self):
        hub = EventHub()
        received = []
        hub.subscribe(received.append)

        event = ProcessRestarted("job", 1, 2)
        hub.publish(event)

        assert received == [event]

    def test_type_filter(self):
        hub = EventHub()
        restarts = []
        hub.subscribe(restarts.append, ProcessRestarted)

        hub.publish(ProcessExitedUnexpectedly("job", 1))
        hub.publish(ProcessRestarted("job", 1, 2))

        assert restarts == [ProcessRestarted("job", 1, 2)]

    def test_unsubscribe(self):
        hub = EventHub()
        received = []
        unsubscribe = hub.subscribe(received.append)
        unsubscribe()
        unsubscribe()

        hub.publish(ProcessRestarted("job", 1, 2))
        assert received == []

    def test_failing_listener_does_not_block_others(self):
        hub = EventHub()
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        hub.subscribe(broken)
        hub.subscribe(received.append)
        hub.publish(ProcessExitedUnexpectedly("job", 2))

        assert received == [ProcessExitedUnexpectedly("job", 2)]

    def test_async_listener_runs_as_task(self):
        async def scenario():
            hub = EventHub()
            received = []

            async def listener(event):
                await asyncio.sleep(0.01)
                received.append(event)

            hub.subscribe(listener)
            hub.publish(ProcessUnhealthy("job", ProcessHealthStatus.not_found("job")))
            pending = hub.pending_count
            await hub.drain()
            return pending, received, hub.pending_count

        pending, received, after = asyncio.run(scenario())
        assert pending == 1
        assert len(received) == 1
        assert after == 0

    def test_failing_async_listener_is_contained(self):
        async def scenario():
            hub = EventHub()

            async def listener(event):
                raise RuntimeError("async listener bug")

            hub.subscribe(listener)
            hub.publish(ProcessRestarted("job", 1, 2))
            await hub.drain()
            return hub.pending_count

        assert asyncio.run(scenario()) == 0

    def test_channel(self):
        async def scenario():
            hub = EventHub()
            channel = hub.open_channel()
            hub.publish(ProcessRestarted("job", 1, 2))
            event = await asyncio.wait_for(channel.get(), timeout=1)

            hub.close_channel(channel)
            hub.publish(ProcessRestarted("job", 2, 3))
            return event, channel.qsize()

        event, remaining = asyncio.run(scenario())
        assert event == ProcessRestarted("job", 1, 2)
        assert remaining == 0

    def test_full_channel_drops_events(self):
        async def scenario():
            hub = EventHub()
            channel = hub.open_channel(maxsize=1)
            hub.publish(ProcessRestarted("job", 1, 2))
            hub.publish(ProcessRestarted("job", 2, 3))
            return channel.qsize(), channel.get_nowait()

        size, first = asyncio.run(scenario())
        assert size == 1
        assert first == ProcessRestarted("job", 1, 2)

    def test_aclose_cancels_listener_tasks(self):
        async def scenario():
            hub = EventHub()

            async def slow(event):
                await asyncio.sleep(30)

            hub.subscribe(slow)
            hub.publish(ProcessRestarted("job", 1, 2))
            await hub.aclose()
            return hub.pending_count

        assert asyncio.run(scenario()) == 0
