"""事件系统测试"""

import logging

import pytest

from deval_client.events import (
    DiagnosticsEvent,
    EventBroker,
    EventType,
    LifecycleEvent,
    ServerLogEvent,
    get_event_broker,
    set_event_broker,
)


class TestEventBroker:
    """EventBroker 测试"""

    @pytest.mark.asyncio
    async def test_publish_to_subscribers(self):
        broker = EventBroker()
        queue = await broker.subscribe([EventType.SESSION_STARTED])

        broker.publish(LifecycleEvent(type=EventType.SESSION_STARTED, session_id="s1", pid=42))
        broker.publish(LifecycleEvent(type=EventType.SESSION_STOPPED, session_id="s1"))

        event = queue.get_nowait()
        assert event.session_id == "s1"
        assert event.pid == 42
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        broker = EventBroker(buffer_size=2)
        queue = await broker.subscribe([EventType.DIAGNOSTICS])

        for i in range(3):
            broker.publish(DiagnosticsEvent(uri=f"file:///{i}.toml"))

        assert [queue.get_nowait().uri for _ in range(2)] == [
            "file:///1.toml",
            "file:///2.toml",
        ]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        broker = EventBroker()
        queue = await broker.subscribe([EventType.RESTARTING])
        await broker.unsubscribe(queue, [EventType.RESTARTING])

        broker.publish(LifecycleEvent(type=EventType.RESTARTING))
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_server_log_event(self):
        broker = EventBroker()
        queue = await broker.subscribe([EventType.SERVER_LOG])

        broker.publish(ServerLogEvent(session_id="s1", level=logging.ERROR, message="doc was missing!"))

        event = queue.get_nowait()
        assert event.type is EventType.SERVER_LOG
        assert event.level == logging.ERROR


def test_global_broker():
    broker = get_event_broker()
    assert get_event_broker() is broker

    replacement = EventBroker()
    set_event_broker(replacement)
    assert get_event_broker() is replacement
