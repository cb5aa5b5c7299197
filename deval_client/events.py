"""事件系统

会话生命周期的发布/订阅：
- 非阻塞事件发布
- 按事件类型订阅
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class EventType(Enum):
    """事件类型"""

    # 会话事件
    SESSION_STARTING = "session_starting"
    SESSION_STARTED = "session_started"
    SESSION_START_FAILED = "session_start_failed"
    SESSION_STOPPING = "session_stopping"
    SESSION_STOPPED = "session_stopped"

    # 重启事件
    RESTARTING = "restarting"
    RESTARTED = "restarted"

    # 服务器推送
    DIAGNOSTICS = "diagnostics"
    SERVER_LOG = "server_log"


LIFECYCLE_EVENTS = [
    EventType.SESSION_STARTING,
    EventType.SESSION_STARTED,
    EventType.SESSION_START_FAILED,
    EventType.SESSION_STOPPING,
    EventType.SESSION_STOPPED,
    EventType.RESTARTING,
    EventType.RESTARTED,
]


@dataclass
class Event:
    """事件基类"""

    type: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    session_id: Optional[str] = None


@dataclass
class LifecycleEvent(Event):
    """会话生命周期事件"""

    type: EventType = EventType.SESSION_STARTING
    pid: Optional[int] = None
    message: str = ""


@dataclass
class DiagnosticsEvent(Event):
    """诊断事件"""

    type: EventType = EventType.DIAGNOSTICS
    uri: str = ""
    count: int = 0


@dataclass
class ServerLogEvent(Event):
    """服务器日志事件 (window/logMessage, window/showMessage)"""

    type: EventType = EventType.SERVER_LOG
    level: int = logging.INFO
    message: str = ""


class EventBroker:
    """事件代理 - 非阻塞发布/订阅"""

    def __init__(self, buffer_size: int = 64):
        self._subscribers: Dict[EventType, List[asyncio.Queue]] = {}
        self._buffer_size = buffer_size
        self._lock = asyncio.Lock()

    async def subscribe(self, event_types: List[EventType]) -> asyncio.Queue:
        """订阅事件类型"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._buffer_size)

        async with self._lock:
            for event_type in event_types:
                self._subscribers.setdefault(event_type, []).append(queue)

        return queue

    async def unsubscribe(
        self,
        queue: asyncio.Queue,
        event_types: List[EventType],
    ):
        """取消订阅"""
        async with self._lock:
            for event_type in event_types:
                if event_type in self._subscribers:
                    try:
                        self._subscribers[event_type].remove(queue)
                    except ValueError:
                        pass

    def publish(self, event: Event):
        """发布事件（非阻塞，队列满时丢弃最旧的事件）"""
        for queue in self._subscribers.get(event.type, []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                    queue.put_nowait(event)
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    pass


# 全局事件代理
_global_broker: Optional[EventBroker] = None


def get_event_broker() -> EventBroker:
    """获取全局事件代理"""
    global _global_broker
    if _global_broker is None:
        _global_broker = EventBroker()
    return _global_broker


def set_event_broker(broker: Optional[EventBroker]):
    """设置全局事件代理"""
    global _global_broker
    _global_broker = broker
