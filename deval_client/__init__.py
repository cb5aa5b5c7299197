"""
deval-client - Deval 语言服务器客户端

启动、连接并监管 deval-cli 语言服务器进程，向宿主编辑器提供
start/stop/restart 控制与文档范围过滤。
"""

__version__ = "0.1.0"

from .config import Config, ConfigError, ServerConfig, TimeoutConfig
from .events import (
    DiagnosticsEvent,
    Event,
    EventBroker,
    EventType,
    LifecycleEvent,
    ServerLogEvent,
    get_event_broker,
    set_event_broker,
)
from .extension import RESTART_COMMAND, Extension
from .lsp import (
    BusyPolicy,
    DocumentFilter,
    DocumentScope,
    ErrorKind,
    LifecycleResult,
    Operation,
    Outcome,
    Session,
    Supervisor,
    SupervisorState,
)

__all__ = [
    # 配置
    "Config",
    "ConfigError",
    "ServerConfig",
    "TimeoutConfig",
    # 事件
    "Event",
    "EventType",
    "EventBroker",
    "LifecycleEvent",
    "DiagnosticsEvent",
    "ServerLogEvent",
    "get_event_broker",
    "set_event_broker",
    # 扩展
    "Extension",
    "RESTART_COMMAND",
    # 监管
    "Supervisor",
    "SupervisorState",
    "BusyPolicy",
    "Session",
    "LifecycleResult",
    "Operation",
    "Outcome",
    "ErrorKind",
    "DocumentFilter",
    "DocumentScope",
]
