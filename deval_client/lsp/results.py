"""生命周期操作结果"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Operation(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    SHUTDOWN = "shutdown"


class Outcome(str, Enum):
    SUCCESS = "success"
    NOOP = "noop"
    FAILED = "failed"
    REJECTED = "rejected"


class ErrorKind(str, Enum):
    """错误分类"""

    SPAWN_FAILED = "spawn_failed"
    HANDSHAKE_FAILED = "handshake_failed"
    SHUTDOWN_TIMEOUT = "shutdown_timeout"
    OPERATION_IN_PROGRESS = "operation_in_progress"
    # 信息性：重启时没有正在运行的会话
    NO_ACTIVE_SESSION = "no_active_session"


class LifecycleResult(BaseModel):
    """一次 start/stop/restart/shutdown 的结果

    restart 的结果带有 stop_result 和 start_result，两步分别报告。
    """

    operation: Operation
    outcome: Outcome
    error: Optional[ErrorKind] = None
    message: str = ""
    session_id: Optional[str] = None
    pid: Optional[int] = None
    stop_result: Optional["LifecycleResult"] = None
    start_result: Optional["LifecycleResult"] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.NOOP)

    @property
    def previously_running(self) -> bool:
        """restart 前是否有会话（仅对 restart 有意义）"""
        return self.stop_result is not None and self.stop_result.error is not ErrorKind.NO_ACTIVE_SESSION

    @classmethod
    def success(cls, operation: Operation, message: str = "", **kwargs) -> "LifecycleResult":
        return cls(operation=operation, outcome=Outcome.SUCCESS, message=message, **kwargs)

    @classmethod
    def noop(cls, operation: Operation, message: str = "", **kwargs) -> "LifecycleResult":
        return cls(operation=operation, outcome=Outcome.NOOP, message=message, **kwargs)

    @classmethod
    def failed(
        cls, operation: Operation, error: ErrorKind, message: str, **kwargs
    ) -> "LifecycleResult":
        return cls(operation=operation, outcome=Outcome.FAILED, error=error, message=message, **kwargs)

    @classmethod
    def rejected(cls, operation: Operation) -> "LifecycleResult":
        return cls(
            operation=operation,
            outcome=Outcome.REJECTED,
            error=ErrorKind.OPERATION_IN_PROGRESS,
            message="另一个生命周期操作正在进行",
        )


LifecycleResult.model_rebuild()
