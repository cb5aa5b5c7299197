"""扩展宿主接入层

对应编辑器扩展的 activate/deactivate 钩子与命令注册：
- 激活时启动语言服务器
- 停用时停止并等待完成
- 注册 deval.restartServer 等命令

生命周期结果在这里转换为用户可见的通知。
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

from . import __version__
from .config import Config
from .display import Notifier
from .events import EventBroker
from .i18n import t
from .lsp.results import ErrorKind, LifecycleResult, Outcome
from .lsp.supervisor import Supervisor

logger = logging.getLogger(__name__)

RESTART_COMMAND = "deval.restartServer"
START_COMMAND = "deval.startServer"
STOP_COMMAND = "deval.stopServer"
STATUS_COMMAND = "deval.showStatus"

CommandHandler = Callable[[], Awaitable[None]]

ERROR_MESSAGE_KEYS = {
    ErrorKind.SPAWN_FAILED: "spawn_failed",
    ErrorKind.HANDSHAKE_FAILED: "handshake_failed",
    ErrorKind.SHUTDOWN_TIMEOUT: "shutdown_timeout",
    ErrorKind.OPERATION_IN_PROGRESS: "operation_in_progress",
}


class Extension:
    """Deval 扩展"""

    def __init__(
        self,
        config: Config,
        notifier: Notifier,
        supervisor: Optional[Supervisor] = None,
        broker: Optional[EventBroker] = None,
    ):
        self.config = config
        self.notifier = notifier
        self.supervisor = supervisor or Supervisor(
            config, broker=broker, client_version=__version__
        )
        self.commands: Dict[str, CommandHandler] = {}
        self.active = False

    def register_command(self, command_id: str, handler: CommandHandler) -> None:
        self.commands[command_id] = handler

    async def activate(self) -> LifecycleResult:
        """激活：注册命令并启动语言服务器"""
        self.register_command(RESTART_COMMAND, self.restart_server)
        self.register_command(START_COMMAND, self.start_server)
        self.register_command(STOP_COMMAND, self.stop_server)
        self.register_command(STATUS_COMMAND, self.show_status)
        self.active = True

        result = await self.supervisor.start()
        if not result.ok:
            self._report_failure(result)
        return result

    async def deactivate(self) -> LifecycleResult:
        """停用：停止语言服务器，调用方必须等待返回"""
        result = await self.supervisor.shutdown()
        if not result.ok:
            self._report_failure(result)
        self.commands.clear()
        self.active = False
        return result

    async def execute_command(self, command_id: str) -> bool:
        """执行已注册命令，处理函数中的异常转换为错误通知"""
        handler = self.commands.get(command_id)
        if handler is None:
            self.notifier.error(t("unknown_command", command=command_id))
            return False

        try:
            await handler()
        except Exception as e:
            logger.exception(f"命令 {command_id} 执行异常")
            self.notifier.error(t("command_failed", command=command_id, reason=e))
            return False
        return True

    # ==================== 命令实现 ====================

    async def restart_server(self) -> None:
        """重启语言服务器"""
        self.notifier.info(t("restarting"))
        result = await self.supervisor.restart()

        if result.outcome is Outcome.REJECTED:
            self._report_failure(result)
            return

        # stop 的失败先于 start 的结果报告
        if result.stop_result is not None and not result.stop_result.ok:
            self._report_failure(result.stop_result)
        if not result.previously_running:
            self.notifier.info(t("not_running"))

        if result.ok:
            self.notifier.info(t("restarted"))
        else:
            self._report_failure(result.start_result or result)

    async def start_server(self) -> None:
        result = await self.supervisor.start()
        if result.outcome is Outcome.SUCCESS:
            self.notifier.info(t("started", server=result.message))
        elif result.outcome is Outcome.NOOP:
            self.notifier.info(t("already_running"))
        else:
            self._report_failure(result)

    async def stop_server(self) -> None:
        result = await self.supervisor.stop()
        if result.outcome is Outcome.SUCCESS:
            self.notifier.info(t("stopped"))
        elif result.outcome is Outcome.NOOP:
            self.notifier.info(t("already_stopped"))
        else:
            self._report_failure(result)

    async def show_status(self) -> None:
        self.notifier.info(self.status_text())

    def status_text(self) -> str:
        if self.supervisor.busy:
            return t("status_busy")
        session = self.supervisor.session
        if session is None:
            return t("status_stopped")
        if not session.is_alive:
            return t("status_exited", server=session.server_name, session=session.id)
        return t("status_running", server=session.server_name, session=session.id, pid=session.pid)

    def _report_failure(self, result: LifecycleResult) -> None:
        key = ERROR_MESSAGE_KEYS.get(result.error) if result.error else None
        if key is None:
            self.notifier.error(result.message)
        elif result.error is ErrorKind.SHUTDOWN_TIMEOUT:
            self.notifier.warning(t(key, reason=result.message))
        else:
            self.notifier.error(t(key, reason=result.message))
