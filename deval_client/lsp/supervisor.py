"""会话监管器

同一时刻最多持有一个 LSP 会话，负责 start/stop/restart 的排序与幂等。
所有失败都在这里转换为 LifecycleResult，不会抛给宿主。

状态机:
    NO_SESSION --start--> SESSION_ACTIVE --stop--> NO_SESSION
    restart = stop (完整执行) + start，作为一次串行化操作
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..events import (
    DiagnosticsEvent,
    EventBroker,
    EventType,
    LifecycleEvent,
    ServerLogEvent,
    get_event_broker,
)
from .protocol import Diagnostic, DocumentUri, Hover, Range, SemanticTokens
from .results import ErrorKind, LifecycleResult, Operation
from .session import HandshakeError, Session, SessionError
from .transport import SpawnError, TransportError

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SupervisorState(Enum):
    NO_SESSION = "no_session"
    SESSION_ACTIVE = "session_active"


class BusyPolicy(str, Enum):
    """生命周期操作冲突时的处理策略"""

    QUEUE = "queue"
    REJECT = "reject"


@dataclass
class TrackedDocument:
    """宿主报告为打开状态的文档"""

    uri: DocumentUri
    language_id: str
    version: int
    text: str


SessionFactory = Callable[[], Session]
DiagnosticsListener = Callable[[DocumentUri, List[Diagnostic]], None]


class Supervisor:
    """会话监管器"""

    def __init__(
        self,
        config: "Config",
        *,
        session_factory: Optional[SessionFactory] = None,
        broker: Optional[EventBroker] = None,
        on_diagnostics: Optional[DiagnosticsListener] = None,
        client_version: Optional[str] = None,
    ):
        self.config = config
        self.scope = config.document_scope
        self.busy_policy = BusyPolicy(config.busy_policy)
        self.broker = broker or get_event_broker()
        self.on_diagnostics = on_diagnostics
        self.client_version = client_version
        self._session_factory = session_factory or self._create_session

        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()
        self._doc_lock = asyncio.Lock()
        self._documents: Dict[DocumentUri, TrackedDocument] = {}

    @property
    def state(self) -> SupervisorState:
        if self._session is None:
            return SupervisorState.NO_SESSION
        return SupervisorState.SESSION_ACTIVE

    @property
    def session(self) -> Optional[Session]:
        """当前会话（只读）"""
        return self._session

    @property
    def busy(self) -> bool:
        """是否有生命周期操作正在进行"""
        return self._lock.locked()

    @property
    def documents(self) -> Dict[DocumentUri, TrackedDocument]:
        return dict(self._documents)

    def _create_session(self) -> Session:
        return Session(
            self.config.server,
            self.scope,
            initialize_timeout=self.config.timeouts.initialize,
            request_timeout=self.config.timeouts.request,
            workspace_dir=self.config.workspace_dir,
            client_version=self.client_version,
            on_diagnostics=self._handle_diagnostics,
            on_log=self._handle_log,
        )

    # ==================== 生命周期操作 ====================

    async def start(self) -> LifecycleResult:
        """启动会话；已有会话时为空操作"""
        return await self._serialized(Operation.START, self._do_start)

    async def stop(self) -> LifecycleResult:
        """停止会话；没有会话时为空操作"""
        return await self._serialized(Operation.STOP, self._do_stop)

    async def restart(self) -> LifecycleResult:
        """完整 stop 之后再 start"""
        return await self._serialized(Operation.RESTART, self._do_restart)

    async def shutdown(self) -> LifecycleResult:
        """宿主停用时调用：总是排队等待，从不拒绝"""
        result = await self._serialized(Operation.SHUTDOWN, self._do_stop, policy=BusyPolicy.QUEUE)
        self._documents.clear()
        return result.model_copy(update={"operation": Operation.SHUTDOWN})

    async def _serialized(
        self,
        operation: Operation,
        func: Callable[[], Awaitable[LifecycleResult]],
        policy: Optional[BusyPolicy] = None,
    ) -> LifecycleResult:
        policy = policy or self.busy_policy
        if policy is BusyPolicy.REJECT and self._lock.locked():
            logger.warning(f"拒绝 {operation.value}: 另一个生命周期操作正在进行")
            return LifecycleResult.rejected(operation)

        async with self._lock:
            return await func()

    async def _do_start(self) -> LifecycleResult:
        if self._session is not None:
            session = self._session
            if session.is_alive:
                logger.info(f"语言服务器已在运行 (会话 {session.id})，忽略 start")
                return LifecycleResult.noop(
                    Operation.START, "already running", session_id=session.id, pid=session.pid
                )
            # 进程已自行退出：先回收旧会话再启动
            logger.warning(f"会话 {session.id} 的语言服务器已退出，重新启动")
            await self._do_stop()

        session = self._session_factory()
        self._publish(EventType.SESSION_STARTING, session)

        try:
            await session.open()
        except SpawnError as e:
            logger.error(f"语言服务器启动失败: {e}")
            self._publish(EventType.SESSION_START_FAILED, session, str(e))
            return LifecycleResult.failed(
                Operation.START, ErrorKind.SPAWN_FAILED, str(e), session_id=session.id
            )
        except (SessionError, TransportError) as e:
            kind = ErrorKind.HANDSHAKE_FAILED
            if not isinstance(e, HandshakeError):
                logger.exception(f"语言服务器启动异常: {e}")
            else:
                logger.error(f"语言服务器握手失败: {e}")
            self._publish(EventType.SESSION_START_FAILED, session, str(e))
            return LifecycleResult.failed(Operation.START, kind, str(e), session_id=session.id)

        await self._activate(session)
        self._publish(EventType.SESSION_STARTED, session, session.server_name)
        return LifecycleResult.success(
            Operation.START, session.server_name, session_id=session.id, pid=session.pid
        )

    async def _do_stop(self) -> LifecycleResult:
        session = self._session
        if session is None:
            return LifecycleResult.noop(Operation.STOP, "not running")

        self._publish(EventType.SESSION_STOPPING, session)
        pid = session.pid
        try:
            await session.close(self.config.timeouts.shutdown_grace)
        except (SessionError, TransportError, OSError) as e:
            logger.warning(f"语言服务器未能优雅关闭: {e}")
            result = LifecycleResult.failed(
                Operation.STOP, ErrorKind.SHUTDOWN_TIMEOUT, str(e), session_id=session.id, pid=pid
            )
        else:
            result = LifecycleResult.success(Operation.STOP, "stopped", session_id=session.id, pid=pid)
        finally:
            # 即使关闭失败也要丢弃旧会话
            self._session = None

        self._publish(EventType.SESSION_STOPPED, session, result.message)
        return result

    async def _do_restart(self) -> LifecycleResult:
        self._publish(EventType.RESTARTING, self._session)

        if self._session is None:
            stop_result = LifecycleResult.noop(
                Operation.STOP, "not running", error=ErrorKind.NO_ACTIVE_SESSION
            )
        else:
            stop_result = await self._do_stop()

        start_result = await self._do_start()
        result = LifecycleResult(
            operation=Operation.RESTART,
            outcome=start_result.outcome,
            error=start_result.error,
            message=start_result.message,
            session_id=start_result.session_id,
            pid=start_result.pid,
            stop_result=stop_result,
            start_result=start_result,
        )
        if result.ok:
            self._publish(EventType.RESTARTED, self._session)
        return result

    # ==================== 文档路由 ====================

    def handles(self, uri: DocumentUri, language_id: str) -> bool:
        """文档是否在本客户端的服务范围内"""
        return self.scope.matches(uri, language_id)

    async def open_document(self, uri: DocumentUri, language_id: str, text: str) -> bool:
        """宿主打开文档；不在范围内时忽略并返回 False"""
        if not self.handles(uri, language_id):
            return False

        async with self._doc_lock:
            if uri in self._documents:
                return True
            document = TrackedDocument(uri=uri, language_id=language_id, version=1, text=text)
            self._documents[uri] = document
            await self._forward(lambda s: s.did_open(uri, language_id, document.version, text))
        return True

    async def change_document(self, uri: DocumentUri, text: str) -> bool:
        """宿主修改文档（全量同步）"""
        async with self._doc_lock:
            document = self._documents.get(uri)
            if document is None:
                return False
            document.version += 1
            document.text = text
            version = document.version
            await self._forward(lambda s: s.did_change(uri, version, text))
        return True

    async def close_document(self, uri: DocumentUri) -> bool:
        """宿主关闭文档"""
        async with self._doc_lock:
            if self._documents.pop(uri, None) is None:
                return False
            await self._forward(lambda s: s.did_close(uri))
        return True

    def diagnostics(self, uri: Optional[DocumentUri] = None) -> Dict[DocumentUri, List[Diagnostic]]:
        """当前会话收到的诊断"""
        if self._session is None:
            return {}
        all_diagnostics = self._session.diagnostics
        if uri is not None:
            return {uri: all_diagnostics[uri]} if uri in all_diagnostics else {}
        return all_diagnostics

    async def hover(self, uri: DocumentUri, line: int, character: int) -> Optional[Hover]:
        """查询悬停信息（位置为 0 起始）

        文档未打开、不在范围内或没有活动会话时返回 None。
        """
        session = self._routable_session(uri)
        if session is None:
            return None
        return await self._query(session, "hover", lambda s: s.hover(uri, line, character))

    async def semantic_tokens(
        self, uri: DocumentUri, range: Optional[Range] = None
    ) -> Optional[SemanticTokens]:
        """查询整个文档或指定范围的语义 token"""
        session = self._routable_session(uri)
        if session is None:
            return None
        return await self._query(
            session, "semanticTokens", lambda s: s.semantic_tokens(uri, range)
        )

    def _routable_session(self, uri: DocumentUri) -> Optional[Session]:
        document = self._documents.get(uri)
        if document is None or not self.handles(uri, document.language_id):
            return None
        session = self._session
        if session is None or not session.is_alive:
            return None
        return session

    async def _query(
        self,
        session: Session,
        name: str,
        send: Callable[[Session], Awaitable[Optional[T]]],
    ) -> Optional[T]:
        try:
            return await send(session)
        except asyncio.TimeoutError:
            logger.warning(f"{name} 请求超时 (会话 {session.id})")
        except (SessionError, TransportError) as e:
            logger.warning(f"{name} 请求失败 (会话 {session.id}): {e}")
        return None

    async def _forward(self, send: Callable[[Session], Awaitable[None]]) -> None:
        session = self._session
        if session is None:
            return
        try:
            await send(session)
        except (SessionError, TransportError) as e:
            logger.warning(f"文档同步失败 (会话 {session.id}): {e}")

    async def _activate(self, session: Session) -> None:
        """登记新会话并重新发送所有已打开的文档"""
        async with self._doc_lock:
            self._session = session
            for document in list(self._documents.values()):
                try:
                    await session.did_open(
                        document.uri, document.language_id, document.version, document.text
                    )
                except (SessionError, TransportError) as e:
                    logger.warning(f"重放文档失败 {document.uri}: {e}")
                    break

    # ==================== 事件 ====================

    def _handle_diagnostics(
        self, session: Session, uri: DocumentUri, diagnostics: List[Diagnostic]
    ) -> None:
        if session is not self._session:
            return
        self.broker.publish(
            DiagnosticsEvent(session_id=session.id, uri=uri, count=len(diagnostics))
        )
        if self.on_diagnostics:
            self.on_diagnostics(uri, diagnostics)

    def _handle_log(self, session: Session, level: int, message: str) -> None:
        self.broker.publish(ServerLogEvent(session_id=session.id, level=level, message=message))

    def _publish(self, event_type: EventType, session: Optional[Session], message: str = "") -> None:
        self.broker.publish(
            LifecycleEvent(
                type=event_type,
                session_id=session.id if session else None,
                pid=session.pid if session else None,
                message=message,
            )
        )
