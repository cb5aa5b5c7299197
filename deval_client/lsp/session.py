"""LSP 会话

一个会话对应一个已完成握手的语言服务器进程：拥有进程、传输和协议状态。
会话不可复用，重启时由监管器销毁旧会话并创建新会话。
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .protocol import (
    CLIENT_CAPABILITIES,
    ClientInfo,
    Diagnostic,
    DocumentScope,
    DocumentUri,
    ErrorCodes,
    Hover,
    InitializeParams,
    InitializeResult,
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    PublishDiagnosticsParams,
    Range,
    SemanticTokens,
    SemanticTokensLegend,
    TextDocumentItem,
)
from .transport import ConnectionClosed, MessageDecodeError, StdioTransport, TransportError

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)

CLIENT_NAME = "deval-client"

# window/logMessage 的 type 到日志级别
LOG_MESSAGE_LEVELS = {
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}

_session_ids = itertools.count(1)


class SessionError(Exception):
    """会话错误"""

    pass


class HandshakeError(SessionError):
    """initialize 握手失败或超时"""

    pass


class ShutdownError(SessionError):
    """优雅关闭未完成（已强制终止或进程已提前退出）"""

    pass


class RequestError(SessionError):
    """服务器返回错误响应"""

    def __init__(self, message: str, code: int = ErrorCodes.InternalError):
        super().__init__(message)
        self.code = code


class ProtocolState(Enum):
    """会话协议状态"""

    NOT_STARTED = "not_started"
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


DiagnosticsCallback = Callable[["Session", DocumentUri, List[Diagnostic]], None]
LogCallback = Callable[["Session", int, str], None]


class Session:
    """LSP 会话"""

    def __init__(
        self,
        server: "ServerConfig",
        scope: DocumentScope,
        *,
        initialize_timeout: float = 10.0,
        request_timeout: float = 30.0,
        workspace_dir: Optional[str] = None,
        client_version: Optional[str] = None,
        on_diagnostics: Optional[DiagnosticsCallback] = None,
        on_log: Optional[LogCallback] = None,
    ):
        self.id = f"s{next(_session_ids)}"
        self.scope = scope
        self.workspace_dir = workspace_dir
        self.initialize_timeout = initialize_timeout
        self.request_timeout = request_timeout
        self.client_version = client_version
        self.on_diagnostics = on_diagnostics
        self.on_log = on_log

        self._transport = StdioTransport(
            command=server.command,
            args=server.args,
            env=server.env,
            cwd=server.cwd,
        )
        self._state = ProtocolState.NOT_STARTED
        self._request_id = 0
        self._pending_requests: Dict[int, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._diagnostics: Dict[DocumentUri, List[Diagnostic]] = {}
        self.init_result: Optional[InitializeResult] = None

    def __repr__(self) -> str:
        return f"<Session {self.id} pid={self.pid} state={self._state.value}>"

    @property
    def state(self) -> ProtocolState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._transport.pid

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._transport.process

    @property
    def is_alive(self) -> bool:
        """进程是否仍在运行"""
        return self._transport.is_connected

    @property
    def server_name(self) -> str:
        if self.init_result and self.init_result.serverInfo:
            return self.init_result.serverInfo.name
        return self._transport.command

    @property
    def diagnostics(self) -> Dict[DocumentUri, List[Diagnostic]]:
        return dict(self._diagnostics)

    @property
    def semantic_tokens_legend(self) -> Optional[SemanticTokensLegend]:
        if self.init_result is None:
            return None
        return self.init_result.semantic_tokens_legend

    # ==================== 生命周期 ====================

    async def open(self) -> InitializeResult:
        """启动进程并完成 initialize 握手

        启动失败抛出 SpawnError；握手失败抛出 HandshakeError，此时进程已被杀死。
        """
        if self._state is not ProtocolState.NOT_STARTED:
            raise SessionError(f"会话 {self.id} 不能重复启动")

        self._state = ProtocolState.INITIALIZING
        try:
            await self._transport.connect()
        except TransportError:
            self._state = ProtocolState.CLOSED
            raise

        self._reader_task = asyncio.create_task(self._read_messages())

        try:
            result = await self._request(
                "initialize",
                self._initialize_params(),
                timeout=self.initialize_timeout,
            )
            self.init_result = InitializeResult(**(result or {}))
            await self._notify("initialized", {})
        except asyncio.TimeoutError:
            await self._abort()
            raise HandshakeError(f"initialize 超时 ({self.initialize_timeout:g}s)")
        except (SessionError, TransportError, ValidationError, TypeError) as e:
            await self._abort()
            raise HandshakeError(f"initialize 失败: {e}")

        self._state = ProtocolState.RUNNING
        logger.info(f"LSP 会话 {self.id} 已就绪: {self.server_name} (PID: {self.pid})")
        return self.init_result

    async def close(self, grace: float) -> None:
        """shutdown/exit 握手后释放进程与传输

        无论结果如何，返回时进程句柄都已释放；未能优雅关闭时抛出 ShutdownError。
        """
        if self._state in (ProtocolState.CLOSED, ProtocolState.NOT_STARTED):
            self._state = ProtocolState.CLOSED
            return

        self._state = ProtocolState.SHUTTING_DOWN
        problems: List[str] = []

        try:
            await self._request("shutdown", None, timeout=grace)
        except asyncio.TimeoutError:
            problems.append(f"shutdown 请求超时 ({grace:g}s)")
        except (SessionError, TransportError) as e:
            problems.append(f"shutdown 失败: {e}")

        # 即使 shutdown 失败也发送 exit
        try:
            await self._notify("exit", None)
        except TransportError as e:
            logger.debug(f"发送 exit 失败: {e}")

        exited = await self._transport.disconnect(timeout=grace)
        if not exited:
            problems.append("进程未在宽限期内退出，已强制终止")

        await self._stop_reader()
        self._fail_pending(ConnectionClosed(f"会话 {self.id} 已关闭"))
        self._state = ProtocolState.CLOSED

        if problems:
            raise ShutdownError("; ".join(problems))
        logger.info(f"LSP 会话 {self.id} 已关闭")

    async def _abort(self) -> None:
        """握手失败时立即杀死进程"""
        await self._transport.kill()
        await self._stop_reader()
        self._fail_pending(ConnectionClosed(f"会话 {self.id} 已中止"))
        self._state = ProtocolState.CLOSED

    async def _stop_reader(self) -> None:
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

    def _initialize_params(self) -> dict:
        root_uri = None
        folders = None
        if self.workspace_dir:
            root = Path(self.workspace_dir).resolve()
            root_uri = root.as_uri()
            folders = [{"uri": root_uri, "name": root.name}]

        params = InitializeParams(
            processId=os.getpid(),
            clientInfo=ClientInfo(name=CLIENT_NAME, version=self.client_version),
            rootUri=root_uri,
            capabilities=CLIENT_CAPABILITIES,
            initializationOptions={"documentSelector": self.scope.to_selector()},
            workspaceFolders=folders,
        )
        return params.model_dump(exclude_none=True)

    # ==================== 文档同步 ====================

    async def did_open(self, uri: DocumentUri, language_id: str, version: int, text: str) -> None:
        item = TextDocumentItem(uri=uri, languageId=language_id, version=version, text=text)
        await self._notify("textDocument/didOpen", {"textDocument": item.model_dump()})

    async def did_change(self, uri: DocumentUri, version: int, text: str) -> None:
        await self._notify(
            "textDocument/didChange",
            {
                "textDocument": {"uri": uri, "version": version},
                "contentChanges": [{"text": text}],
            },
        )

    async def did_close(self, uri: DocumentUri) -> None:
        self._diagnostics.pop(uri, None)
        await self._notify("textDocument/didClose", {"textDocument": {"uri": uri}})

    async def request(self, method: str, params: Optional[dict] = None) -> Any:
        """向服务器发送任意请求（仅 RUNNING 状态）"""
        if self._state is not ProtocolState.RUNNING:
            raise SessionError(f"会话 {self.id} 未运行 ({self._state.value})")
        return await self._request(method, params, timeout=self.request_timeout)

    async def hover(self, uri: DocumentUri, line: int, character: int) -> Optional[Hover]:
        """textDocument/hover，位置为 0 起始"""
        result = await self.request(
            "textDocument/hover",
            {"textDocument": {"uri": uri}, "position": {"line": line, "character": character}},
        )
        if not result:
            return None
        try:
            return Hover(**result)
        except (ValidationError, TypeError) as e:
            raise RequestError(f"无效的 hover 响应: {e}")

    async def semantic_tokens(
        self, uri: DocumentUri, range: Optional[Range] = None
    ) -> Optional[SemanticTokens]:
        """textDocument/semanticTokens/full，指定 range 时使用 /range"""
        params: Dict[str, Any] = {"textDocument": {"uri": uri}}
        if range is None:
            method = "textDocument/semanticTokens/full"
        else:
            method = "textDocument/semanticTokens/range"
            params["range"] = range.model_dump()

        result = await self.request(method, params)
        if not result:
            return None
        try:
            return SemanticTokens(**result)
        except (ValidationError, TypeError) as e:
            raise RequestError(f"无效的语义 token 响应: {e}")

    # ==================== 消息收发 ====================

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _request(self, method: str, params: Optional[dict], timeout: float) -> Any:
        """发送请求并等待响应"""
        request_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future

        try:
            await self._transport.send(JSONRPCRequest(id=request_id, method=method, params=params))
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending_requests.pop(request_id, None)

    async def _notify(self, method: str, params: Optional[dict]) -> None:
        """发送通知（无需响应）"""
        await self._transport.send(JSONRPCNotification(method=method, params=params))

    def _fail_pending(self, error: Exception) -> None:
        """让所有未完成的请求以 error 结束"""
        for future in self._pending_requests.values():
            if not future.done():
                future.set_exception(error)
        self._pending_requests.clear()

    async def _read_messages(self) -> None:
        """读取并分发服务器消息，直到连接关闭"""
        try:
            while True:
                try:
                    message = await self._transport.receive()
                except MessageDecodeError as e:
                    logger.warning(f"忽略无法解析的消息: {e}")
                    continue

                if isinstance(message, JSONRPCResponse):
                    self._handle_response(message)
                elif isinstance(message, JSONRPCRequest):
                    await self._handle_server_request(message)
                else:
                    self._handle_notification(message)
        except ConnectionClosed:
            if self._state is ProtocolState.RUNNING:
                logger.warning(f"LSP 会话 {self.id} 的服务器意外退出")
        except TransportError as e:
            logger.error(f"LSP 会话 {self.id} 读取失败: {e}")
        finally:
            self._fail_pending(ConnectionClosed(f"会话 {self.id} 的连接已断开"))

    def _handle_response(self, message: JSONRPCResponse) -> None:
        future = self._pending_requests.get(message.id) if isinstance(message.id, int) else None
        if future is None or future.done():
            logger.debug(f"忽略未知请求的响应: {message.id}")
            return
        if message.error is not None:
            future.set_exception(
                RequestError(f"LSP 错误: {message.error.message}", code=message.error.code)
            )
        else:
            future.set_result(message.result)

    def _handle_notification(self, message: JSONRPCNotification) -> None:
        params = message.params if isinstance(message.params, dict) else {}

        if message.method == "textDocument/publishDiagnostics":
            try:
                diag_params = PublishDiagnosticsParams(**params)
            except ValidationError as e:
                logger.warning(f"处理诊断失败: {e}")
                return
            self._diagnostics[diag_params.uri] = diag_params.diagnostics
            if self.on_diagnostics:
                self.on_diagnostics(self, diag_params.uri, diag_params.diagnostics)

        elif message.method in ("window/logMessage", "window/showMessage"):
            level = LOG_MESSAGE_LEVELS.get(params.get("type", 4), logging.DEBUG)
            text = str(params.get("message", ""))
            logger.log(level, f"[{self.server_name}] {text}")
            if self.on_log:
                self.on_log(self, level, text)

        else:
            logger.debug(f"忽略通知: {message.method}")

    async def _handle_server_request(self, message: JSONRPCRequest) -> None:
        """处理服务器请求"""
        response = JSONRPCResponse(id=message.id, result=None)

        if message.method == "workspace/configuration":
            items = message.params.get("items", []) if isinstance(message.params, dict) else []
            response.result = [None for _ in items]
        elif message.method in ("client/registerCapability", "client/unregisterCapability"):
            pass
        elif message.method == "window/workDoneProgress/create":
            pass
        else:
            response.error = JSONRPCError(
                code=ErrorCodes.MethodNotFound,
                message=f"Unhandled method {message.method}",
            )

        try:
            await self._transport.send(response)
        except ConnectionClosed:
            pass
