"""LSP 会话监管

主要组件:
- Supervisor: 会话监管器，串行化 start/stop/restart
- Session: 单个语言服务器进程及其连接
- StdioTransport: Content-Length 分帧的 stdio 传输
- Hover / SemanticTokens: 文档查询结果
"""

from .protocol import (
    DEFAULT_DOCUMENT_SELECTOR,
    Diagnostic,
    DocumentFilter,
    DocumentScope,
    DocumentUri,
    Hover,
    Position,
    Range,
    SemanticToken,
    SemanticTokens,
    SemanticTokensLegend,
    detect_language_id,
    path_to_uri,
)
from .results import ErrorKind, LifecycleResult, Operation, Outcome
from .session import (
    HandshakeError,
    ProtocolState,
    RequestError,
    Session,
    SessionError,
    ShutdownError,
)
from .supervisor import BusyPolicy, Supervisor, SupervisorState, TrackedDocument
from .transport import ConnectionClosed, SpawnError, StdioTransport, TransportError

__all__ = [
    "Supervisor",
    "SupervisorState",
    "BusyPolicy",
    "TrackedDocument",
    "Session",
    "ProtocolState",
    "SessionError",
    "HandshakeError",
    "ShutdownError",
    "RequestError",
    "StdioTransport",
    "TransportError",
    "SpawnError",
    "ConnectionClosed",
    "LifecycleResult",
    "Operation",
    "Outcome",
    "ErrorKind",
    "Diagnostic",
    "DocumentFilter",
    "DocumentScope",
    "DocumentUri",
    "Hover",
    "Position",
    "Range",
    "SemanticToken",
    "SemanticTokens",
    "SemanticTokensLegend",
    "DEFAULT_DOCUMENT_SELECTOR",
    "detect_language_id",
    "path_to_uri",
]
