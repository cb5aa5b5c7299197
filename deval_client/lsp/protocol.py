"""LSP 协议类型定义

基于 JSON-RPC 2.0 和 LSP 3.17 规范，只覆盖客户端生命周期、文档同步、悬停与语义 token 所需的部分。
"""

from __future__ import annotations

import fnmatch
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, ConfigDict, Field

DocumentUri = str

# =============================================================================
# JSON-RPC 2.0 基础类型
# =============================================================================


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 请求"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    method: str
    params: Optional[Union[Dict[str, Any], List[Any]]] = None


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 通知 (无 id)"""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Union[Dict[str, Any], List[Any]]] = None


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 错误"""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 响应"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None] = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None


class ErrorCodes:
    """JSON-RPC / LSP 错误码"""

    ParseError = -32700
    InvalidRequest = -32600
    MethodNotFound = -32601
    InvalidParams = -32602
    InternalError = -32603
    ServerNotInitialized = -32002
    RequestCancelled = -32800


JSONRPCMessage = Union[JSONRPCRequest, JSONRPCNotification, JSONRPCResponse]


def parse_message(data: Dict[str, Any]) -> JSONRPCMessage:
    """把解码后的 JSON 对象分类为请求、通知或响应

    正文不是 JSON 对象时抛出 ValueError。
    """
    if not isinstance(data, dict):
        raise ValueError(f"消息必须是 JSON 对象，实际为 {type(data).__name__}")
    if "method" in data:
        if "id" in data:
            return JSONRPCRequest(**data)
        return JSONRPCNotification(**data)
    return JSONRPCResponse(**data)


# =============================================================================
# 文档范围过滤
# =============================================================================


class DocumentFilter(BaseModel):
    """文档过滤器

    字段为 None 表示不限制。
    """

    model_config = ConfigDict(frozen=True)

    scheme: Optional[str] = None
    language: Optional[str] = None
    pattern: Optional[str] = None

    def matches(self, uri: DocumentUri, language_id: str) -> bool:
        """判断文档是否匹配"""
        parsed = urlparse(uri)
        if self.scheme is not None and parsed.scheme != self.scheme:
            return False
        if self.language is not None and language_id != self.language:
            return False
        if self.pattern is not None and not fnmatch.fnmatch(unquote(parsed.path), self.pattern):
            return False
        return True

    def to_dict(self) -> dict:
        return self.model_dump(exclude_none=True)


class DocumentScope:
    """文档范围：有序的过滤器集合，任一匹配即在范围内"""

    def __init__(self, filters: List[DocumentFilter]):
        self._filters = tuple(filters)

    @classmethod
    def from_list(cls, items: List[Dict[str, Any]]) -> "DocumentScope":
        return cls([DocumentFilter(**item) for item in items])

    @property
    def filters(self) -> tuple[DocumentFilter, ...]:
        return self._filters

    def matches(self, uri: DocumentUri, language_id: str) -> bool:
        return any(f.matches(uri, language_id) for f in self._filters)

    def to_selector(self) -> list[dict]:
        """转换为 LSP documentSelector"""
        return [f.to_dict() for f in self._filters]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DocumentScope):
            return NotImplemented
        return self._filters == other._filters

    def __hash__(self) -> int:
        return hash(self._filters)

    def __repr__(self) -> str:
        return f"DocumentScope({self.to_selector()!r})"


DEFAULT_DOCUMENT_SELECTOR: list[dict] = [
    {"scheme": "file", "language": "plaintext"},
    {"scheme": "file", "language": "toml"},
]


# =============================================================================
# 初始化握手
# =============================================================================


class ClientInfo(BaseModel):
    """客户端信息"""

    name: str
    version: Optional[str] = None


class ServerInfo(BaseModel):
    """服务器信息"""

    name: str
    version: Optional[str] = None


class InitializeParams(BaseModel):
    """初始化请求参数"""

    processId: Optional[int]
    clientInfo: Optional[ClientInfo] = None
    rootUri: Optional[DocumentUri] = None
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    initializationOptions: Optional[Dict[str, Any]] = None
    workspaceFolders: Optional[List[Dict[str, str]]] = None


class SemanticTokensLegend(BaseModel):
    """语义 token 图例"""

    model_config = ConfigDict(extra="ignore")

    tokenTypes: List[str] = Field(default_factory=list)
    tokenModifiers: List[str] = Field(default_factory=list)


class InitializeResult(BaseModel):
    """初始化结果"""

    capabilities: Dict[str, Any] = Field(default_factory=dict)
    serverInfo: Optional[ServerInfo] = None

    @property
    def semantic_tokens_legend(self) -> Optional[SemanticTokensLegend]:
        """服务器声明的语义 token 图例，未提供时为 None"""
        provider = self.capabilities.get("semanticTokensProvider")
        if not isinstance(provider, dict) or not isinstance(provider.get("legend"), dict):
            return None
        return SemanticTokensLegend(**provider["legend"])


# 客户端支持的语义 token 类型 (LSP 3.17 预定义类型)
SEMANTIC_TOKEN_TYPES = [
    "namespace",
    "type",
    "class",
    "enum",
    "interface",
    "struct",
    "typeParameter",
    "parameter",
    "variable",
    "property",
    "enumMember",
    "event",
    "function",
    "method",
    "macro",
    "keyword",
    "modifier",
    "comment",
    "string",
    "number",
    "regexp",
    "operator",
    "decorator",
]


CLIENT_CAPABILITIES: Dict[str, Any] = {
    "textDocument": {
        "synchronization": {
            "dynamicRegistration": False,
            "didSave": False,
        },
        "publishDiagnostics": {
            "versionSupport": True,
        },
        "hover": {
            "contentFormat": ["markdown", "plaintext"],
        },
        "semanticTokens": {
            "dynamicRegistration": False,
            "requests": {"range": True, "full": True},
            "tokenTypes": SEMANTIC_TOKEN_TYPES,
            "tokenModifiers": [],
            "formats": ["relative"],
        },
    },
    "workspace": {
        "workspaceFolders": True,
        "configuration": True,
    },
    "window": {
        "workDoneProgress": True,
    },
}


# =============================================================================
# 文档同步 / 诊断
# =============================================================================


class TextDocumentItem(BaseModel):
    """文档项"""

    uri: DocumentUri
    languageId: str
    version: int
    text: str


class Position(BaseModel):
    line: int
    character: int


class Range(BaseModel):
    start: Position
    end: Position


class Diagnostic(BaseModel):
    """诊断信息"""

    model_config = ConfigDict(extra="ignore")

    range: Range
    message: str
    severity: Optional[int] = None
    code: Optional[Union[int, str]] = None
    source: Optional[str] = None

    def format(self) -> str:
        severity = {1: "Error", 2: "Warning", 3: "Info", 4: "Hint"}.get(self.severity or 0, "Unknown")
        source = f"[{self.source}] " if self.source else ""
        return (
            f"{source}{severity} at line {self.range.start.line + 1}:"
            f"{self.range.start.character + 1}: {self.message}"
        )


class PublishDiagnosticsParams(BaseModel):
    """发布诊断参数"""

    model_config = ConfigDict(extra="ignore")

    uri: DocumentUri
    diagnostics: List[Diagnostic]
    version: Optional[int] = None


# =============================================================================
# 悬停 / 语义 token
# =============================================================================


class Hover(BaseModel):
    """悬停结果

    contents 可以是字符串、MarkedString、MarkupContent 或它们的列表。
    """

    model_config = ConfigDict(extra="ignore")

    contents: Union[str, Dict[str, Any], List[Union[str, Dict[str, Any]]]]
    range: Optional[Range] = None

    @property
    def text(self) -> str:
        """合并后的纯文本内容"""
        items = self.contents if isinstance(self.contents, list) else [self.contents]
        parts = []
        for item in items:
            value = item if isinstance(item, str) else item.get("value", "")
            if value:
                parts.append(str(value))
        return "\n".join(parts)


class SemanticToken(BaseModel):
    """解码后的语义 token（绝对位置）"""

    line: int
    start: int
    length: int
    token_type: str
    modifiers: List[str] = Field(default_factory=list)


class SemanticTokens(BaseModel):
    """语义 token 结果，data 为每 5 个整数一组的相对编码"""

    model_config = ConfigDict(extra="ignore")

    resultId: Optional[str] = None
    data: List[int] = Field(default_factory=list)

    def decode(self, legend: SemanticTokensLegend) -> List[SemanticToken]:
        """按图例把相对编码还原为绝对位置"""
        if len(self.data) % 5:
            raise ValueError(f"语义 token 数据长度必须是 5 的倍数: {len(self.data)}")

        tokens = []
        line = start = 0
        for i in range(0, len(self.data), 5):
            delta_line, delta_start, length, type_index, modifier_bits = self.data[i : i + 5]
            if delta_line:
                line += delta_line
                start = delta_start
            else:
                start += delta_start

            if type_index < len(legend.tokenTypes):
                token_type = legend.tokenTypes[type_index]
            else:
                token_type = f"unknown({type_index})"
            modifiers = [
                name for bit, name in enumerate(legend.tokenModifiers) if modifier_bits & (1 << bit)
            ]
            tokens.append(
                SemanticToken(
                    line=line,
                    start=start,
                    length=length,
                    token_type=token_type,
                    modifiers=modifiers,
                )
            )
        return tokens


# 语言 ID 映射
LANGUAGE_ID_MAP = {
    ".toml": "toml",
    ".json": "json",
    ".txt": "plaintext",
    ".deval": "plaintext",
}


def detect_language_id(file_path: str) -> str:
    """根据文件扩展名检测语言 ID"""
    ext = os.path.splitext(file_path)[1].lower()
    return LANGUAGE_ID_MAP.get(ext, "plaintext")


def path_to_uri(file_path: str) -> DocumentUri:
    """本地路径转换为 file:// URI"""
    return Path(file_path).resolve().as_uri()
