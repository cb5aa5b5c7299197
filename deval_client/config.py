"""配置管理"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .lsp.protocol import DEFAULT_DOCUMENT_SELECTOR, DocumentScope

DEFAULT_COMMAND = "deval-cli"
DEFAULT_ARGS = ["lsp"]

# 覆盖服务器命令路径的环境变量
COMMAND_ENV_VAR = "DEVAL_CLI_PATH"

BUSY_POLICIES = ("queue", "reject")


class ConfigError(ValueError):
    """配置无效"""

    pass


@dataclass
class ServerConfig:
    """语言服务器进程配置"""

    command: str = DEFAULT_COMMAND
    args: List[str] = field(default_factory=lambda: list(DEFAULT_ARGS))
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None


@dataclass
class TimeoutConfig:
    """超时配置 (秒)"""

    initialize: float = 10.0
    request: float = 30.0
    shutdown_grace: float = 3.0


@dataclass
class Config:
    """主配置"""

    server: ServerConfig = field(default_factory=ServerConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    document_selector: List[Dict[str, Any]] = field(
        default_factory=lambda: [dict(item) for item in DEFAULT_DOCUMENT_SELECTOR]
    )
    busy_policy: str = "queue"
    workspace_dir: Optional[str] = None
    language: str = "en"
    log_level: str = "WARNING"

    def __post_init__(self):
        self.validate()

    @property
    def document_scope(self) -> DocumentScope:
        return DocumentScope.from_list(self.document_selector)

    def validate(self) -> None:
        """校验配置，发现问题抛出 ConfigError"""
        if not self.server.command:
            raise ConfigError("server.command 不能为空")
        if self.busy_policy not in BUSY_POLICIES:
            raise ConfigError(
                f"busy_policy 必须是 {', '.join(BUSY_POLICIES)} 之一，当前为: {self.busy_policy}"
            )
        for name in ("initialize", "request", "shutdown_grace"):
            value = getattr(self.timeouts, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"timeouts.{name} 必须为正数，当前为: {value!r}")
        if not self.document_selector:
            raise ConfigError("document_selector 至少需要一个过滤器")
        for item in self.document_selector:
            if not isinstance(item, dict):
                raise ConfigError(f"无效的文档过滤器: {item!r}")
            unknown = set(item) - {"scheme", "language", "pattern"}
            if unknown:
                raise ConfigError(f"文档过滤器包含未知字段: {', '.join(sorted(unknown))}")
        if logging.getLevelName(self.log_level.upper()) == f"Level {self.log_level.upper()}":
            raise ConfigError(f"未知的日志级别: {self.log_level}")

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        """加载配置

        未指定路径且找不到配置文件时使用默认配置。
        """
        if config_path is None:
            config_path = cls._find_config_file()
            if config_path is None:
                return cls.from_dict({})

        if not Path(config_path).exists():
            raise FileNotFoundError(f"配置文件未找到: {config_path}")

        return cls.from_yaml(config_path)

    @classmethod
    def _find_config_file(cls) -> Path | None:
        """查找配置文件"""
        # 优先级: 当前目录 > 用户目录
        search_paths = [
            Path.cwd() / "config" / "deval.yaml",
            Path.cwd() / ".deval" / "config.yaml",
            Path.home() / ".deval" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "Config":
        """从 YAML 文件加载配置"""
        config_path = Path(config_path)

        with open(config_path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"配置文件解析失败: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("配置文件顶层必须是映射")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """从字典构建配置"""
        # 服务器配置（环境变量优先于配置文件）
        server_data = data.get("server", {}) or {}
        if not isinstance(server_data, dict):
            raise ConfigError("server 必须是映射")
        command = os.environ.get(COMMAND_ENV_VAR) or server_data.get("command", DEFAULT_COMMAND)
        args = server_data.get("args", list(DEFAULT_ARGS))
        if not isinstance(args, list):
            raise ConfigError("server.args 必须是列表")
        env = server_data.get("env") or {}
        if not isinstance(env, dict):
            raise ConfigError("server.env 必须是映射")
        server_config = ServerConfig(
            command=command,
            args=[str(a) for a in args],
            env={str(k): str(v) for k, v in env.items()},
            cwd=server_data.get("cwd"),
        )

        # 超时配置
        timeout_data = data.get("timeouts", {}) or {}
        timeout_config = TimeoutConfig(
            initialize=timeout_data.get("initialize", 10.0),
            request=timeout_data.get("request", 30.0),
            shutdown_grace=timeout_data.get("shutdown_grace", 3.0),
        )

        selector = data.get("document_selector")
        if selector is None:
            selector = [dict(item) for item in DEFAULT_DOCUMENT_SELECTOR]

        return cls(
            server=server_config,
            timeouts=timeout_config,
            document_selector=selector,
            busy_policy=data.get("busy_policy", "queue"),
            workspace_dir=data.get("workspace_dir"),
            language=data.get("language", "en"),
            log_level=str(data.get("log_level", "WARNING")),
        )
