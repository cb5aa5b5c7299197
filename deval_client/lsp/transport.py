"""LSP 传输层实现

通过子进程的 stdin/stdout 收发 Content-Length 分帧的 JSON-RPC 消息。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import BaseModel

from .protocol import JSONRPCMessage, JSONRPCResponse, parse_message

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """传输层错误"""

    pass


class SpawnError(TransportError):
    """子进程无法启动"""

    pass


class ConnectionClosed(TransportError):
    """连接已关闭"""

    pass


class MessageDecodeError(TransportError):
    """消息正文无法解析（分帧仍然完整）"""

    pass


# 默认继承的环境变量
DEFAULT_INHERITED_ENV_VARS = (
    ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER", "LANG"]
    if sys.platform != "win32"
    else [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PATHEXT",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
)

HEADER_SEPARATOR = b"\r\n\r\n"


def get_default_environment() -> Dict[str, str]:
    """获取默认环境变量"""
    env: Dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is not None and not value.startswith("()"):
            env[key] = value
    return env


def encode_message(message: BaseModel) -> bytes:
    """按 LSP 约定编码消息: Content-Length 头 + JSON 正文"""
    data = message.model_dump(mode="json", exclude_none=True)
    # 成功响应必须带 result 字段，即使为 null
    if isinstance(message, JSONRPCResponse) and message.error is None:
        data["result"] = message.result
    body = json.dumps(data, ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def parse_content_length(header: bytes) -> int:
    """解析 Content-Length"""
    for line in header.decode("ascii", errors="replace").split("\r\n"):
        name, _, value = line.partition(":")
        if name.strip().lower() == "content-length":
            try:
                return int(value.strip())
            except ValueError:
                break
    raise TransportError(f"无效的消息头: {header!r}")


class StdioTransport:
    """Stdio 传输实现

    拥有子进程及其标准输入输出，随会话一起销毁。
    """

    def __init__(
        self,
        command: str,
        args: Optional[list[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
    ):
        """初始化 Stdio 传输

        Args:
            command: 服务器命令
            args: 命令参数
            env: 环境变量 (会与默认环境变量合并)
            cwd: 工作目录
        """
        self.command = command
        self.args = args or []
        self.env = {**get_default_environment(), **(env or {})}
        self.cwd = cwd

        self._process: Optional[asyncio.subprocess.Process] = None
        self._write_lock = asyncio.Lock()
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_connected(self) -> bool:
        """进程是否仍在运行"""
        return self._process is not None and self._process.returncode is None

    async def connect(self) -> None:
        """启动子进程"""
        if self._process is not None:
            raise TransportError("传输已被使用，不能重复启动")

        cmd = [self.command] + self.args
        logger.debug(f"启动语言服务器: {' '.join(cmd)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
            )
        except FileNotFoundError:
            raise SpawnError(f"找不到命令: {self.command}")
        except PermissionError:
            raise SpawnError(f"没有执行权限: {self.command}")
        except OSError as e:
            raise SpawnError(f"启动服务器失败: {e}")

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info(f"语言服务器已启动 (PID: {self._process.pid})")

    async def send(self, message: BaseModel) -> None:
        """发送一条消息"""
        if not self.is_connected or self._process.stdin is None:
            raise ConnectionClosed("未连接到服务器")

        data = encode_message(message)
        logger.debug(f"发送: {data[:200]!r}")

        async with self._write_lock:
            try:
                self._process.stdin.write(data)
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ConnectionClosed(f"发送消息失败: {e}")

    async def receive(self) -> JSONRPCMessage:
        """读取下一条消息

        服务器关闭 stdout 时抛出 ConnectionClosed。
        """
        if self._process is None or self._process.stdout is None:
            raise ConnectionClosed("未连接到服务器")

        stdout = self._process.stdout
        try:
            header = await stdout.readuntil(HEADER_SEPARATOR)
            length = parse_content_length(header)
            body = await stdout.readexactly(length)
        except asyncio.IncompleteReadError:
            raise ConnectionClosed("服务器连接已关闭")
        except asyncio.LimitOverrunError as e:
            raise TransportError(f"消息头过长: {e}")

        logger.debug(f"接收: {body[:200]!r}")

        try:
            return parse_message(json.loads(body.decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            raise MessageDecodeError(f"JSON 解析失败: {e}")

    async def close_stdin(self) -> None:
        """关闭 stdin，通知服务器输入结束"""
        if self._process is None or self._process.stdin is None:
            return
        if self._process.stdin.is_closing():
            return
        self._process.stdin.close()
        try:
            await self._process.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass

    async def wait(self, timeout: float) -> bool:
        """等待进程退出，返回是否在超时内退出"""
        if self._process is None:
            return True
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def disconnect(self, timeout: float = 2.0) -> bool:
        """终止子进程并释放资源

        先 terminate，超时后 kill。返回进程是否自行退出（未被强制终止）。
        """
        if self._process is None:
            return True

        exited = self._process.returncode is not None
        try:
            await self.close_stdin()
            if not exited:
                exited = await self.wait(timeout)
            if not exited:
                logger.warning(f"语言服务器未响应，强制终止 (PID: {self._process.pid})")
                self._process.terminate()
                if not await self.wait(1.0):
                    self._process.kill()
                    await self.wait(1.0)
        except ProcessLookupError:
            pass
        finally:
            if self._stderr_task:
                self._stderr_task.cancel()
                try:
                    await self._stderr_task
                except asyncio.CancelledError:
                    pass
            self._stderr_task = None
            logger.info(f"语言服务器已断开 (returncode: {self._process.returncode})")
            self._process = None

        return exited

    async def kill(self) -> None:
        """立即杀死进程（握手失败时使用）"""
        if self._process is None:
            return
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        await self.disconnect(timeout=1.0)

    async def _drain_stderr(self) -> None:
        """读取 stderr 输出写入日志，避免管道写满"""
        stderr = self._process.stderr if self._process else None
        if stderr is None:
            return
        while True:
            line = await stderr.readline()
            if not line:
                break
            logger.debug(f"[server stderr] {line.decode('utf-8', errors='replace').rstrip()}")
