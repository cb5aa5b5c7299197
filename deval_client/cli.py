"""
deval-client CLI 入口

在终端中充当编辑器宿主：激活扩展、接收命令、退出时停用扩展。

命令:
    /restart /start /stop /status      语言服务器生命周期
    /open <path> /close <path>         向服务器同步文档
    /diagnostics [path]                查看诊断
    /hover <path> <line> <col>         悬停信息
    /tokens <path> [start end]         语义 token
    /help /quit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import threading
from pathlib import Path
from typing import Callable, Optional

from rich.logging import RichHandler

from . import __version__
from .config import Config, ConfigError
from .display import ConsoleNotifier
from .events import LIFECYCLE_EVENTS, EventBroker, EventType
from .extension import RESTART_COMMAND, START_COMMAND, STATUS_COMMAND, STOP_COMMAND, Extension
from .i18n import set_language
from .lsp.protocol import Position, Range, detect_language_id, path_to_uri

logger = logging.getLogger(__name__)


class Commands:
    """交互命令，cmd_ 前缀的方法自动注册"""

    ALIASES = {
        "q": "quit",
        "exit": "quit",
        "?": "help",
        "h": "help",
        "r": "restart",
        "s": "status",
        "diag": "diagnostics",
    }

    def __init__(self, extension: Extension, notifier: ConsoleNotifier):
        self.extension = extension
        self.notifier = notifier
        self._commands = self._discover_commands()

    def _discover_commands(self) -> dict[str, Callable]:
        """发现所有 cmd_ 前缀的方法"""
        return {
            name[4:]: getattr(self, name) for name in dir(self) if name.startswith("cmd_")
        }

    def get_command(self, name: str) -> Optional[Callable]:
        """获取命令（支持别名和前缀匹配）"""
        name = self.ALIASES.get(name, name)
        if name in self._commands:
            return self._commands[name]

        matches = [cmd for cmd in self._commands if cmd.startswith(name)]
        if len(matches) == 1:
            return self._commands[matches[0]]
        return None

    async def execute(self, command_line: str) -> bool:
        """执行命令，返回是否继续循环"""
        parts = command_line.lstrip("/").split(maxsplit=1)
        if not parts:
            return True
        cmd_name = parts[0].lower()
        args = parts[1] if len(parts) > 1 else ""

        cmd_func = self.get_command(cmd_name)
        if cmd_func is None:
            self.notifier.error(f"未知命令: {cmd_name}，输入 /help 查看帮助")
            return True

        return await cmd_func(args)

    # ==================== 命令实现 ====================

    async def cmd_help(self, args: str) -> bool:
        """显示帮助信息"""
        for name, func in sorted(self._commands.items()):
            doc = (func.__doc__ or "").strip().split("\n")[0]
            self.notifier.console.print(f"  [bold]/{name:<12}[/bold] {doc}")
        return True

    async def cmd_quit(self, args: str) -> bool:
        """停止语言服务器并退出"""
        return False

    async def cmd_restart(self, args: str) -> bool:
        """重启语言服务器"""
        await self.extension.execute_command(RESTART_COMMAND)
        return True

    async def cmd_start(self, args: str) -> bool:
        """启动语言服务器"""
        await self.extension.execute_command(START_COMMAND)
        return True

    async def cmd_stop(self, args: str) -> bool:
        """停止语言服务器"""
        await self.extension.execute_command(STOP_COMMAND)
        return True

    async def cmd_status(self, args: str) -> bool:
        """显示语言服务器状态"""
        await self.extension.execute_command(STATUS_COMMAND)
        return True

    async def cmd_open(self, args: str) -> bool:
        """打开文档并同步给服务器"""
        path = Path(args.strip())
        if not args.strip() or not path.is_file():
            self.notifier.error(f"文件不存在: {args.strip()}")
            return True

        try:
            text = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError) as e:
            self.notifier.error(f"无法读取 {path}: {e}")
            return True
        uri = path_to_uri(str(path))
        if not await self.extension.supervisor.open_document(uri, detect_language_id(str(path)), text):
            self.notifier.warning(f"不在服务范围内: {uri}")
        return True

    async def cmd_close(self, args: str) -> bool:
        """关闭文档"""
        uri = path_to_uri(args.strip())
        if not await self.extension.supervisor.close_document(uri):
            self.notifier.warning(f"文档未打开: {uri}")
        return True

    async def cmd_hover(self, args: str) -> bool:
        """显示悬停信息: /hover <path> <line> <column>"""
        parts = args.strip().rsplit(maxsplit=2)
        try:
            path, line, column = parts[0], int(parts[1]), int(parts[2])
        except (IndexError, ValueError):
            self.notifier.error("用法: /hover <path> <line> <column>（从 1 开始）")
            return True
        if line < 1 or column < 1:
            self.notifier.error("行号和列号从 1 开始")
            return True

        hover = await self.extension.supervisor.hover(path_to_uri(path), line - 1, column - 1)
        if hover is None or not hover.text:
            self.notifier.info("没有悬停信息")
        else:
            self.notifier.info(hover.text)
        return True

    async def cmd_tokens(self, args: str) -> bool:
        """显示语义 token: /tokens <path> [start_line end_line]"""
        parts = args.strip().split()
        if len(parts) not in (1, 3):
            self.notifier.error("用法: /tokens <path> [start_line end_line]（从 1 开始）")
            return True

        token_range = None
        if len(parts) == 3:
            try:
                start, end = int(parts[1]), int(parts[2])
            except ValueError:
                self.notifier.error("行号必须是整数")
                return True
            if start < 1 or end < start:
                self.notifier.error(f"无效的行范围: {start}-{end}")
                return True
            token_range = Range(
                start=Position(line=start - 1, character=0),
                end=Position(line=end, character=0),
            )

        supervisor = self.extension.supervisor
        tokens = await supervisor.semantic_tokens(path_to_uri(parts[0]), token_range)
        legend = supervisor.session.semantic_tokens_legend if supervisor.session else None
        if tokens is None or legend is None:
            self.notifier.info("没有语义 token")
            return True

        try:
            decoded = tokens.decode(legend)
        except ValueError as e:
            self.notifier.error(f"语义 token 解码失败: {e}")
            return True
        self.notifier.semantic_tokens(decoded)
        return True

    async def cmd_diagnostics(self, args: str) -> bool:
        """显示诊断信息"""
        uri = path_to_uri(args.strip()) if args.strip() else None
        self.notifier.diagnostics(self.extension.supervisor.diagnostics(uri))
        return True


async def _trace_events(broker: EventBroker, notifier: ConsoleNotifier) -> None:
    queue = await broker.subscribe(LIFECYCLE_EVENTS + [EventType.SERVER_LOG])
    while True:
        event = await queue.get()
        notifier.event(event)


async def read_line(prompt: str) -> Optional[str]:
    """在守护线程中读取一行输入，EOF 时返回 None"""
    loop = asyncio.get_running_loop()
    future: asyncio.Future = loop.create_future()

    def deliver(line: Optional[str]) -> None:
        if not future.done():
            future.set_result(line)

    def reader() -> None:
        try:
            line: Optional[str] = input(prompt)
        except EOFError:
            line = None
        try:
            loop.call_soon_threadsafe(deliver, line)
        except RuntimeError:
            # 事件循环已关闭
            pass

    threading.Thread(target=reader, name="deval-input", daemon=True).start()
    return await future


async def run(config: Config, trace: bool = False) -> int:
    """运行终端宿主"""
    notifier = ConsoleNotifier()
    broker = EventBroker()
    extension = Extension(config, notifier, broker=broker)
    commands = Commands(extension, notifier)

    trace_task = asyncio.create_task(_trace_events(broker, notifier)) if trace else None
    await extension.activate()
    notifier.info("输入 /help 查看帮助，/quit 退出")

    try:
        while True:
            line = await read_line("deval> ")
            if line is None:
                break
            if not line.strip():
                continue
            if not await commands.execute(line.strip()):
                break
    except KeyboardInterrupt:
        pass
    finally:
        result = await extension.deactivate()
        if trace_task:
            trace_task.cancel()

    return 0 if result.ok else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="deval-client",
        description="Deval 语言服务器客户端",
    )
    parser.add_argument("--config", "-c", help="配置文件路径")
    parser.add_argument("--command", help="语言服务器命令路径（覆盖配置）")
    parser.add_argument("--workspace", "-w", help="工作目录")
    parser.add_argument("--lang", choices=["en", "zh"], help="消息语言")
    parser.add_argument("--log-level", help="日志级别")
    parser.add_argument("--trace", action="store_true", help="显示生命周期事件与服务器日志")
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    try:
        config = Config.load(args.config)
        if args.command:
            config.server.command = args.command
        if args.workspace:
            config.workspace_dir = args.workspace
        if args.lang:
            config.language = args.lang
        if args.log_level:
            config.log_level = args.log_level
        config.validate()
    except (ConfigError, FileNotFoundError) as e:
        print(f"配置错误: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
    )
    set_language(config.language)

    try:
        return asyncio.run(run(config, trace=args.trace))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
