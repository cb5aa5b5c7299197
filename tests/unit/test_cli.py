"""CLI 命令分发测试"""

import builtins

import pytest

from deval_client.cli import Commands, main, read_line
from deval_client.config import Config
from deval_client.events import EventBroker
from deval_client.extension import Extension
from deval_client.lsp.protocol import path_to_uri
from deval_client.lsp.supervisor import Supervisor


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def info(self, message):
        self.messages.append(("info", message))

    def warning(self, message):
        self.messages.append(("warning", message))

    def error(self, message):
        self.messages.append(("error", message))

    def diagnostics(self, diagnostics):
        self.messages.append(("diagnostics", diagnostics))

    def semantic_tokens(self, tokens):
        self.messages.append(("semantic_tokens", tokens))


@pytest.fixture
def commands(fake_sessions):
    config = Config()
    supervisor = Supervisor(config, session_factory=fake_sessions, broker=EventBroker())
    notifier = RecordingNotifier()
    return Commands(Extension(config, notifier, supervisor=supervisor), notifier)


class TestCommands:
    """Commands 测试"""

    def test_discovery(self, commands):
        assert commands.get_command("restart") == commands.cmd_restart
        assert commands.get_command("diagnostics") == commands.cmd_diagnostics

    def test_aliases_and_prefix(self, commands):
        assert commands.get_command("r") == commands.cmd_restart
        assert commands.get_command("q") == commands.cmd_quit
        assert commands.get_command("diag") == commands.cmd_diagnostics
        assert commands.get_command("he") == commands.cmd_help
        assert commands.get_command("ho") == commands.cmd_hover
        assert commands.get_command("to") == commands.cmd_tokens
        # st 同时匹配 start/status/stop
        assert commands.get_command("st") is None

    @pytest.mark.asyncio
    async def test_unknown_command(self, commands):
        assert await commands.execute("/frobnicate")
        assert commands.notifier.messages[0][0] == "error"

    @pytest.mark.asyncio
    async def test_quit(self, commands):
        assert not await commands.execute("/quit")

    @pytest.mark.asyncio
    async def test_restart_dispatches_to_extension(self, commands, fake_sessions):
        await commands.extension.activate()
        assert await commands.execute("/restart")

        assert len(fake_sessions.created) == 2
        assert commands.notifier.messages[-1] == (
            "info",
            "Deval language server restarted successfully",
        )

    @pytest.mark.asyncio
    async def test_open_and_diagnostics(self, commands, fake_sessions, sample_toml):
        await commands.extension.activate()
        assert await commands.execute(f"/open {sample_toml}")

        session = fake_sessions.created[0]
        assert session.calls[0][0] == "open"

        await commands.execute("/diagnostics")
        assert commands.notifier.messages[-1][0] == "diagnostics"

    @pytest.mark.asyncio
    async def test_open_missing_file(self, commands, tmp_path):
        await commands.execute(f"/open {tmp_path / 'missing.toml'}")
        assert commands.notifier.messages[-1][0] == "error"

    @pytest.mark.asyncio
    async def test_open_undecodable_file(self, commands, fake_sessions, tmp_path):
        """测试非 UTF-8 文件报告错误而不是退出循环"""
        await commands.extension.activate()
        path = tmp_path / "binary.toml"
        path.write_bytes(b"\xff\xfe\x00bad")

        assert await commands.execute(f"/open {path}")
        kind, message = commands.notifier.messages[-1]
        assert kind == "error"
        assert "binary.toml" in message
        assert commands.extension.supervisor.documents == {}
        assert fake_sessions.created[0].calls == []

    @pytest.mark.asyncio
    async def test_hover(self, commands, sample_toml):
        await commands.extension.activate()
        await commands.execute(f"/open {sample_toml}")

        assert await commands.execute(f"/hover {sample_toml} 2 3")
        assert commands.notifier.messages[-1] == ("info", f"{path_to_uri(str(sample_toml))}:1:2")

    @pytest.mark.asyncio
    async def test_hover_unopened_document(self, commands, sample_toml):
        await commands.extension.activate()
        await commands.execute(f"/hover {sample_toml} 1 1")
        assert commands.notifier.messages[-1] == ("info", "没有悬停信息")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", ["", "Cargo.toml", "Cargo.toml one 1", "Cargo.toml 0 1"])
    async def test_hover_bad_usage(self, commands, args):
        assert await commands.execute(f"/hover {args}")
        assert commands.notifier.messages[-1][0] == "error"

    @pytest.mark.asyncio
    async def test_tokens(self, commands, fake_sessions, sample_toml):
        await commands.extension.activate()
        await commands.execute(f"/open {sample_toml}")

        assert await commands.execute(f"/tokens {sample_toml} 2 3")
        kind, tokens = commands.notifier.messages[-1]
        assert kind == "semantic_tokens"
        assert [(t.line, t.start, t.length, t.token_type) for t in tokens] == [(0, 0, 4, "variable")]

        _, uri, token_range = fake_sessions.created[0].calls[-1]
        assert uri == path_to_uri(str(sample_toml))
        assert (token_range.start.line, token_range.end.line) == (1, 3)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", ["", "Cargo.toml 1", "Cargo.toml a b", "Cargo.toml 3 2"])
    async def test_tokens_bad_usage(self, commands, args):
        assert await commands.execute(f"/tokens {args}")
        assert commands.notifier.messages[-1][0] == "error"


class TestReadLine:
    """输入读取测试"""

    @pytest.mark.asyncio
    async def test_returns_line(self, monkeypatch):
        monkeypatch.setattr(builtins, "input", lambda prompt: "/status")
        assert await read_line("deval> ") == "/status"

    @pytest.mark.asyncio
    async def test_eof_returns_none(self, monkeypatch):
        def raise_eof(prompt):
            raise EOFError

        monkeypatch.setattr(builtins, "input", raise_eof)
        assert await read_line("deval> ") is None


def test_version(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--version"])
    assert exc.value.code == 0
    assert "deval-client" in capsys.readouterr().out


def test_invalid_config_exits_with_2(tmp_path, capsys):
    path = tmp_path / "bad.yaml"
    path.write_text("busy_policy: drop\n", encoding="utf-8")
    assert main(["--config", str(path)]) == 2
    assert "busy_policy" in capsys.readouterr().err
