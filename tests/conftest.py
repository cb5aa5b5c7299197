"""pytest 配置"""

import asyncio
import sys
from pathlib import Path

import pytest

# 添加项目根目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

from deval_client.config import Config, ServerConfig, TimeoutConfig  # noqa: E402
from deval_client.events import set_event_broker  # noqa: E402
from deval_client.i18n import reset_i18n  # noqa: E402
from deval_client.lsp.protocol import Hover, SemanticTokens, SemanticTokensLegend  # noqa: E402

STUB_SERVER = Path(__file__).parent / "fixtures" / "stub_server.py"


@pytest.fixture(autouse=True)
def reset_globals():
    """每个测试前后重置全局 i18n 与事件代理"""
    reset_i18n()
    set_event_broker(None)
    yield
    reset_i18n()
    set_event_broker(None)


@pytest.fixture
def workspace_dir(tmp_path):
    """创建临时工作目录"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return str(workspace)


@pytest.fixture
def stub_config(workspace_dir):
    """返回一个以测试桩服务器为命令的配置工厂"""

    def factory(mode: str = "normal", **overrides) -> Config:
        server = ServerConfig(
            command=sys.executable,
            args=[str(STUB_SERVER), "lsp", "--mode", mode],
        )
        timeouts = TimeoutConfig(
            initialize=overrides.pop("initialize", 5.0),
            request=5.0,
            shutdown_grace=overrides.pop("shutdown_grace", 1.0),
        )
        return Config(server=server, timeouts=timeouts, workspace_dir=workspace_dir, **overrides)

    return factory


@pytest.fixture
def sample_toml(workspace_dir):
    """创建示例 TOML 文件"""
    file_path = Path(workspace_dir) / "sample.toml"
    file_path.write_text('[package]\nname = "demo"\nversion = "0.1.0"\n')
    return str(file_path)


class FakeSession:
    """不启动进程的会话替身，由 FakeSessionFactory 统计存活数量"""

    def __init__(self, factory: "FakeSessionFactory", index: int):
        self.factory = factory
        self.id = f"fake{index}"
        self.pid = None
        self.server_name = "Fake LSP"
        self.alive = False
        self.closed = False
        self.calls: list = []
        self.diagnostics: dict = {}
        self.semantic_tokens_legend = SemanticTokensLegend(tokenTypes=["variable"])

    @property
    def is_alive(self):
        return self.alive

    def die(self):
        """模拟服务器进程自行退出"""
        if self.alive:
            self.alive = False
            self.factory.live -= 1

    async def open(self):
        factory = self.factory
        if factory.open_gate is not None:
            await factory.open_gate.wait()
        if factory.open_delay:
            await asyncio.sleep(factory.open_delay)
        if factory.open_errors:
            raise factory.open_errors.pop(0)
        self.alive = True
        self.pid = 40000 + len(factory.created)
        factory.live += 1
        factory.max_live = max(factory.max_live, factory.live)

    async def close(self, grace: float):
        factory = self.factory
        if factory.close_delay:
            await asyncio.sleep(factory.close_delay)
        if self.alive:
            factory.live -= 1
        self.alive = False
        self.closed = True
        if factory.close_errors:
            raise factory.close_errors.pop(0)

    async def did_open(self, uri, language_id, version, text):
        self.calls.append(("open", uri, version))

    async def did_change(self, uri, version, text):
        self.calls.append(("change", uri, version))

    async def did_close(self, uri):
        self.calls.append(("close", uri))

    async def hover(self, uri, line, character):
        self.calls.append(("hover", uri, line, character))
        if self.factory.query_error is not None:
            raise self.factory.query_error
        return Hover(contents=f"{uri}:{line}:{character}")

    async def semantic_tokens(self, uri, range=None):
        self.calls.append(("tokens", uri, range))
        if self.factory.query_error is not None:
            raise self.factory.query_error
        return SemanticTokens(data=[0, 0, 4, 0, 0])


class FakeSessionFactory:
    """作为 Supervisor 的 session_factory 使用"""

    def __init__(self):
        self.created: list = []
        self.live = 0
        self.max_live = 0
        self.open_errors: list = []
        self.close_errors: list = []
        self.open_gate = None
        self.open_delay = 0.0
        self.close_delay = 0.0
        self.query_error = None

    def __call__(self):
        session = FakeSession(self, len(self.created) + 1)
        self.created.append(session)
        return session


@pytest.fixture
def fake_sessions():
    return FakeSessionFactory()
