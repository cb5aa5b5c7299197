"""
国际化 (i18n) 模块

面向用户的通知文本，支持语言切换与外部翻译文件。

使用示例:
    from deval_client.i18n import set_language, t

    set_language("zh")
    print(t("restarting"))  # 正在重启 Deval 语言服务器...
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# 内置翻译
BUILTIN_TRANSLATIONS = {
    "en": {
        # 重启命令
        "restarting": "Restarting Deval language server...",
        "restarted": "Deval language server restarted successfully",
        "not_running": "Deval language server is not running",
        # 启停
        "started": "Deval language server started ({server})",
        "already_running": "Deval language server is already running",
        "stopped": "Deval language server stopped",
        "already_stopped": "Deval language server is already stopped",
        # 错误
        "spawn_failed": "Failed to launch Deval language server: {reason}",
        "handshake_failed": "Deval language server failed to initialize: {reason}",
        "shutdown_timeout": "Deval language server did not shut down cleanly: {reason}",
        "operation_in_progress": "Another language server operation is in progress",
        "command_failed": "Command {command} failed: {reason}",
        "unknown_command": "Unknown command: {command}",
        # 状态
        "status_running": "Running: {server} (session {session}, PID {pid})",
        "status_stopped": "Stopped",
        "status_exited": "Exited: {server} (session {session}), use restart to relaunch",
        "status_busy": "Operation in progress",
    },
    "zh": {
        "restarting": "正在重启 Deval 语言服务器...",
        "restarted": "Deval 语言服务器重启成功",
        "not_running": "Deval 语言服务器未在运行",
        "started": "Deval 语言服务器已启动 ({server})",
        "already_running": "Deval 语言服务器已在运行",
        "stopped": "Deval 语言服务器已停止",
        "already_stopped": "Deval 语言服务器已经停止",
        "spawn_failed": "无法启动 Deval 语言服务器: {reason}",
        "handshake_failed": "Deval 语言服务器初始化失败: {reason}",
        "shutdown_timeout": "Deval 语言服务器未能正常关闭: {reason}",
        "operation_in_progress": "另一个语言服务器操作正在进行",
        "command_failed": "命令 {command} 执行失败: {reason}",
        "unknown_command": "未知命令: {command}",
        "status_running": "运行中: {server} (会话 {session}, PID {pid})",
        "status_stopped": "已停止",
        "status_exited": "已退出: {server} (会话 {session})，可使用 restart 重新启动",
        "status_busy": "操作进行中",
    },
}


@dataclass
class I18nConfig:
    """国际化配置"""

    default_language: str = "en"
    fallback_language: str = "en"
    translations_dir: Optional[str] = None


class I18n:
    """国际化管理器"""

    _instance: Optional["I18n"] = None
    _lock = threading.Lock()

    def __init__(self, config: Optional[I18nConfig] = None):
        self.config = config or I18nConfig()
        self._current_language = self.config.default_language
        self._translations: Dict[str, Dict[str, str]] = {
            lang: translations.copy() for lang, translations in BUILTIN_TRANSLATIONS.items()
        }

        if self.config.translations_dir:
            self._load_translations_from_dir(self.config.translations_dir)

    @classmethod
    def get_instance(cls) -> "I18n":
        """获取单例实例"""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """重置单例实例"""
        with cls._lock:
            cls._instance = None

    def _load_translations_from_dir(self, dir_path: str):
        """从目录加载翻译文件 (<lang>.json)"""
        path = Path(dir_path)
        if not path.exists():
            return

        for file_path in path.glob("*.json"):
            try:
                with open(file_path, "r", encoding="utf-8") as f:
                    translations = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"加载翻译文件失败 {file_path}: {e}")
                continue
            self.add_translations(file_path.stem, translations)

    @property
    def current_language(self) -> str:
        return self._current_language

    @property
    def available_languages(self) -> List[str]:
        return list(self._translations.keys())

    def set_language(self, language: str) -> bool:
        """设置当前语言，未知语言返回 False"""
        if language in self._translations:
            self._current_language = language
            return True
        return False

    def add_translations(self, language: str, translations: Dict[str, str]):
        """添加翻译"""
        self._translations.setdefault(language, {}).update(translations)

    def get_translation(self, key: str, language: Optional[str] = None) -> Optional[str]:
        """获取翻译（不带格式化）"""
        lang = language or self._current_language

        if key in self._translations.get(lang, {}):
            return self._translations[lang][key]

        fallback = self.config.fallback_language
        if key in self._translations.get(fallback, {}):
            return self._translations[fallback][key]

        return None

    def translate(self, key: str, language: Optional[str] = None, **kwargs) -> str:
        """翻译并格式化，缺失时返回 key 本身"""
        translation = self.get_translation(key, language)
        if translation is None:
            return key

        if kwargs:
            try:
                return translation.format(**kwargs)
            except KeyError:
                return translation

        return translation


# 全局实例和快捷函数
_i18n: Optional[I18n] = None


def get_i18n() -> I18n:
    """获取全局 I18n 实例"""
    global _i18n
    if _i18n is None:
        _i18n = I18n.get_instance()
    return _i18n


def reset_i18n():
    """重置全局 I18n 实例"""
    global _i18n
    _i18n = None
    I18n.reset_instance()


def set_language(language: str) -> bool:
    """设置当前语言"""
    return get_i18n().set_language(language)


def get_language() -> str:
    """获取当前语言"""
    return get_i18n().current_language


def t(key: str, **kwargs) -> str:
    """翻译"""
    return get_i18n().translate(key, **kwargs)
