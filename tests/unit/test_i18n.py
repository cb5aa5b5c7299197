"""国际化测试"""

import json

from deval_client.i18n import (
    BUILTIN_TRANSLATIONS,
    I18n,
    I18nConfig,
    get_language,
    set_language,
    t,
)


def test_default_language():
    assert get_language() == "en"
    assert t("restarting") == "Restarting Deval language server..."


def test_switch_language():
    assert set_language("zh")
    assert t("restarted") == "Deval 语言服务器重启成功"


def test_unknown_language_rejected():
    assert not set_language("fr")
    assert get_language() == "en"


def test_format_arguments():
    assert t("spawn_failed", reason="找不到命令") == (
        "Failed to launch Deval language server: 找不到命令"
    )


def test_missing_key_returns_key():
    assert t("no_such_key") == "no_such_key"


def test_catalogs_have_same_keys():
    assert set(BUILTIN_TRANSLATIONS["en"]) == set(BUILTIN_TRANSLATIONS["zh"])


def test_fallback_to_english():
    i18n = I18n()
    i18n.add_translations("ja", {"restarting": "再起動中..."})
    i18n.set_language("ja")
    assert i18n.translate("restarting") == "再起動中..."
    assert i18n.translate("stopped") == "Deval language server stopped"


def test_translations_dir(tmp_path):
    (tmp_path / "de.json").write_text(
        json.dumps({"stopped": "Deval-Sprachserver gestoppt"}), encoding="utf-8"
    )
    (tmp_path / "broken.json").write_text("{", encoding="utf-8")

    i18n = I18n(I18nConfig(translations_dir=str(tmp_path)))

    assert "de" in i18n.available_languages
    assert "broken" not in i18n.available_languages
    assert i18n.translate("stopped", language="de") == "Deval-Sprachserver gestoppt"
