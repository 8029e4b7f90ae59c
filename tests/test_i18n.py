from portshare import i18n
from portshare.i18n import Catalog, Key, Language


def test_app_title_is_portshare_in_all_languages():
    assert Catalog(Language.CHINESE).t(Key.APP_TITLE) == "portshare"
    assert Catalog(Language.ENGLISH).t(Key.APP_TITLE) == "portshare"


def test_default_chinese_strings():
    assert Catalog(Language.CHINESE).t(Key.ADD_SERVICE) == "添加服务"


def test_english_switch():
    assert Catalog(Language.ENGLISH).t(Key.PUBLIC_SHARE) == "Public share"


def test_empty_language_defaults_to_chinese():
    assert Catalog("").t(Key.SERVICES) == "服务"
    assert Catalog().t(Key.SERVICES) == "服务"


def test_language_given_as_plain_string():
    assert Catalog("en").t(Key.STOP_ALL) == "Stop all shares"


def test_unknown_key_returns_key():
    assert Catalog(Language.CHINESE).t("missing.key") == "missing.key"


def test_plain_string_key_is_looked_up():
    assert Catalog(Language.ENGLISH).t("settings") == "Settings"


def test_english_missing_key_falls_back_to_chinese(monkeypatch):
    monkeypatch.delitem(i18n._EN, Key.SERVICES)
    assert Catalog(Language.ENGLISH).t(Key.SERVICES) == "服务"