"""User interface strings in Chinese and English."""

from __future__ import annotations

from enum import Enum


class Language(str, Enum):
    CHINESE = "zh"
    ENGLISH = "en"


class Key(str, Enum):
    APP_TITLE = "app.title"
    SERVICES = "services"
    HISTORY = "history"
    SETTINGS = "settings"
    ADD_SERVICE = "add.service"
    REFRESH = "refresh"
    TAILNET_SHARE = "tailnet.share"
    PUBLIC_SHARE = "public.share"
    STOP_SHARE = "stop.share"
    STOP_ALL = "stop.all"
    PAUSE_PUBLIC = "pause.public"
    PUBLIC_WARNING = "public.warning"
    LONG_RUN_WARNING = "longrun.warning"


_ZH: dict[str, str] = {
    Key.APP_TITLE: "portshare",
    Key.SERVICES: "服务",
    Key.HISTORY: "历史",
    Key.SETTINGS: "设置",
    Key.ADD_SERVICE: "添加服务",
    Key.REFRESH: "刷新发现",
    Key.TAILNET_SHARE: "开放到 tailnet",
    Key.PUBLIC_SHARE: "开启公网",
    Key.STOP_SHARE: "关闭发布",
    Key.STOP_ALL: "停止全部发布",
    Key.PAUSE_PUBLIC: "暂停所有公网",
    Key.PUBLIC_WARNING: "公网开放会让非 tailnet 设备访问该服务，请确认服务本身已有保护。",
    Key.LONG_RUN_WARNING: "长期开放不会自动关闭，请确认你愿意持续暴露该公网入口。",
}

_EN: dict[str, str] = {
    Key.APP_TITLE: "portshare",
    Key.SERVICES: "Services",
    Key.HISTORY: "History",
    Key.SETTINGS: "Settings",
    Key.ADD_SERVICE: "Add service",
    Key.REFRESH: "Refresh discovery",
    Key.TAILNET_SHARE: "Share to tailnet",
    Key.PUBLIC_SHARE: "Public share",
    Key.STOP_SHARE: "Stop share",
    Key.STOP_ALL: "Stop all shares",
    Key.PAUSE_PUBLIC: "Pause public shares",
    Key.PUBLIC_WARNING: (
        "Public sharing allows non-tailnet devices to access this service. "
        "Confirm the service is protected."
    ),
    Key.LONG_RUN_WARNING: (
        "Long-term public sharing does not close automatically. "
        "Confirm you want to keep this public entry open."
    ),
}


class Catalog:
    """Looks up strings for one language, falling back to Chinese, then to the key."""

    def __init__(self, lang: Language | str | None = None) -> None:
        self.lang: Language | str = lang or Language.CHINESE

    def t(self, key: Key | str) -> str:
        if self.lang == Language.ENGLISH and key in _EN:
            return _EN[key]
        if key in _ZH:
            return _ZH[key]
        return key.value if isinstance(key, Key) else key