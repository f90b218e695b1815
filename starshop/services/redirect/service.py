"""Ordered fallbacks for taking the user to an external payment page.

Hosts differ in what they permit (Telegram in-app browser, standalone browser,
embedded webview) and any single mechanism can fail quietly, so handlers are
tried in order until one reports that it took the URL.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from starshop.common.logging import logger

RECOGNIZED_SCHEMES = ("https://", "http://", "tg://")

RedirectHandler = Callable[[str], bool]


def normalize_url(url: str) -> str:
    """Prefix `https://` unless the URL already carries a known scheme."""

    url = url.strip()
    if url.startswith(RECOGNIZED_SCHEMES):
        return url
    return f"https://{url}"


@dataclass
class HostCapabilities:
    """Mechanisms a host environment may expose; `None` means unavailable.

    `open_link` and `open_window` return a truthy value when the host accepted
    the URL. `navigate` replaces the current location and is assumed to work.
    """

    open_link: Callable[[str], object] | None = None
    open_window: Callable[[str], object] | None = None
    navigate: Callable[[str], object] | None = None


def _capability_handler(name: str, capability: Callable[[str], object] | None) -> RedirectHandler:
    def handler(url: str) -> bool:
        if capability is None:
            return False
        return bool(capability(url))

    handler.__name__ = name
    return handler


def _navigation_handler(capability: Callable[[str], object] | None) -> RedirectHandler:
    def navigate(url: str) -> bool:
        if capability is None:
            return False
        capability(url)
        return True

    return navigate


def default_handlers(host: HostCapabilities) -> list[RedirectHandler]:
    """In-app link opener, then a new window, then full navigation."""

    return [
        _capability_handler("open_link", host.open_link),
        _capability_handler("open_window", host.open_window),
        _navigation_handler(host.navigate),
    ]


class RedirectStrategy:
    """Tries each handler in turn; the first one returning True wins."""

    def __init__(self, handlers: Sequence[RedirectHandler]) -> None:
        self.handlers = list(handlers)

    @classmethod
    def for_host(cls, host: HostCapabilities) -> "RedirectStrategy":
        return cls(default_handlers(host))

    def redirect(self, url: str) -> bool:
        final_url = normalize_url(url)
        for handler in self.handlers:
            name = getattr(handler, "__name__", repr(handler))
            try:
                if handler(final_url):
                    logger.info("redirect handled mechanism=%s url=%s", name, final_url)
                    return True
            except Exception as exc:
                logger.warning("redirect mechanism failed mechanism=%s error=%s", name, exc)
                continue
            logger.info("redirect mechanism declined mechanism=%s", name)
        logger.error("redirect not handled url=%s", final_url)
        return False
