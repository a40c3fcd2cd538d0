"""Host page model.

PageContext is everything the tracker reads from the page it is embedded
on: the current URL and title, the referrer, device signals, the storage
areas, and a globals namespace standing in for ``window``. Hosts
construct one per page view; tests construct them directly.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

from dinelportal.tracking.backends import CookieJar, InMemoryStorageArea, StorageArea

# Globals a consent manager may set to grant tracking consent
CONSENT_FLAGS = ("dinelportal_consent", "gtag_consent")

# localStorage key some consent banners write
CONSENT_STORAGE_KEY = "consent"


@dataclass(frozen=True)
class DeviceSignals:
    """Stable, non-invasive browser/device characteristics.

    Attributes:
        screen_width: Screen width in CSS pixels.
        screen_height: Screen height in CSS pixels.
        color_depth: Screen colour depth in bits.
        viewport_width: Inner window width.
        viewport_height: Inner window height.
        timezone_offset: Minutes behind UTC, as Date.getTimezoneOffset().
        language: Preferred language tag.
        platform: navigator.platform.
        cookies_enabled: navigator.cookieEnabled.
        user_agent: Full user-agent string.
    """

    screen_width: int | None = None
    screen_height: int | None = None
    color_depth: int | None = None
    viewport_width: int | None = None
    viewport_height: int | None = None
    timezone_offset: int | None = None
    language: str | None = None
    platform: str | None = None
    cookies_enabled: bool | None = None
    user_agent: str | None = None


@dataclass
class PageContext:
    """The page a tracker instance is embedded on."""

    url: str
    referrer: str = ""
    title: str = ""
    signals: DeviceSignals = field(default_factory=DeviceSignals)
    do_not_track: bool = False
    cookies: CookieJar = field(default_factory=CookieJar)
    local_storage: StorageArea = field(
        default_factory=lambda: InMemoryStorageArea(name="localStorage")
    )
    session_storage: StorageArea = field(
        default_factory=lambda: InMemoryStorageArea(name="sessionStorage")
    )
    globals: dict[str, Any] = field(default_factory=dict)

    @property
    def hostname(self) -> str:
        """Host name of the current URL, lower-cased."""
        return (urlparse(self.url).hostname or "").lower()

    @property
    def path(self) -> str:
        """Path of the current URL ("/" if empty)."""
        return urlparse(self.url).path or "/"

    @property
    def is_secure(self) -> bool:
        """Return True if the page was served over https."""
        return urlparse(self.url).scheme == "https"

    def navigate(self, url: str, title: str | None = None) -> None:
        """Update the current URL, as a history.pushState would.

        The title is kept unless a new one is given.
        """
        self.referrer = self.url
        self.url = url
        if title is not None:
            self.title = title

    @classmethod
    def blank(
        cls,
        url: str,
        clock: Callable[[], datetime] | None = None,
        **kwargs: Any,
    ) -> PageContext:
        """Create a page with fresh, empty storage sharing one clock."""
        return cls(
            url=url,
            cookies=CookieJar(clock=clock or (lambda: datetime.now(UTC))),
            **kwargs,
        )


def registrable_domain(hostname: str) -> str | None:
    """Return the cookie domain that spans all subdomains of a host.

    Uses the last two labels of the host name, so ``shop.partner.dk``
    gives ``.partner.dk``. Hosts that cannot carry a domain cookie
    (``localhost``, bare IP addresses, single-label names) return None,
    meaning a host-only cookie.

    Examples:
        >>> registrable_domain("www.shop.partner.dk")
        '.partner.dk'
        >>> registrable_domain("partner.dk")
        '.partner.dk'
        >>> registrable_domain("localhost") is None
        True
        >>> registrable_domain("192.168.1.10") is None
        True
    """
    host = hostname.strip().lower().rstrip(".")
    if not host or host == "localhost":
        return None
    try:
        ipaddress.ip_address(host.strip("[]"))
        return None
    except ValueError:
        pass

    parts = host.split(".")
    if len(parts) < 2:
        return None
    return "." + ".".join(parts[-2:])


def has_consent(page: PageContext) -> bool:
    """Check the consent flags a consent manager may have set."""
    if any(page.globals.get(flag) for flag in CONSENT_FLAGS):
        return True
    try:
        return page.local_storage.get_item(CONSENT_STORAGE_KEY) == "true"
    except Exception:
        return False


def is_tracking_allowed(
    page: PageContext,
    respect_do_not_track: bool = True,
    require_consent: bool = False,
) -> bool:
    """Check if tracking is allowed based on the page's privacy settings.

    Args:
        page: The host page.
        respect_do_not_track: Refuse tracking when DNT is set.
        require_consent: Refuse tracking unless a consent flag is present.

    Returns:
        True if the tracker may capture and persist.
    """
    if respect_do_not_track and page.do_not_track:
        return False
    if require_consent and not has_consent(page):
        return False
    return True
