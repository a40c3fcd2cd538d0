"""Storage areas and the storage strategies built on them.

A storage *area* is the raw key/value facility the host page offers
(a cookie jar, localStorage, sessionStorage). A storage *backend* is one
persistence strategy over an area, with the attributes the tracker needs
(cookie domain, SameSite, expiry). PersistenceManager drives a
priority-ordered list of backends through the common StorageBackend
interface.

Areas raise StorageUnavailableError when disabled or blocked, mirroring
browsers that throw on storage access in private mode.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import format_datetime
from http.cookies import CookieError, SimpleCookie
from urllib.parse import quote, unquote

from dinelportal.tracking.exceptions import (
    StorageQuotaExceededError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

# Typical per-origin Web Storage quota
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024

# Browsers drop cookies whose name and value exceed this
MAX_COOKIE_BYTES = 4096


class StorageArea(ABC):
    """A localStorage/sessionStorage-like key/value area.

    Hosts adapt their own storage by subclassing and implementing the
    three item methods.
    """

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        """Return the stored value or None.

        Raises:
            StorageUnavailableError: If the area cannot be accessed.
        """
        pass  # pragma: no cover

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store a value.

        Raises:
            StorageUnavailableError: If the area cannot be accessed.
            StorageQuotaExceededError: If the write exceeds the quota.
        """
        pass  # pragma: no cover

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Remove a value if present.

        Raises:
            StorageUnavailableError: If the area cannot be accessed.
        """
        pass  # pragma: no cover


class InMemoryStorageArea(StorageArea):
    """Dictionary-backed storage area with a quota and an availability switch.

    Example:
        >>> area = InMemoryStorageArea()
        >>> area.set_item("k", "v")
        >>> area.get_item("k")
        'v'
        >>> area.available = False
        >>> area.get_item("k")
        Traceback (most recent call last):
        ...
        dinelportal.tracking.exceptions.StorageUnavailableError: storage is disabled
    """

    def __init__(
        self,
        name: str = "storage",
        available: bool = True,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
    ):
        self.name = name
        self.available = available
        self.quota_bytes = quota_bytes
        self._items: dict[str, str] = {}

    def _check_available(self) -> None:
        if not self.available:
            raise StorageUnavailableError(f"{self.name} is disabled")

    def _used_bytes(self, excluding: str | None = None) -> int:
        return sum(
            len(k) + len(v) for k, v in self._items.items() if k != excluding
        )

    def get_item(self, key: str) -> str | None:
        self._check_available()
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._check_available()
        if self._used_bytes(excluding=key) + len(key) + len(value) > self.quota_bytes:
            raise StorageQuotaExceededError(
                f"{self.name} quota of {self.quota_bytes} bytes exceeded writing {key}"
            )
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._check_available()
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        """Return stored keys (for inspection in tests and debugging)."""
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


class CookieJar:
    """First-party cookie store for one page, in the spirit of document.cookie.

    Cookies are kept as SimpleCookie morsels so the exact Set-Cookie
    string the tracker would emit can be inspected. Expired cookies are
    invisible to get(). Cookies larger than MAX_COOKIE_BYTES are refused,
    as browsers silently drop them.
    """

    def __init__(
        self,
        enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
    ):
        self.enabled = enabled
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cookies = SimpleCookie()
        self._expiry: dict[str, datetime] = {}

    def _check_enabled(self) -> None:
        if not self.enabled:
            raise StorageUnavailableError("cookies are blocked")

    def set(
        self,
        name: str,
        value: str,
        *,
        expires: datetime,
        domain: str | None = None,
        path: str = "/",
        secure: bool = False,
        same_site: str = "Lax",
    ) -> str:
        """Set a cookie and return its Set-Cookie header value.

        Raises:
            StorageUnavailableError: If cookies are blocked or the cookie
                cannot be encoded.
            StorageQuotaExceededError: If name and value exceed
                MAX_COOKIE_BYTES.
        """
        self._check_enabled()
        size = len(name.encode("utf-8")) + len(value.encode("utf-8"))
        if size > MAX_COOKIE_BYTES:
            raise StorageQuotaExceededError(
                f"cookie {name} is {size} bytes, over the {MAX_COOKIE_BYTES} byte limit"
            )
        try:
            self._cookies[name] = value
        except CookieError as e:
            raise StorageUnavailableError(f"cannot store cookie {name}: {e}") from e

        morsel = self._cookies[name]
        morsel["expires"] = format_datetime(expires.astimezone(UTC), usegmt=True)
        morsel["path"] = path
        morsel["samesite"] = same_site
        if domain:
            morsel["domain"] = domain
        if secure:
            morsel["secure"] = True

        if expires <= self._clock():
            del self._cookies[name]
            self._expiry.pop(name, None)
        else:
            self._expiry[name] = expires
        return morsel.OutputString()

    def get(self, name: str) -> str | None:
        """Return a live cookie's value, or None."""
        self._check_enabled()
        morsel = self._cookies.get(name)
        if morsel is None:
            return None
        if self._expiry[name] <= self._clock():
            return None
        return morsel.value

    def delete(self, name: str) -> None:
        """Expire a cookie."""
        self._check_enabled()
        if name in self._cookies:
            del self._cookies[name]
        self._expiry.pop(name, None)

    def morsel(self, name: str):
        """Return the raw morsel for a cookie, if set."""
        return self._cookies.get(name)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None


class StorageBackend(ABC):
    """One persistence strategy behind PersistenceManager.

    Backends only move strings; serialization and validity checks belong
    to PersistenceManager.
    """

    name: str

    @abstractmethod
    def write(self, key: str, value: str, expires: datetime) -> None:
        """Store a value that should live until expires."""
        pass  # pragma: no cover

    @abstractmethod
    def read(self, key: str) -> str | None:
        """Return the stored value, or None."""
        pass  # pragma: no cover

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove the stored value."""
        pass  # pragma: no cover


class CookieBackend(StorageBackend):
    """First-party cookie scoped to the registrable domain.

    Values are URL-encoded so JSON survives cookie syntax unchanged.
    """

    name = "cookie"

    def __init__(
        self,
        jar: CookieJar,
        domain: str | None = None,
        secure: bool = True,
        same_site: str = "Lax",
    ):
        self.jar = jar
        self.domain = domain
        self.secure = secure
        self.same_site = same_site

    def write(self, key: str, value: str, expires: datetime) -> None:
        header = self.jar.set(
            key,
            quote(value, safe=""),
            expires=expires,
            domain=self.domain,
            secure=self.secure,
            same_site=self.same_site,
        )
        logger.debug(f"Set-Cookie: {header}")

    def read(self, key: str) -> str | None:
        value = self.jar.get(key)
        return unquote(value) if value is not None else None

    def remove(self, key: str) -> None:
        self.jar.delete(key)


class WebStorageBackend(StorageBackend):
    """localStorage or sessionStorage.

    Web Storage has no native expiry; expiry is enforced by
    PersistenceManager from the record itself.
    """

    def __init__(self, area: StorageArea, name: str):
        self.area = area
        self.name = name

    def write(self, key: str, value: str, expires: datetime) -> None:
        self.area.set_item(key, value)

    def read(self, key: str) -> str | None:
        return self.area.get_item(key)

    def remove(self, key: str) -> None:
        self.area.remove_item(key)
