"""Multi-storage persistence for captured click identifiers.

One StorageRecord is mirrored into every backend. Reads go through the
backends in priority order (cookie, localStorage, sessionStorage) and
return the first valid, unexpired record. Any failure of an individual
backend, including errors from host-supplied storage areas, is logged
and ignored, so persistence degrades to whatever is left.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from dinelportal.tracking.backends import (
    CookieBackend,
    StorageArea,
    StorageBackend,
    WebStorageBackend,
)
from dinelportal.tracking.exceptions import MalformedRecordError, StorageQuotaExceededError
from dinelportal.tracking.page import registrable_domain
from dinelportal.tracking.schema import StorageRecord

if TYPE_CHECKING:
    from dinelportal.tracking.config import TrackingConfig
    from dinelportal.tracking.page import PageContext

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Generate a random per-session identifier."""
    return f"sess_{uuid.uuid4().hex[:20]}"


class PersistenceManager:
    """Write, read and clear a StorageRecord across several backends.

    Write policy: write to all, ignore individual failures.
    Read policy: first valid wins, except that when valid mirrors disagree
    on the identifier the most recently written record wins and the
    disagreeing mirrors are overwritten with it.

    Example:
        >>> manager = PersistenceManager.for_page(page, config)
        >>> manager.write(record)
        ['cookie', 'localStorage', 'sessionStorage']
        >>> manager.read().identifier
        'dep_abc123'
    """

    def __init__(
        self,
        backends: list[StorageBackend],
        key_prefix: str = "dinelportal_",
        session_area: StorageArea | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the manager.

        Args:
            backends: Storage strategies in read-priority order.
            key_prefix: Namespace for every key the tracker writes.
            session_area: Area holding the per-session id.
            clock: Source of the current time (UTC).
        """
        self.backends = backends
        self.key_prefix = key_prefix
        self._session_area = session_area
        self._clock = clock or (lambda: datetime.now(UTC))
        self._session_id: str | None = None

    @classmethod
    def for_page(
        cls,
        page: PageContext,
        config: TrackingConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> PersistenceManager:
        """Build the standard cookie → localStorage → sessionStorage chain."""
        domain = config.cookie_domain or registrable_domain(page.hostname)
        secure = page.is_secure if config.cookie_secure is None else config.cookie_secure
        backends: list[StorageBackend] = [
            CookieBackend(
                page.cookies,
                domain=domain,
                secure=secure,
                same_site=config.same_site,
            ),
            WebStorageBackend(page.local_storage, "localStorage"),
            WebStorageBackend(page.session_storage, "sessionStorage"),
        ]
        return cls(
            backends,
            key_prefix=config.key_prefix,
            session_area=page.session_storage,
            clock=clock,
        )

    @property
    def data_key(self) -> str:
        """Key under which the record is stored in every backend."""
        return f"{self.key_prefix}data"

    @property
    def session_key(self) -> str:
        """sessionStorage key holding the session id."""
        return f"{self.key_prefix}session"

    def write(self, record: StorageRecord) -> list[str]:
        """Write a record to every backend.

        Stamps the record's written_at with the current time. A backend
        whose quota is too small for the full record (the 4 KB cookie
        limit) gets the record without page_url and referrer.

        Args:
            record: The record to persist.

        Returns:
            Names of the backends that accepted the write. An empty list
            means nothing could be persisted.
        """
        record.written_at = self._clock()

        written = [
            backend.name for backend in self.backends if self._write_record(backend, record)
        ]

        if written:
            logger.debug(f"Stored click id {record.identifier} in {', '.join(written)}")
        else:
            logger.warning(f"Could not persist click id {record.identifier} in any backend")
        return written

    def read(self) -> StorageRecord | None:
        """Return the current record, or None if no backend holds a valid one."""
        now = self._clock()
        found: list[tuple[StorageBackend, StorageRecord]] = []

        for backend in self.backends:
            raw = self._safe_read(backend)
            if raw is None:
                continue
            try:
                record = StorageRecord.deserialize(raw)
            except MalformedRecordError as e:
                logger.debug(f"Ignoring malformed record in {backend.name}: {e}")
                continue
            if record.is_expired(now):
                logger.debug(f"Ignoring expired record in {backend.name}")
                continue
            found.append((backend, record))

        if not found:
            return None

        winner = found[0][1]
        if any(record.identifier != winner.identifier for _, record in found[1:]):
            # max() keeps the earliest entry on ties, so priority breaks them
            winner = max(found, key=lambda item: item[1].written_at)[1]
            stale = [b for b, r in found if r.identifier != winner.identifier]
            logger.info(
                f"Storage mirrors disagree; keeping {winner.identifier} and "
                f"repairing {', '.join(b.name for b in stale)}"
            )
            for backend in stale:
                self._write_record(backend, winner)

        return winner

    def clear(self) -> None:
        """Remove the record from every backend."""
        for backend in self.backends:
            try:
                backend.remove(self.data_key)
            except Exception as e:
                logger.debug(f"{backend.name} clear failed: {e}")
        logger.debug("Cleared tracking data from all backends")

    def session_id(self) -> str:
        """Return the per-session id, creating it on first use.

        Kept in sessionStorage so it ends with the browser session; when
        sessionStorage is unavailable the id lives only in this manager.
        """
        if self._session_id is not None:
            return self._session_id

        if self._session_area is not None:
            try:
                existing = self._session_area.get_item(self.session_key)
                if existing:
                    self._session_id = existing
                    return existing
            except Exception as e:
                logger.debug(f"Session id read failed: {e}")

        self._session_id = generate_session_id()
        if self._session_area is not None:
            try:
                self._session_area.set_item(self.session_key, self._session_id)
            except Exception as e:
                logger.debug(f"Session id write failed: {e}")
        return self._session_id

    def status(self) -> dict[str, bool]:
        """Try a write in each backend and report which ones are usable."""
        check_key = f"{self.key_prefix}check"
        expires = self._clock() + timedelta(days=1)
        result = {}
        for backend in self.backends:
            try:
                backend.write(check_key, "1", expires)
                backend.remove(check_key)
                result[backend.name] = True
            except Exception as e:
                logger.debug(f"{backend.name} unavailable: {e}")
                result[backend.name] = False
        return result

    def _write_record(self, backend: StorageBackend, record: StorageRecord) -> bool:
        try:
            backend.write(self.data_key, record.serialize(), record.expires_at)
            return True
        except StorageQuotaExceededError as e:
            logger.debug(f"{backend.name} quota exceeded; storing record without page details: {e}")
            return self._safe_write(
                backend, record.serialize(include_page_details=False), record.expires_at
            )
        except Exception as e:
            logger.debug(f"{backend.name} write failed: {e}")
            return False

    def _safe_write(self, backend: StorageBackend, raw: str, expires: datetime) -> bool:
        try:
            backend.write(self.data_key, raw, expires)
            return True
        except Exception as e:
            logger.debug(f"{backend.name} write failed: {e}")
            return False

    def _safe_read(self, backend: StorageBackend) -> str | None:
        try:
            return backend.read(self.data_key)
        except Exception as e:
            logger.debug(f"{backend.name} read failed: {e}")
            return None
