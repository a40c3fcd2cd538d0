"""Click identifier capture from landing URLs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

from dinelportal.tracking.persistence import PersistenceManager
from dinelportal.tracking.schema import CaptureSource, StorageRecord

logger = logging.getLogger(__name__)

MAX_CLICK_ID_LENGTH = 256


def _query_param(url: str, param: str) -> str | None:
    values = parse_qs(urlparse(url).query, keep_blank_values=True).get(param)
    if not values:
        return None
    value = values[0].strip()
    return value or None


def extract_click_id(
    url: str,
    param: str = "click_id",
    required_prefix: str | None = None,
) -> str | None:
    """Extract a click identifier from a URL's query string.

    Args:
        url: Full page URL.
        param: Query parameter carrying the click id.
        required_prefix: If set, ids without this prefix are rejected.

    Returns:
        The click id, or None if absent or invalid.

    Examples:
        >>> extract_click_id("https://partner.dk/?click_id=dep_123")
        'dep_123'
        >>> extract_click_id("https://partner.dk/?click_id=") is None
        True
        >>> extract_click_id("https://partner.dk/?click_id=abc", required_prefix="dep_") is None
        True
    """
    click_id = _query_param(url, param)
    if click_id is None:
        return None
    if len(click_id) > MAX_CLICK_ID_LENGTH:
        logger.debug(f"Rejecting click id longer than {MAX_CLICK_ID_LENGTH} characters")
        return None
    if not click_id.isprintable():
        logger.debug("Rejecting click id with non-printable characters")
        return None
    if required_prefix and not click_id.startswith(required_prefix):
        logger.debug(f"Rejecting click id without prefix {required_prefix!r}: {click_id}")
        return None
    return click_id


def extract_partner_id(url: str, param: str = "partner_id") -> str | None:
    """Extract an optional partner id from a URL's query string."""
    return _query_param(url, param)


class ClickCapture:
    """Turns a landing URL into a persisted StorageRecord.

    Capture never overwrites a stored record with nothing, and capturing
    the identifier that is already stored leaves the record untouched.
    """

    def __init__(
        self,
        persistence: PersistenceManager,
        click_id_param: str = "click_id",
        partner_param: str = "partner_id",
        lifetime: timedelta = timedelta(days=90),
        required_prefix: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.persistence = persistence
        self.click_id_param = click_id_param
        self.partner_param = partner_param
        self.lifetime = lifetime
        self.required_prefix = required_prefix
        self._clock = clock or (lambda: datetime.now(UTC))

    def capture(
        self,
        url: str,
        referrer: str | None = None,
        default_partner_id: str | None = None,
    ) -> StorageRecord | None:
        """Capture the click id on a URL, if any.

        Args:
            url: The current page URL.
            referrer: The page referrer, stored with a new record.
            default_partner_id: Partner to record when the URL names none.

        Returns:
            The record now in effect: a new one for a new click id, the
            stored one otherwise, or None if there is neither.
        """
        click_id = extract_click_id(url, self.click_id_param, self.required_prefix)
        existing = self.persistence.read()

        if click_id is None:
            return existing

        if existing is not None and existing.identifier == click_id:
            logger.debug(f"Click id {click_id} already captured at {existing.captured_at}")
            return existing

        now = self._clock()
        record = StorageRecord(
            identifier=click_id,
            partner_id=extract_partner_id(url, self.partner_param) or default_partner_id,
            captured_at=now,
            expires_at=now + self.lifetime,
            session_id=self.persistence.session_id(),
            source=CaptureSource.URL,
            page_url=url,
            referrer=referrer or None,
        )
        self.persistence.write(record)
        logger.info(f"Captured click id {click_id}")
        return record
