"""
Device fingerprint fallback.

When no stored click identifier survives (blocked cookies, private
browsing, cleared storage) the tracker links a later conversion to the
originating session through a fingerprint of stable, non-invasive device
signals. The fingerprint is a truncated SHA-256 digest: it cannot be
reversed into the signals, and it carries no personal data.

Fingerprints are always provisional. They are never written back as a
click identifier, and events built from them are tagged so consumers can
tell confident attribution from probabilistic attribution.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Iterable

from dinelportal.tracking.config import DEFAULT_FINGERPRINT_SIGNALS
from dinelportal.tracking.page import DeviceSignals
from dinelportal.tracking.schema import DeviceFingerprint

FINGERPRINT_PREFIX = "fp_"
DIGEST_LENGTH = 24
UNKNOWN = "unknown"


def _dimensions(*values: int | None) -> str | None:
    if any(v is None for v in values):
        return None
    return "x".join(str(v) for v in values)


def _short_hash(value: str | None) -> str | None:
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


SIGNAL_EXTRACTORS: dict[str, Callable[[DeviceSignals], str | None]] = {
    "screen": lambda s: _dimensions(s.screen_width, s.screen_height, s.color_depth),
    "viewport": lambda s: _dimensions(s.viewport_width, s.viewport_height),
    "timezone": lambda s: None if s.timezone_offset is None else str(s.timezone_offset),
    "language": lambda s: s.language.lower() if s.language else None,
    "platform": lambda s: s.platform or None,
    "cookies": lambda s: None if s.cookies_enabled is None else str(s.cookies_enabled).lower(),
    "user_agent": lambda s: _short_hash(s.user_agent),
}


def compute_fingerprint(
    signals: DeviceSignals,
    include: Iterable[str] = DEFAULT_FINGERPRINT_SIGNALS,
) -> DeviceFingerprint:
    """Derive a provisional device fingerprint.

    Pure function of the given signals: the same signals always produce the
    same value. Missing signals contribute a placeholder, so the result is
    never empty.

    Args:
        signals: Device signals read from the page.
        include: Names of the signals to use (see SIGNAL_EXTRACTORS).

    Returns:
        DeviceFingerprint whose value looks like ``fp_<24 hex chars>``.

    Raises:
        ValueError: If an unknown signal name is requested.
    """
    names = list(include)
    unknown = [name for name in names if name not in SIGNAL_EXTRACTORS]
    if unknown:
        raise ValueError(
            f"Unknown fingerprint signals: {', '.join(unknown)}. "
            f"Valid signals are: {', '.join(sorted(SIGNAL_EXTRACTORS))}"
        )

    components = []
    used = []
    for name in names:
        value = SIGNAL_EXTRACTORS[name](signals)
        if value is not None:
            used.append(name)
        components.append(f"{name}={value if value is not None else UNKNOWN}")

    digest = hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()
    return DeviceFingerprint(
        value=FINGERPRINT_PREFIX + digest[:DIGEST_LENGTH],
        signals=tuple(used),
    )
