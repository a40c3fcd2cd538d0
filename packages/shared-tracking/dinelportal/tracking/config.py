"""Configuration for the tracking client."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any
from urllib.parse import parse_qs, urlparse

from dinelportal.tracking.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://dinelportal.dk/api/tracking/log"
DEFAULT_SCRIPT_URL = "https://dinelportal.dk/api/tracking/universal.js"

# Danish and English conversion paths installed for new partners
DEFAULT_CONVERSION_PATTERNS = (
    "/thank-you",
    "/success",
    "/confirmation",
    "/complete",
    "/done",
    "/tak",
    "/takker",
    "/bekraeftelse",
    "/bekraeftet",
    "/gennemfoert",
    "/succes",
    "/velgennemfoert",
    "/ordre-bekraeftelse",
    "/bestilling-bekraeftelse",
    "/ordre-gennemfoert",
    "/koebt",
    "/tilmeldt",
    "/registreret",
    "/signup-success",
    "/registration-complete",
    "/checkout-complete",
    "/payment-success",
    "/order-complete",
    "/subscription-active",
    "/welcome",
    "/velkommen",
)

# Page titles checked when no path pattern matches
DEFAULT_TITLE_PATTERNS = (
    "thank you",
    "tak*",
    "bekræft*",
    "succes*",
    "velkommen*",
    "gennemført*",
    "ordre*",
    "bestilling*",
    "købt*",
    "tilmeldt*",
    "registreret*",
    "success*",
    "complete*",
    "confirmed*",
    "welcome*",
    "order*",
    "payment*",
)

DEFAULT_FINGERPRINT_SIGNALS = (
    "screen",
    "viewport",
    "timezone",
    "language",
    "platform",
    "cookies",
    "user_agent",
)

# Query parameters an embed tag may carry the partner id in
PARTNER_SCRIPT_PARAMS = ("partner_id", "pid")

PARTNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,50}$")

VALID_BEACON_METHODS = {"POST", "GET"}
VALID_SAME_SITE = {"Strict", "Lax", "None"}


def is_valid_partner_id(partner_id: str | None) -> bool:
    """Check a partner id against the partner programme's format.

    Partner ids are 3-50 characters of letters, digits, hyphens and
    underscores, and may not start or end with an underscore.
    """
    if not partner_id:
        return False
    return (
        PARTNER_ID_PATTERN.match(partner_id) is not None
        and not partner_id.startswith("_")
        and not partner_id.endswith("_")
    )


def detector_name(detector: Callable[..., Any]) -> str:
    """Name a custom detector for logs and beacons."""
    return getattr(detector, "__name__", None) or repr(detector)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> list[str] | None:
    value = os.getenv(name)
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class TrackingConfig:
    """Configuration for a tracker instance.

    Attributes:
        partner_id: Partner the visitor's conversions are attributed to.
            Without one, capture and persistence still run but conversion
            dispatch is skipped.
        endpoint: Collection endpoint receiving beacons.
        click_id_param: Query parameter carrying the click identifier.
        partner_param: Query parameter that may carry the partner id on the
            landing URL.
        cookie_days: Lifetime of a captured identifier in every backend.
        cookie_domain: Cookie domain. Derived from the page host if None.
        cookie_secure: Force the Secure attribute. Derived from the page
            scheme if None.
        same_site: SameSite attribute for the identifier cookie.
        key_prefix: Namespace prefix for every storage key and cookie name.
        conversion_patterns: Exact paths or globs marking conversion pages.
        title_patterns: Page title patterns checked when no path matches.
        custom_detectors: Callables taking the page URL and returning True
            on a conversion page, checked last.
        enable_auto_conversion: Watch navigations for conversion patterns.
        enable_fingerprinting: Fall back to a device fingerprint when no
            stored identifier exists.
        fingerprint_signals: Device signals feeding the fingerprint.
        respect_do_not_track: Do nothing when the page reports DNT.
        require_consent: Do nothing until a consent flag is present.
        click_id_prefix: Required prefix for accepted click ids, if any.
        beacon_method: "POST" (JSON body) or "GET" (pixel query string).
        max_retries: Retries after a failed beacon before dropping it.
        retry_backoff_seconds: Delay before a retry.
        request_timeout_seconds: HTTP timeout for one beacon attempt.
        poll_interval_seconds: Interval of the polling navigation watcher.
        debug: Enable debug logging for the tracking package.
    """

    partner_id: str | None = None
    endpoint: str = DEFAULT_ENDPOINT
    click_id_param: str = "click_id"
    partner_param: str = "partner_id"

    # Persistence
    cookie_days: int = 90
    cookie_domain: str | None = None
    cookie_secure: bool | None = None
    same_site: str = "Lax"
    key_prefix: str = "dinelportal_"

    # Detection
    conversion_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_CONVERSION_PATTERNS)
    )
    title_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_TITLE_PATTERNS))
    custom_detectors: list[Callable[[str], bool]] = field(default_factory=list)
    enable_auto_conversion: bool = True
    enable_fingerprinting: bool = True
    fingerprint_signals: tuple[str, ...] = DEFAULT_FINGERPRINT_SIGNALS

    # Privacy
    respect_do_not_track: bool = True
    require_consent: bool = False
    click_id_prefix: str | None = None

    # Beacon
    beacon_method: str = "POST"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    request_timeout_seconds: float = 5.0
    poll_interval_seconds: float = 0.5

    debug: bool = False

    def __post_init__(self) -> None:
        """Validate configuration values."""
        self.beacon_method = self.beacon_method.upper()
        if self.beacon_method not in VALID_BEACON_METHODS:
            raise ValueError(
                f"Invalid beacon_method: '{self.beacon_method}'. "
                f"Valid methods are: {', '.join(sorted(VALID_BEACON_METHODS))}"
            )
        if self.same_site not in VALID_SAME_SITE:
            raise ValueError(
                f"Invalid same_site: '{self.same_site}'. "
                f"Valid values are: {', '.join(sorted(VALID_SAME_SITE))}"
            )
        if self.cookie_days <= 0:
            raise ValueError(f"cookie_days must be positive, got {self.cookie_days}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative, got {self.max_retries}")
        if not self.key_prefix:
            raise ValueError("key_prefix must not be empty")
        for detector in self.custom_detectors:
            if not callable(detector):
                raise ValueError(f"custom_detectors must be callables, got {detector!r}")

        if self.partner_id is not None and not is_valid_partner_id(self.partner_id):
            logger.warning(f"Ignoring invalid partner_id: {self.partner_id!r}")
            self.partner_id = None

    @property
    def has_partner(self) -> bool:
        """Return True if conversions can be attributed to a partner."""
        return self.partner_id is not None

    def require_partner(self) -> str:
        """Return the partner id.

        Raises:
            ConfigurationError: If no valid partner id is configured.
        """
        if self.partner_id is None:
            raise ConfigurationError(
                "No partner_id configured; add ?partner_id=<id> to the "
                "tracking script URL"
            )
        return self.partner_id

    def merged(self, **overrides: Any) -> TrackingConfig:
        """Return a copy with the given fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        return replace(self, **overrides)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["conversion_patterns"] = list(self.conversion_patterns)
        data["title_patterns"] = list(self.title_patterns)
        data["custom_detectors"] = [detector_name(d) for d in self.custom_detectors]
        data["fingerprint_signals"] = list(self.fingerprint_signals)
        return data

    @classmethod
    def from_env(cls, **overrides: Any) -> TrackingConfig:
        """Create configuration from environment variables.

        Reads DINELPORTAL_PARTNER_ID, DINELPORTAL_ENDPOINT,
        DINELPORTAL_CLICK_ID_PARAM, DINELPORTAL_COOKIE_DAYS,
        DINELPORTAL_CONVERSION_PATTERNS and DINELPORTAL_TITLE_PATTERNS
        (comma separated),
        DINELPORTAL_BEACON_METHOD and DINELPORTAL_DEBUG. Keyword
        arguments take precedence over the environment.

        Returns:
            TrackingConfig instance.

        Raises:
            ValueError: If a numeric variable cannot be parsed.
        """
        values: dict[str, Any] = {}

        env_fields = {
            "DINELPORTAL_PARTNER_ID": "partner_id",
            "DINELPORTAL_ENDPOINT": "endpoint",
            "DINELPORTAL_CLICK_ID_PARAM": "click_id_param",
            "DINELPORTAL_BEACON_METHOD": "beacon_method",
        }
        for env_name, field_name in env_fields.items():
            value = os.getenv(env_name)
            if value:
                values[field_name] = value

        cookie_days = os.getenv("DINELPORTAL_COOKIE_DAYS")
        if cookie_days:
            try:
                values["cookie_days"] = int(cookie_days)
            except ValueError as e:
                raise ValueError(f"Invalid DINELPORTAL_COOKIE_DAYS: {cookie_days}") from e

        patterns = _env_list("DINELPORTAL_CONVERSION_PATTERNS")
        if patterns is not None:
            values["conversion_patterns"] = patterns

        title_patterns = _env_list("DINELPORTAL_TITLE_PATTERNS")
        if title_patterns is not None:
            values["title_patterns"] = title_patterns

        values["debug"] = _env_bool("DINELPORTAL_DEBUG", False)
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_script_src(cls, src: str, **overrides: Any) -> TrackingConfig:
        """Create configuration from the embed tag's script URL.

        The embed contract is a single script tag whose URL identifies the
        partner, e.g. ``.../universal.js?partner_id=acme``.

        Args:
            src: The script tag's src attribute.
            **overrides: Extra configuration fields.

        Returns:
            TrackingConfig with partner_id taken from the URL when present.
        """
        params = parse_qs(urlparse(src).query)
        partner_id = None
        for name in PARTNER_SCRIPT_PARAMS:
            if params.get(name):
                partner_id = params[name][0]
                break

        if partner_id is None:
            logger.warning(f"Tracking script loaded without a partner id: {src}")

        values: dict[str, Any] = {"partner_id": partner_id}
        if params.get("debug"):
            values["debug"] = params["debug"][0] in {"1", "true"}
        values.update(overrides)
        return cls(**values)
