"""
DinElportal Tracking - Cross-site attribution for partner sites.

Provides:
- Click identifier capture from landing URLs
- Persistence mirrored across cookie, localStorage and sessionStorage
- Device fingerprint fallback when storage is unavailable
- Conversion detection on navigation, plus explicit conversions
- Beacon delivery to the collection endpoint

A visitor clicks a partner link on the marketplace, lands on the partner
site with ``?click_id=...``, and converts some pages later. The tracker
keeps the click id alive across that journey and reports the conversion.

Usage:
    from dinelportal.tracking import PageContext, TrackingConfig, init

    page = PageContext(url="https://shop.dk/?click_id=dep_123")
    tracker = init(TrackingConfig(partner_id="acme"), page)

    # On checkout
    tracker.track_conversion({"orderId": "abc"})
"""

from dinelportal.tracking.capture import ClickCapture, extract_click_id, extract_partner_id
from dinelportal.tracking.config import (
    DEFAULT_CONVERSION_PATTERNS,
    DEFAULT_ENDPOINT,
    DEFAULT_TITLE_PATTERNS,
    TrackingConfig,
    is_valid_partner_id,
)
from dinelportal.tracking.detector import ConversionDetector, DetectorState
from dinelportal.tracking.dispatch import BeaconDispatcher, DeliveryResult
from dinelportal.tracking.exceptions import (
    BeaconDeliveryError,
    ConfigurationError,
    MalformedRecordError,
    StorageQuotaExceededError,
    StorageUnavailableError,
    TrackingError,
)
from dinelportal.tracking.fingerprint import compute_fingerprint
from dinelportal.tracking.navigation import (
    HistoryNavigationWatcher,
    NavigationWatcher,
    PollingNavigationWatcher,
)
from dinelportal.tracking.page import DeviceSignals, PageContext, registrable_domain
from dinelportal.tracking.patterns import ConversionPattern, PatternSet, TitlePattern, match_first
from dinelportal.tracking.persistence import PersistenceManager
from dinelportal.tracking.schema import (
    AttributionConfidence,
    ConversionEvent,
    ConversionTrigger,
    DeviceFingerprint,
    PayloadType,
    StorageRecord,
    TrackingPayload,
)
from dinelportal.tracking.tracker import (
    VERSION,
    DinElportalApi,
    UniversalTracker,
    get_tracker,
    init,
    reset,
)

__version__ = VERSION

__all__ = [
    # Tracker
    "UniversalTracker",
    "DinElportalApi",
    "init",
    "get_tracker",
    "reset",
    # Config
    "TrackingConfig",
    "DEFAULT_ENDPOINT",
    "DEFAULT_CONVERSION_PATTERNS",
    "DEFAULT_TITLE_PATTERNS",
    "is_valid_partner_id",
    # Page
    "PageContext",
    "DeviceSignals",
    "registrable_domain",
    # Schema
    "StorageRecord",
    "DeviceFingerprint",
    "ConversionEvent",
    "TrackingPayload",
    "AttributionConfidence",
    "ConversionTrigger",
    "PayloadType",
    # Capture & persistence
    "ClickCapture",
    "extract_click_id",
    "extract_partner_id",
    "PersistenceManager",
    "compute_fingerprint",
    # Detection
    "ConversionPattern",
    "TitlePattern",
    "PatternSet",
    "match_first",
    "ConversionDetector",
    "DetectorState",
    "NavigationWatcher",
    "PollingNavigationWatcher",
    "HistoryNavigationWatcher",
    # Dispatch
    "BeaconDispatcher",
    "DeliveryResult",
    # Exceptions
    "TrackingError",
    "StorageUnavailableError",
    "StorageQuotaExceededError",
    "MalformedRecordError",
    "BeaconDeliveryError",
    "ConfigurationError",
]
