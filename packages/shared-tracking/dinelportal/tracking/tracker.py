"""
Universal tracker - wires capture, persistence, detection and dispatch.

One tracker runs per page. init() creates it once per process, installs
the ``DinElportal`` API object into the page's globals and guards against
the script being embedded twice.

Usage:
    from dinelportal.tracking import PageContext, TrackingConfig, init

    config = TrackingConfig.from_script_src(script_src)
    tracker = init(config, page)

    # Later, from the host page
    page.globals["DinElportal"].track_conversion({"orderId": "abc"})
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import Future, wait
from datetime import UTC, datetime, timedelta
from typing import Any

from dinelportal.tracking.capture import ClickCapture, extract_click_id
from dinelportal.tracking.config import TrackingConfig
from dinelportal.tracking.detector import ConversionDetector
from dinelportal.tracking.dispatch import BeaconDispatcher, DeliveryResult
from dinelportal.tracking.exceptions import ConfigurationError
from dinelportal.tracking.fingerprint import compute_fingerprint
from dinelportal.tracking.navigation import NavigationWatcher, PollingNavigationWatcher
from dinelportal.tracking.page import PageContext, is_tracking_allowed
from dinelportal.tracking.persistence import PersistenceManager
from dinelportal.tracking.schema import (
    AttributionConfidence,
    ConversionEvent,
    ConversionTrigger,
    PayloadType,
    StorageRecord,
    TrackingPayload,
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Name of the API object installed into the page globals
GLOBAL_API_NAME = "DinElportal"

# Set on the page once the tracker has loaded
LOADED_FLAG = "__dinelportal_loaded__"

PACKAGE_LOGGER = "dinelportal.tracking"


def set_debug_logging(enabled: bool) -> None:
    """Switch the tracking package's logger between DEBUG and WARNING."""
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG if enabled else logging.WARNING)


class UniversalTracker:
    """Attribution tracker for one host page.

    No public method raises into the host: failures are logged and the
    method returns None (or False).

    Example:
        >>> tracker = UniversalTracker(TrackingConfig(partner_id="acme"), page)
        >>> tracker.initialize()
        True
        >>> future = tracker.track_conversion({"orderId": "abc"})
    """

    def __init__(
        self,
        config: TrackingConfig,
        page: PageContext,
        dispatcher: BeaconDispatcher | None = None,
        watcher: NavigationWatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the tracker.

        Args:
            config: Tracker configuration.
            page: The host page.
            dispatcher: Beacon dispatcher. Built from the config when None.
            watcher: Navigation watcher for conversion detection. A polling
                watcher on page.url is used when None.
            clock: Source of the current time (UTC).
        """
        self.config = config
        self.page = page
        self._clock = clock or (lambda: datetime.now(UTC))

        self._build_capture()

        self._owns_dispatcher = dispatcher is None
        self.dispatcher = dispatcher or BeaconDispatcher(
            endpoint=config.endpoint,
            method=config.beacon_method,
            max_retries=config.max_retries,
            backoff_seconds=config.retry_backoff_seconds,
            timeout=config.request_timeout_seconds,
        )
        self.watcher = watcher
        self.detector = ConversionDetector(
            config.conversion_patterns,
            self._on_conversion_match,
            title_patterns=config.title_patterns,
            custom_detectors=config.custom_detectors,
            title_source=lambda: self.page.title,
        )

        self.initialized = False
        self.tracking_allowed = False
        self._in_flight: dict[str, Future[DeliveryResult]] = {}
        self._detected: list[ConversionEvent] = []
        self._lock = threading.Lock()

        if config.debug:
            set_debug_logging(True)

    @property
    def partner_domain(self) -> str:
        """Host name of the partner site the tracker runs on."""
        return self.page.hostname

    def initialize(self) -> bool:
        """Capture, announce the landing and start conversion detection.

        Runs once; later calls return the first result.

        Returns:
            True if tracking is active on this page.
        """
        if self.initialized:
            logger.debug("Tracker already initialized")
            return self.tracking_allowed
        self.initialized = True

        try:
            if not is_tracking_allowed(
                self.page,
                respect_do_not_track=self.config.respect_do_not_track,
                require_consent=self.config.require_consent,
            ):
                logger.info("Tracking disabled by Do-Not-Track or missing consent")
                return False
            self.tracking_allowed = True

            arrived_with_click = (
                extract_click_id(
                    self.page.url,
                    self.config.click_id_param,
                    self.config.click_id_prefix,
                )
                is not None
            )
            record = self.capture.capture(
                self.page.url,
                referrer=self.page.referrer,
                default_partner_id=self.config.partner_id,
            )

            if arrived_with_click and record is not None:
                try:
                    self._send_landing(record)
                except ConfigurationError as e:
                    logger.warning(f"Landing event not sent: {e}")

            if self.config.enable_auto_conversion:
                if self.watcher is None:
                    self.watcher = PollingNavigationWatcher(
                        lambda: self.page.url,
                        interval=self.config.poll_interval_seconds,
                    )
                self.detector.start(self.watcher, initial_url=self.page.url)

            logger.info(f"DinElportal tracking {VERSION} initialized on {self.partner_domain}")
            return True
        except Exception:
            logger.exception("Tracker initialization failed")
            return False

    def track_conversion(
        self, metadata: Mapping[str, Any] | None = None
    ) -> Future[DeliveryResult] | None:
        """Report a conversion explicitly, regardless of the current path.

        Args:
            metadata: Caller data sent with the event, e.g. an order id.

        Returns:
            Future of the delivery, or None if nothing was sent.
        """
        try:
            if not self.tracking_allowed:
                logger.warning("Tracking is not active; conversion ignored")
                return None
            return self._dispatch_conversion(
                ConversionTrigger.MANUAL,
                page_url=self.page.url,
                metadata=metadata,
            )
        except ConfigurationError as e:
            logger.warning(f"Conversion not sent: {e}")
            return None
        except Exception:
            logger.exception("track_conversion failed")
            return None

    def get_tracking_data(self) -> dict[str, Any] | None:
        """Return a snapshot of the visitor's current identity.

        Returns:
            Dictionary with the identifier or fingerprint, or None if the
            visitor cannot be identified.
        """
        try:
            if self.initialized and not self.tracking_allowed:
                return None

            record = self.persistence.read()
            if record is not None:
                return {
                    "identifier": record.identifier,
                    "fingerprint": None,
                    "confidence": AttributionConfidence.CONFIDENT.value,
                    "partner_id": record.partner_id or self.config.partner_id,
                    "captured_at": record.captured_at.isoformat(),
                    "expires_at": record.expires_at.isoformat(),
                    "session_id": self.persistence.session_id(),
                }

            if self.config.enable_fingerprinting:
                fingerprint = compute_fingerprint(
                    self.page.signals, self.config.fingerprint_signals
                )
                return {
                    "identifier": None,
                    "fingerprint": fingerprint.value,
                    "confidence": AttributionConfidence.PROVISIONAL.value,
                    "partner_id": self.config.partner_id,
                    "captured_at": None,
                    "expires_at": None,
                    "session_id": self.persistence.session_id(),
                }
            return None
        except Exception:
            logger.exception("get_tracking_data failed")
            return None

    def clear_data(self) -> None:
        """Remove the stored identifier and the detected conversions."""
        try:
            self.persistence.clear()
            self.clear_detected_conversions()
            logger.info("Tracking data cleared")
        except Exception:
            logger.exception("clear_data failed")

    def get_detected_conversions(self) -> list[ConversionEvent]:
        """Return the conversions detected on this page so far."""
        with self._lock:
            return list(self._detected)

    def clear_detected_conversions(self) -> None:
        """Forget the conversions detected so far."""
        with self._lock:
            self._detected.clear()

    def set_debug(self, enabled: bool = True) -> None:
        """Turn debug logging on or off."""
        self.config.debug = enabled
        set_debug_logging(enabled)
        logger.debug(f"Debug logging {'enabled' if enabled else 'disabled'}")

    def get_config(self) -> dict[str, Any]:
        """Return the active configuration as a dictionary."""
        return self.config.to_dict()

    def set_config(self, **overrides: Any) -> bool:
        """Update the configuration of a running tracker.

        Capture, persistence and detection rules use the new values at
        once, as do the delivery settings of a dispatcher the tracker
        created itself. Whether detection runs at all is decided by
        initialize().

        Args:
            **overrides: TrackingConfig fields to replace.

        Returns:
            True if applied. Unknown fields and invalid values are logged
            and leave the configuration unchanged.
        """
        try:
            config = self.config.merged(**overrides)
        except Exception as e:
            logger.warning(f"Configuration not updated: {e}")
            return False

        self.config = config
        self._build_capture()
        self.detector.configure(
            config.conversion_patterns,
            title_patterns=config.title_patterns,
            custom_detectors=config.custom_detectors,
        )
        if self._owns_dispatcher:
            self.dispatcher.endpoint = config.endpoint
            self.dispatcher.method = config.beacon_method
            self.dispatcher.max_retries = config.max_retries
            self.dispatcher.backoff_seconds = config.retry_backoff_seconds
        if "debug" in overrides:
            set_debug_logging(config.debug)

        logger.debug(f"Configuration updated: {', '.join(sorted(overrides))}")
        return True

    @property
    def pending(self) -> int:
        """Number of beacons not yet finished."""
        with self._lock:
            return len(self._in_flight)

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for in-flight beacons.

        Returns:
            True if every beacon finished within the timeout.
        """
        with self._lock:
            futures = list(self._in_flight.values())
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def cleanup(self) -> None:
        """Stop detection and release the dispatcher."""
        try:
            self.detector.stop()
            if self._owns_dispatcher:
                self.dispatcher.close()
        except Exception:
            logger.exception("Tracker cleanup failed")

    def _build_capture(self) -> None:
        self.persistence = PersistenceManager.for_page(self.page, self.config, clock=self._clock)
        self.capture = ClickCapture(
            self.persistence,
            click_id_param=self.config.click_id_param,
            partner_param=self.config.partner_param,
            lifetime=timedelta(days=self.config.cookie_days),
            required_prefix=self.config.click_id_prefix,
            clock=self._clock,
        )

    def _resolve_identity(self) -> tuple[str | None, str | None, AttributionConfidence] | None:
        record = self.persistence.read()
        if record is not None:
            return record.identifier, None, AttributionConfidence.CONFIDENT
        if self.config.enable_fingerprinting:
            fingerprint = compute_fingerprint(self.page.signals, self.config.fingerprint_signals)
            logger.debug(f"No stored click id; using fingerprint {fingerprint.value}")
            return None, fingerprint.value, AttributionConfidence.PROVISIONAL
        return None

    def _dispatch_conversion(
        self,
        trigger: ConversionTrigger,
        page_url: str,
        matched_pattern: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Future[DeliveryResult] | None:
        partner_id = self.config.require_partner()

        identity = self._resolve_identity()
        if identity is None:
            logger.warning("No click id or fingerprint available; conversion not sent")
            return None
        identifier, fingerprint, confidence = identity

        event = ConversionEvent(
            identifier=identifier,
            fingerprint=fingerprint,
            confidence=confidence,
            trigger=trigger,
            matched_pattern=matched_pattern,
            page_url=page_url,
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
        )
        if trigger != ConversionTrigger.MANUAL:
            with self._lock:
                self._detected.append(event)
        payload = TrackingPayload.for_conversion(
            event,
            partner_id=partner_id,
            partner_domain=self.partner_domain,
            session_id=self.persistence.session_id(),
        )
        logger.info(
            f"Sending {trigger.value} conversion for "
            f"{identifier or fingerprint} ({confidence.value})"
        )
        return self._send(payload, str(event.event_id))

    def _send_landing(self, record: StorageRecord) -> Future[DeliveryResult]:
        payload = TrackingPayload(
            type=PayloadType.TRACK,
            partner_id=self.config.require_partner(),
            partner_domain=self.partner_domain,
            identifier=record.identifier,
            fingerprint=None,
            confidence=AttributionConfidence.CONFIDENT,
            timestamp=self._clock(),
            session_id=self.persistence.session_id(),
            page_url=self.page.url,
            referrer=self.page.referrer or None,
        )
        return self._send(payload, f"track-{uuid.uuid4()}")

    def _send(self, payload: TrackingPayload, key: str) -> Future[DeliveryResult]:
        future = self.dispatcher.dispatch(payload)
        with self._lock:
            self._in_flight[key] = future
        future.add_done_callback(lambda done: self._forget(key, done))
        return future

    def _forget(self, key: str, future: Future[DeliveryResult]) -> None:
        with self._lock:
            self._in_flight.pop(key, None)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Beacon {key} failed: {future.exception()!r}")

    def _on_conversion_match(self, url: str, trigger: ConversionTrigger, rule: str) -> None:
        try:
            self._dispatch_conversion(trigger, page_url=url, matched_pattern=rule)
        except ConfigurationError as e:
            logger.warning(f"Conversion on {url} not sent: {e}")


class DinElportalApi:
    """The ``DinElportal`` object exposed to the host page."""

    version = VERSION

    def __init__(self, tracker: UniversalTracker):
        self.tracker = tracker

    def track_conversion(
        self, metadata: Mapping[str, Any] | None = None
    ) -> Future[DeliveryResult] | None:
        return self.tracker.track_conversion(metadata)

    def get_tracking_data(self) -> dict[str, Any] | None:
        return self.tracker.get_tracking_data()

    def clear_data(self) -> None:
        self.tracker.clear_data()

    def set_config(self, **overrides: Any) -> bool:
        return self.tracker.set_config(**overrides)

    def get_config(self) -> dict[str, Any]:
        return self.tracker.get_config()

    def debug(self, enabled: bool = True) -> None:
        self.tracker.set_debug(enabled)


_tracker: UniversalTracker | None = None
_tracker_lock = threading.Lock()


def init(config: TrackingConfig, page: PageContext, **kwargs: Any) -> UniversalTracker | None:
    """Create and initialize the process-wide tracker.

    Repeated calls return the existing tracker. If the page already carries
    the loaded flag from another instance, nothing new is created.

    Args:
        config: Tracker configuration.
        page: The host page.
        **kwargs: Passed to UniversalTracker (dispatcher, watcher, clock).

    Returns:
        The tracker, or None if another instance owns the page.
    """
    global _tracker

    with _tracker_lock:
        if _tracker is not None:
            logger.warning("DinElportal tracking already initialized; ignoring repeated init()")
            return _tracker

        if page.globals.get(LOADED_FLAG):
            logger.warning("DinElportal tracking script is embedded more than once")
            existing = page.globals.get(GLOBAL_API_NAME)
            return existing.tracker if isinstance(existing, DinElportalApi) else None

        page.globals[LOADED_FLAG] = True
        tracker = UniversalTracker(config, page, **kwargs)
        page.globals[GLOBAL_API_NAME] = DinElportalApi(tracker)
        _tracker = tracker

    tracker.initialize()
    return tracker


def get_tracker() -> UniversalTracker | None:
    """Return the process-wide tracker, if init() has run."""
    return _tracker


def reset() -> None:
    """Tear down the process-wide tracker and remove it from its page."""
    global _tracker

    with _tracker_lock:
        tracker, _tracker = _tracker, None

    if tracker is not None:
        tracker.cleanup()
        tracker.page.globals.pop(LOADED_FLAG, None)
        tracker.page.globals.pop(GLOBAL_API_NAME, None)
