"""Tests for UniversalTracker and the process-wide init()."""

import json
import logging
from concurrent.futures import Future
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from dinelportal.tracking import tracker as tracker_module
from dinelportal.tracking.backends import StorageArea
from dinelportal.tracking.config import TrackingConfig
from dinelportal.tracking.detector import DetectorState
from dinelportal.tracking.dispatch import BeaconDispatcher, DeliveryResult
from dinelportal.tracking.fingerprint import compute_fingerprint
from dinelportal.tracking.navigation import HistoryNavigationWatcher
from dinelportal.tracking.page import PageContext
from dinelportal.tracking.schema import AttributionConfidence, ConversionTrigger, PayloadType
from dinelportal.tracking.tracker import (
    GLOBAL_API_NAME,
    LOADED_FLAG,
    DinElportalApi,
    UniversalTracker,
    get_tracker,
    init,
    reset,
)


def sent_payloads(dispatcher, payload_type=None):
    payloads = [c.args[0] for c in dispatcher.dispatch.call_args_list]
    if payload_type is None:
        return payloads
    return [p for p in payloads if p.type == payload_type]


@pytest.fixture
def watcher():
    return HistoryNavigationWatcher()


@pytest.fixture
def make_tracker(config, mock_dispatcher, watcher, clock):
    def _make(page, **overrides):
        return UniversalTracker(
            config.merged(**overrides) if overrides else config,
            page,
            dispatcher=mock_dispatcher,
            watcher=watcher,
            clock=clock,
        )

    return _make


class TestInitialize:
    """Test initialize()."""

    def test_captures_click_id_and_sends_landing(self, make_tracker, landing_page, mock_dispatcher):
        """A landing with a click id is stored and announced once."""
        tracker = make_tracker(landing_page)

        assert tracker.initialize() is True

        assert tracker.persistence.read().identifier == "dep_abc123"
        landing = sent_payloads(mock_dispatcher, PayloadType.TRACK)
        assert len(landing) == 1
        assert landing[0].identifier == "dep_abc123"
        assert landing[0].partner_id == "acme"
        assert landing[0].partner_domain == "shop.partner.dk"
        assert landing[0].referrer == "https://dinelportal.dk/partners/acme"

    def test_no_landing_event_without_click_id(self, make_tracker, page, mock_dispatcher):
        """Pages without a click id send nothing on load."""
        tracker = make_tracker(page)

        tracker.initialize()

        mock_dispatcher.dispatch.assert_not_called()

    def test_runs_once(self, make_tracker, landing_page, mock_dispatcher):
        """A second initialize() does nothing."""
        tracker = make_tracker(landing_page)

        tracker.initialize()
        tracker.initialize()

        assert mock_dispatcher.dispatch.call_count == 1

    def test_starts_detection(self, make_tracker, page, watcher):
        """Auto conversion starts the detector on the watcher."""
        tracker = make_tracker(page)

        tracker.initialize()

        assert tracker.detector.state == DetectorState.WATCHING
        assert watcher.is_running

    def test_auto_conversion_disabled(self, make_tracker, page, watcher):
        """Without auto conversion the detector stays idle."""
        tracker = make_tracker(page, enable_auto_conversion=False)

        tracker.initialize()

        assert tracker.detector.state == DetectorState.IDLE
        assert not watcher.is_running

    def test_do_not_track(self, make_tracker, clock, mock_dispatcher):
        """Do-Not-Track stops capture entirely."""
        page = PageContext.blank(
            "https://shop.partner.dk/?click_id=dep_abc123", clock=clock, do_not_track=True
        )
        tracker = make_tracker(page)

        assert tracker.initialize() is False

        assert tracker.persistence.read() is None
        assert tracker.get_tracking_data() is None
        mock_dispatcher.dispatch.assert_not_called()

    def test_do_not_track_ignored_when_configured(self, make_tracker, clock):
        """respect_do_not_track=False tracks anyway."""
        page = PageContext.blank(
            "https://shop.partner.dk/?click_id=dep_abc123", clock=clock, do_not_track=True
        )
        tracker = make_tracker(page, respect_do_not_track=False)

        assert tracker.initialize() is True

    def test_consent_required(self, make_tracker, landing_page):
        """With require_consent, tracking waits for a consent flag."""
        tracker = make_tracker(landing_page, require_consent=True)

        assert tracker.initialize() is False

    def test_consent_given(self, make_tracker, landing_page):
        """A consent flag in the page globals allows tracking."""
        landing_page.globals["dinelportal_consent"] = True
        tracker = make_tracker(landing_page, require_consent=True)

        assert tracker.initialize() is True

    def test_missing_partner_still_captures(self, landing_page, mock_dispatcher, watcher, clock, caplog):
        """Without partner id the click is captured but nothing is sent."""
        tracker = UniversalTracker(
            TrackingConfig(),
            landing_page,
            dispatcher=mock_dispatcher,
            watcher=watcher,
            clock=clock,
        )

        assert tracker.initialize() is True

        assert tracker.persistence.read().identifier == "dep_abc123"
        mock_dispatcher.dispatch.assert_not_called()
        assert "Landing event not sent" in caplog.text

    def test_initialize_never_raises(self, make_tracker, page, caplog):
        """Unexpected errors are logged."""
        tracker = make_tracker(page)
        tracker.capture = MagicMock()
        tracker.capture.capture.side_effect = RuntimeError("broken")

        assert tracker.initialize() is False
        assert "Tracker initialization failed" in caplog.text

    def test_failing_host_storage_does_not_stop_tracking(self, make_tracker, clock, mock_dispatcher, watcher):
        """A localStorage raising OSError leaves the other mirrors and detection running."""
        local_storage = MagicMock(spec=StorageArea)
        local_storage.get_item.side_effect = OSError("disk unavailable")
        local_storage.set_item.side_effect = OSError("disk unavailable")
        local_storage.remove_item.side_effect = OSError("disk unavailable")
        page = PageContext.blank(
            "https://shop.partner.dk/?click_id=dep_abc123", clock=clock, local_storage=local_storage
        )
        tracker = make_tracker(page)

        assert tracker.initialize() is True

        assert tracker.detector.is_active
        assert page.session_storage.get_item("dinelportal_data") is not None
        assert tracker.persistence.read().identifier == "dep_abc123"
        assert len(sent_payloads(mock_dispatcher, PayloadType.TRACK)) == 1

        watcher.notify("https://shop.partner.dk/thank-you")
        assert len(sent_payloads(mock_dispatcher, PayloadType.CONVERSION)) == 1


class TestAutoConversion:
    """Test conversions detected from navigation."""

    def test_navigation_to_conversion_page(self, make_tracker, landing_page, watcher, mock_dispatcher):
        """Navigating onto a conversion page sends one conversion."""
        tracker = make_tracker(landing_page, conversion_patterns=["/thank-you", "/confirmation/*"])
        tracker.initialize()

        landing_page.navigate("https://shop.partner.dk/confirmation/123")
        watcher.notify(landing_page.url)

        conversions = sent_payloads(mock_dispatcher, PayloadType.CONVERSION)
        assert len(conversions) == 1
        assert conversions[0].matched_pattern == "/confirmation/*"
        assert conversions[0].identifier == "dep_abc123"
        assert conversions[0].confidence == AttributionConfidence.CONFIDENT
        assert conversions[0].metadata["trigger"] == "url_pattern"

    def test_repeated_notification_sends_once(self, make_tracker, landing_page, watcher, mock_dispatcher):
        """The same conversion URL reported twice sends once."""
        tracker = make_tracker(landing_page)
        tracker.initialize()

        watcher.notify("https://shop.partner.dk/thank-you")
        watcher.notify("https://shop.partner.dk/thank-you")

        assert len(sent_payloads(mock_dispatcher, PayloadType.CONVERSION)) == 1

    def test_landing_on_conversion_page(self, make_tracker, clock, mock_dispatcher):
        """A click landing directly on a conversion page converts."""
        page = PageContext.blank("https://shop.partner.dk/thank-you?click_id=dep_1", clock=clock)
        tracker = make_tracker(page)

        tracker.initialize()

        assert len(sent_payloads(mock_dispatcher, PayloadType.TRACK)) == 1
        assert len(sent_payloads(mock_dispatcher, PayloadType.CONVERSION)) == 1

    def test_fingerprint_fallback(self, make_tracker, page, watcher, mock_dispatcher, sample_signals):
        """Without a stored id the conversion carries a provisional fingerprint."""
        tracker = make_tracker(page)
        tracker.initialize()

        watcher.notify("https://shop.partner.dk/thank-you")

        conversion = sent_payloads(mock_dispatcher, PayloadType.CONVERSION)[0]
        assert conversion.identifier is None
        assert conversion.fingerprint == compute_fingerprint(sample_signals).value
        assert conversion.confidence == AttributionConfidence.PROVISIONAL

    def test_fingerprint_never_persisted(self, make_tracker, page, watcher):
        """The fingerprint is not written back as a click id."""
        tracker = make_tracker(page)
        tracker.initialize()

        watcher.notify("https://shop.partner.dk/thank-you")

        assert tracker.persistence.read() is None

    def test_no_identity_sends_nothing(self, make_tracker, page, watcher, mock_dispatcher, caplog):
        """Without stored id and with fingerprinting off nothing is sent."""
        tracker = make_tracker(page, enable_fingerprinting=False)
        tracker.initialize()

        watcher.notify("https://shop.partner.dk/thank-you")

        mock_dispatcher.dispatch.assert_not_called()
        assert "conversion not sent" in caplog.text


class TestTrackConversion:
    """Test track_conversion()."""

    def test_sends_metadata_regardless_of_path(self, make_tracker, landing_page, mock_dispatcher):
        """An explicit conversion sends one beacon with caller metadata."""
        tracker = make_tracker(landing_page)
        tracker.initialize()
        landing_page.navigate("https://shop.partner.dk/products/42")

        future = tracker.track_conversion({"orderId": "abc"})

        assert future.result().delivered is True
        conversions = sent_payloads(mock_dispatcher, PayloadType.CONVERSION)
        assert len(conversions) == 1
        assert conversions[0].metadata["orderId"] == "abc"
        assert conversions[0].metadata["trigger"] == "manual"
        assert conversions[0].matched_pattern is None
        assert conversions[0].page_url == "https://shop.partner.dk/products/42"
        assert conversions[0].session_id == tracker.persistence.session_id()

    def test_before_initialize(self, make_tracker, page, mock_dispatcher):
        """Nothing is sent before the tracker is initialized."""
        tracker = make_tracker(page)

        assert tracker.track_conversion({"orderId": "abc"}) is None
        mock_dispatcher.dispatch.assert_not_called()

    def test_missing_partner(self, landing_page, mock_dispatcher, watcher, clock, caplog):
        """Without partner id the conversion is skipped with a warning."""
        tracker = UniversalTracker(
            TrackingConfig(), landing_page, dispatcher=mock_dispatcher, watcher=watcher, clock=clock
        )
        tracker.initialize()

        assert tracker.track_conversion({"orderId": "abc"}) is None
        assert "Conversion not sent: No partner_id configured" in caplog.text

    def test_never_raises(self, make_tracker, landing_page, mock_dispatcher, caplog):
        """Dispatcher failures are logged, not raised."""
        tracker = make_tracker(landing_page)
        tracker.initialize()
        mock_dispatcher.dispatch.side_effect = RuntimeError("executor gone")

        assert tracker.track_conversion() is None
        assert "track_conversion failed" in caplog.text

    def test_decimal_and_datetime_metadata_delivered(self, config, landing_page, watcher, clock):
        """Order amounts as Decimal and datetimes reach the endpoint as strings."""
        client = MagicMock(spec=httpx.Client)
        client.post.return_value.status_code = 200
        dispatcher = BeaconDispatcher(client=client, sleep=MagicMock())
        tracker = UniversalTracker(config, landing_page, dispatcher=dispatcher, watcher=watcher, clock=clock)
        tracker.initialize()

        future = tracker.track_conversion({"amount": Decimal("199.95"), "paid_at": clock()})

        try:
            assert future.result(timeout=5).delivered is True
        finally:
            dispatcher.close()
        body = json.loads(client.post.call_args.kwargs["content"])
        assert body["type"] == "conversion"
        assert body["metadata"]["amount"] == "199.95"
        assert body["metadata"]["paid_at"] == "2025-01-15 10:30:00+00:00"

    def test_failed_beacon_logged(self, make_tracker, landing_page, mock_dispatcher, caplog):
        """A beacon whose future fails is logged and forgotten."""
        tracker = make_tracker(landing_page)
        tracker.initialize()
        failed: Future = Future()
        failed.set_exception(RuntimeError("worker died"))
        mock_dispatcher.dispatch.side_effect = lambda payload: failed

        tracker.track_conversion({"orderId": "abc"})

        assert tracker.pending == 0
        assert "failed: RuntimeError('worker died')" in caplog.text


class TestTrackingData:
    """Test get_tracking_data() and clear_data()."""

    def test_snapshot_with_click_id(self, make_tracker, landing_page):
        """The snapshot reports the stored identifier."""
        tracker = make_tracker(landing_page)
        tracker.initialize()

        data = tracker.get_tracking_data()

        assert data["identifier"] == "dep_abc123"
        assert data["confidence"] == "confident"
        assert data["partner_id"] == "acme"
        assert data["session_id"].startswith("sess_")

    def test_snapshot_with_fingerprint(self, make_tracker, page):
        """Without a click id the snapshot reports the fingerprint."""
        tracker = make_tracker(page)
        tracker.initialize()

        data = tracker.get_tracking_data()

        assert data["identifier"] is None
        assert data["fingerprint"].startswith("fp_")
        assert data["confidence"] == "provisional"

    def test_snapshot_without_identity(self, make_tracker, page):
        """With fingerprinting off and nothing stored the snapshot is None."""
        tracker = make_tracker(page, enable_fingerprinting=False)
        tracker.initialize()

        assert tracker.get_tracking_data() is None

    def test_clear_data(self, make_tracker, landing_page):
        """clear_data() forgets the click id."""
        tracker = make_tracker(landing_page)
        tracker.initialize()

        tracker.clear_data()

        assert tracker.persistence.read() is None
        assert tracker.get_tracking_data()["confidence"] == "provisional"

    def test_clear_data_forgets_detected_conversions(self, make_tracker, landing_page, watcher):
        """clear_data() also empties the detected conversion history."""
        tracker = make_tracker(landing_page)
        tracker.initialize()
        watcher.notify("https://shop.partner.dk/thank-you")

        tracker.clear_data()

        assert tracker.get_detected_conversions() == []


class TestTitleAndCustomDetection:
    """Test conversions detected from the page title and host detectors."""

    def test_title_pattern_conversion(self, make_tracker, landing_page, watcher, mock_dispatcher):
        """A conversion title on an ordinary path sends a title_pattern conversion."""
        tracker = make_tracker(landing_page)
        tracker.initialize()

        landing_page.navigate("https://shop.partner.dk/checkout/step-4", title="Tak for din ordre")
        watcher.notify(landing_page.url)

        conversions = sent_payloads(mock_dispatcher, PayloadType.CONVERSION)
        assert len(conversions) == 1
        assert conversions[0].metadata["trigger"] == "title_pattern"
        assert conversions[0].matched_pattern == "tak*"

    def test_custom_detector_conversion(self, make_tracker, landing_page, watcher, mock_dispatcher):
        """A host detector returning True sends a custom_detector conversion."""

        def order_receipt(url):
            return "/orders/" in url and url.endswith("/receipt")

        tracker = make_tracker(landing_page, custom_detectors=[order_receipt])
        tracker.initialize()

        watcher.notify("https://shop.partner.dk/orders/991/receipt")

        conversion = sent_payloads(mock_dispatcher, PayloadType.CONVERSION)[0]
        assert conversion.metadata["trigger"] == "custom_detector"
        assert conversion.matched_pattern == "order_receipt"


class TestDetectedConversions:
    """Test get_detected_conversions() and clear_detected_conversions()."""

    def test_detected_conversions_recorded(self, make_tracker, landing_page, watcher):
        """Detected conversions are kept in order; manual ones are not."""
        tracker = make_tracker(landing_page)
        tracker.initialize()

        watcher.notify("https://shop.partner.dk/thank-you")
        watcher.notify("https://shop.partner.dk/")
        watcher.notify("https://shop.partner.dk/confirmation")
        tracker.track_conversion({"orderId": "abc"})

        detected = tracker.get_detected_conversions()
        assert [event.matched_pattern for event in detected] == ["/thank-you", "/confirmation"]
        assert detected[0].trigger == ConversionTrigger.URL_PATTERN
        assert detected[0].identifier == "dep_abc123"

    def test_returns_a_copy(self, make_tracker, landing_page, watcher):
        """Changing the returned list does not change the history."""
        tracker = make_tracker(landing_page)
        tracker.initialize()
        watcher.notify("https://shop.partner.dk/thank-you")

        tracker.get_detected_conversions().clear()

        assert len(tracker.get_detected_conversions()) == 1

    def test_clear_detected_conversions(self, make_tracker, landing_page, watcher):
        """clear_detected_conversions() empties the history only."""
        tracker = make_tracker(landing_page)
        tracker.initialize()
        watcher.notify("https://shop.partner.dk/thank-you")

        tracker.clear_detected_conversions()

        assert tracker.get_detected_conversions() == []
        assert tracker.persistence.read().identifier == "dep_abc123"


class TestSetConfig:
    """Test set_config() on a running tracker."""

    def test_new_patterns_used_by_detection(self, make_tracker, landing_page, watcher, mock_dispatcher):
        """Updated conversion patterns apply from the next navigation."""
        tracker = make_tracker(landing_page)
        tracker.initialize()

        assert tracker.set_config(conversion_patterns=["/kvittering"]) is True
        watcher.notify("https://shop.partner.dk/thank-you")
        watcher.notify("https://shop.partner.dk/kvittering")

        conversions = sent_payloads(mock_dispatcher, PayloadType.CONVERSION)
        assert [c.matched_pattern for c in conversions] == ["/kvittering"]
        assert tracker.get_config()["conversion_patterns"] == ["/kvittering"]

    def test_invalid_value_rejected(self, make_tracker, page, caplog):
        """An invalid value leaves the configuration unchanged."""
        tracker = make_tracker(page)

        assert tracker.set_config(cookie_days=0) is False
        assert tracker.config.cookie_days == 90
        assert "Configuration not updated" in caplog.text

    def test_unknown_field_rejected(self, make_tracker, page, caplog):
        """Unknown fields are logged and ignored."""
        tracker = make_tracker(page)

        assert tracker.set_config(colour="blue") is False
        assert "Unknown config fields: colour" in caplog.text

    def test_key_prefix_change_rebuilds_persistence(self, make_tracker, page):
        """Persistence follows a new key prefix."""
        tracker = make_tracker(page)

        tracker.set_config(key_prefix="dep_")

        assert tracker.persistence.data_key == "dep_data"

    def test_debug_override_sets_logging(self, make_tracker, page):
        """debug=True through set_config() turns on debug logging."""
        tracker = make_tracker(page)

        tracker.set_config(debug=True)

        assert logging.getLogger("dinelportal.tracking").level == logging.DEBUG

    def test_owned_dispatcher_follows_endpoint(self, config, page, watcher, clock):
        """A dispatcher created by the tracker picks up delivery settings."""
        tracker = UniversalTracker(config, page, watcher=watcher, clock=clock)

        tracker.set_config(endpoint="https://collect.example.dk/b", beacon_method="GET", max_retries=3)

        assert tracker.dispatcher.endpoint == "https://collect.example.dk/b"
        assert tracker.dispatcher.method == "GET"
        assert tracker.dispatcher.max_retries == 3
        tracker.cleanup()


class TestDebugConfigAndFlush:
    """Test set_debug(), get_config(), flush() and cleanup()."""

    def test_set_debug(self, make_tracker, page):
        """set_debug() toggles the package logger level."""
        tracker = make_tracker(page)
        package_logger = logging.getLogger("dinelportal.tracking")

        tracker.set_debug(True)
        assert package_logger.level == logging.DEBUG
        assert tracker.get_config()["debug"] is True

        tracker.set_debug(False)
        assert package_logger.level == logging.WARNING

    def test_debug_config_enables_logging(self, make_tracker, page):
        """config.debug turns debug logging on at construction."""
        make_tracker(page, debug=True)

        assert logging.getLogger("dinelportal.tracking").level == logging.DEBUG

    def test_get_config(self, make_tracker, page):
        """get_config() returns the configuration as a dict."""
        assert make_tracker(page).get_config()["partner_id"] == "acme"

    def test_flush_waits_for_in_flight(self, make_tracker, landing_page, mock_dispatcher):
        """flush() waits until pending beacons finish."""
        pending: Future = Future()
        mock_dispatcher.dispatch.side_effect = lambda payload: pending
        tracker = make_tracker(landing_page)
        tracker.initialize()

        assert tracker.pending == 1
        assert tracker.flush(timeout=0.01) is False

        pending.set_result(DeliveryResult(delivered=True, attempts=1, status_code=200))

        assert tracker.flush(timeout=1) is True
        assert tracker.pending == 0

    def test_flush_with_nothing_pending(self, make_tracker, page):
        """flush() with no beacons returns immediately."""
        assert make_tracker(page).flush() is True

    def test_cleanup_stops_detection(self, make_tracker, page, watcher, mock_dispatcher):
        """cleanup() stops the detector; an injected dispatcher stays open."""
        tracker = make_tracker(page)
        tracker.initialize()

        tracker.cleanup()

        assert tracker.detector.state == DetectorState.IDLE
        assert not watcher.is_running
        mock_dispatcher.close.assert_not_called()


class TestSingleton:
    """Test init(), get_tracker() and reset()."""

    def test_init_installs_global_api(self, config, landing_page, mock_dispatcher, watcher, clock):
        """init() creates the tracker and exposes the DinElportal object."""
        tracker = init(config, landing_page, dispatcher=mock_dispatcher, watcher=watcher, clock=clock)

        assert get_tracker() is tracker
        assert tracker.initialized is True
        assert landing_page.globals[LOADED_FLAG] is True
        api = landing_page.globals[GLOBAL_API_NAME]
        assert isinstance(api, DinElportalApi)
        assert api.version == tracker_module.VERSION

    def test_repeated_init_returns_existing(self, config, landing_page, mock_dispatcher, watcher, clock, caplog):
        """A second init() returns the first tracker without re-initializing."""
        first = init(config, landing_page, dispatcher=mock_dispatcher, watcher=watcher, clock=clock)
        second = init(config, landing_page, dispatcher=mock_dispatcher, watcher=watcher, clock=clock)

        assert second is first
        assert mock_dispatcher.dispatch.call_count == 1
        assert "already initialized" in caplog.text

    def test_double_embed_guard(self, config, landing_page, mock_dispatcher, caplog):
        """A page already carrying the loaded flag gets no second tracker."""
        landing_page.globals[LOADED_FLAG] = True

        assert init(config, landing_page, dispatcher=mock_dispatcher) is None
        assert get_tracker() is None
        assert "embedded more than once" in caplog.text

    def test_global_api_track_conversion(self, config, landing_page, mock_dispatcher, watcher, clock):
        """The page API forwards to the tracker."""
        init(config, landing_page, dispatcher=mock_dispatcher, watcher=watcher, clock=clock)
        api = landing_page.globals[GLOBAL_API_NAME]

        api.track_conversion({"orderId": "abc"})
        api.debug(True)

        conversions = sent_payloads(mock_dispatcher, PayloadType.CONVERSION)
        assert len(conversions) == 1
        assert conversions[0].metadata["orderId"] == "abc"
        assert api.get_tracking_data()["identifier"] == "dep_abc123"

        api.clear_data()
        assert api.get_tracking_data()["identifier"] is None

    def test_global_api_config(self, config, landing_page, mock_dispatcher, watcher, clock):
        """The page API reads and updates the tracker configuration."""
        init(config, landing_page, dispatcher=mock_dispatcher, watcher=watcher, clock=clock)
        api = landing_page.globals[GLOBAL_API_NAME]

        assert api.set_config(conversion_patterns=["/kvittering"]) is True
        assert api.set_config(cookie_days=-1) is False

        assert api.get_config()["conversion_patterns"] == ["/kvittering"]
        assert api.get_config()["cookie_days"] == 90

    def test_reset(self, config, landing_page, mock_dispatcher, watcher, clock):
        """reset() removes the tracker and its page globals."""
        init(config, landing_page, dispatcher=mock_dispatcher, watcher=watcher, clock=clock)

        reset()

        assert get_tracker() is None
        assert LOADED_FLAG not in landing_page.globals
        assert GLOBAL_API_NAME not in landing_page.globals
        assert not watcher.is_running
