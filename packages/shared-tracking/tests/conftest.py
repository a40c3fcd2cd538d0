"""Shared fixtures for tracking tests."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from dinelportal.tracking import tracker as tracker_module
from dinelportal.tracking.config import TrackingConfig
from dinelportal.tracking.dispatch import BeaconDispatcher, DeliveryResult
from dinelportal.tracking.page import DeviceSignals, PageContext
from dinelportal.tracking.persistence import PersistenceManager

FIXED_NOW = datetime(2025, 1, 15, 10, 30, tzinfo=UTC)

LANDING_URL = "https://shop.partner.dk/?click_id=dep_abc123&partner_id=acme"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Fixed clock shared by the page's cookie jar and the tracker."""
    return FakeClock()


@pytest.fixture
def sample_signals():
    """Device signals of a typical Danish desktop browser."""
    return DeviceSignals(
        screen_width=1920,
        screen_height=1080,
        color_depth=24,
        viewport_width=1440,
        viewport_height=900,
        timezone_offset=-60,
        language="da-DK",
        platform="MacIntel",
        cookies_enabled=True,
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Safari/605.1.15",
    )


@pytest.fixture
def page(clock, sample_signals):
    """A partner page without a click id."""
    return PageContext.blank(
        "https://shop.partner.dk/products",
        clock=clock,
        signals=sample_signals,
    )


@pytest.fixture
def landing_page(clock, sample_signals):
    """A partner page reached through a marketplace click."""
    return PageContext.blank(
        LANDING_URL,
        clock=clock,
        signals=sample_signals,
        referrer="https://dinelportal.dk/partners/acme",
    )


@pytest.fixture
def config():
    """Config for partner "acme"."""
    return TrackingConfig(partner_id="acme")


@pytest.fixture
def persistence(page, config, clock):
    """Persistence over the page's three storage areas."""
    return PersistenceManager.for_page(page, config, clock=clock)


def completed_future(result: DeliveryResult) -> Future:
    future: Future = Future()
    future.set_result(result)
    return future


@pytest.fixture
def mock_dispatcher():
    """Dispatcher whose beacons are delivered instantly."""
    dispatcher = MagicMock(spec=BeaconDispatcher)
    dispatcher.dispatch.side_effect = lambda payload: completed_future(
        DeliveryResult(delivered=True, attempts=1, status_code=200)
    )
    return dispatcher


@pytest.fixture(autouse=True)
def reset_tracking_state():
    """Tear down the process-wide tracker and logger level after each test."""
    yield
    tracker_module.reset()
    logging.getLogger(tracker_module.PACKAGE_LOGGER).setLevel(logging.NOTSET)
