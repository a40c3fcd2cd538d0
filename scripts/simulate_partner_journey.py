#!/usr/bin/env python3
"""Simulate a partner visitor journey against a collection endpoint.

This script:
1. Lands on a partner page with a marketplace click id
2. Browses to a conversion page and lets the detector fire
3. Repeats the journey with blocked storage to show the fingerprint fallback

Set DINELPORTAL_ENDPOINT to a staging endpoint before running it; the
production endpoint records real conversions.
"""

import logging
import os

from dinelportal.tracking import (
    DeviceSignals,
    HistoryNavigationWatcher,
    PageContext,
    TrackingConfig,
    UniversalTracker,
)

SIGNALS = DeviceSignals(
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


def run_journey(config: TrackingConfig, page: PageContext, steps: list[str]) -> None:
    """Initialize a tracker on a page and walk it through some URLs."""
    watcher = HistoryNavigationWatcher()
    tracker = UniversalTracker(config, page, watcher=watcher)

    try:
        tracker.initialize()
        print(f"  Identity on landing: {tracker.get_tracking_data()}")

        for url in steps:
            page.navigate(url)
            watcher.notify(url)
            print(f"  Navigated to {url}")

        if not tracker.flush(timeout=10):
            print("  Some beacons were still in flight after 10s")
    finally:
        tracker.cleanup()


def stored_click_journey(config: TrackingConfig) -> None:
    """Landing with a click id, then a conversion page."""
    print("\n" + "=" * 60)
    print("Journey with stored click id")
    print("=" * 60)

    page = PageContext.blank(
        "https://shop.partner.dk/?click_id=dep_simulated_001",
        signals=SIGNALS,
        referrer="https://dinelportal.dk/partners",
    )
    run_journey(
        config,
        page,
        ["https://shop.partner.dk/products/42", "https://shop.partner.dk/thank-you"],
    )


def blocked_storage_journey(config: TrackingConfig) -> None:
    """Same journey with every storage area unavailable."""
    print("\n" + "=" * 60)
    print("Journey with blocked storage (fingerprint fallback)")
    print("=" * 60)

    page = PageContext.blank("https://shop.partner.dk/?click_id=dep_simulated_002", signals=SIGNALS)
    page.cookies.enabled = False
    page.local_storage.available = False
    page.session_storage.available = False

    run_journey(config, page, ["https://shop.partner.dk/confirmation"])


if __name__ == "__main__":
    print("DinElportal - Partner Journey Simulation")
    print("=" * 60)

    config = TrackingConfig.from_env(
        partner_id=os.getenv("DINELPORTAL_PARTNER_ID", "simulation"),
        debug=True,
    )
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    print(f"Endpoint: {config.endpoint}")

    # Step 1: Normal attribution
    stored_click_journey(config)

    # Step 2: Fingerprint fallback
    blocked_storage_journey(config)
