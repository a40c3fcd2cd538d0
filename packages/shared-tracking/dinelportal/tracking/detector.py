"""Conversion detection state machine.

    idle --start()--> watching --rule match--> matched --on_match--> dispatched
                         ^                                                |
                         +------------------ next navigation -------------+

stop() returns the detector to idle from any state.

Each navigation is checked against the URL path patterns first, then the
page title patterns, then any custom detectors. The first rule that
matches decides the trigger.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from enum import Enum
from urllib.parse import urlparse

from dinelportal.tracking.config import detector_name
from dinelportal.tracking.navigation import NavigationWatcher
from dinelportal.tracking.patterns import PatternSet, TitlePattern
from dinelportal.tracking.schema import ConversionTrigger

logger = logging.getLogger(__name__)

# Called with (url, trigger, matched rule) once per conversion navigation
MatchCallback = Callable[[str, ConversionTrigger, str], None]

# Host-supplied check: receives the page URL, returns True on a conversion page
CustomDetector = Callable[[str], bool]


class DetectorState(str, Enum):
    """States of the conversion detector."""

    IDLE = "idle"
    WATCHING = "watching"
    MATCHED = "matched"
    DISPATCHED = "dispatched"


class ConversionDetector:
    """Detect navigations onto conversion pages.

    Each navigation is matched once; the first matching rule wins and
    triggers a single on_match call. A repeated notification for the URL
    last handled is ignored.

    Example:
        >>> detector = ConversionDetector(["/thank-you", "/confirmation/*"], on_match)
        >>> detector.start(watcher, initial_url=page.url)
        >>> detector.handle_navigation("https://shop.dk/confirmation/123")
        '/confirmation/*'
    """

    def __init__(
        self,
        patterns: Iterable[str],
        on_match: MatchCallback,
        title_patterns: Iterable[str] = (),
        custom_detectors: Iterable[CustomDetector] = (),
        title_source: Callable[[], str] | None = None,
    ):
        """Initialize the detector.

        Args:
            patterns: URL path patterns.
            on_match: Called for every detected conversion.
            title_patterns: Page title patterns, checked when no path matches.
            custom_detectors: Host checks, run last and in order.
            title_source: Returns the current page title. Title patterns are
                skipped without one.
        """
        self.title_source = title_source
        self.on_match = on_match
        self.state = DetectorState.IDLE
        self.dispatch_count = 0
        self._watcher: NavigationWatcher | None = None
        self._last_url: str | None = None
        self._lock = threading.Lock()
        self.configure(patterns, title_patterns, custom_detectors)

    def configure(
        self,
        patterns: Iterable[str],
        title_patterns: Iterable[str] = (),
        custom_detectors: Iterable[CustomDetector] = (),
    ) -> None:
        """Replace the detection rules; applies from the next navigation."""
        path_set = PatternSet(patterns)
        title_set = PatternSet(title_patterns, TitlePattern)
        with self._lock:
            self.patterns = path_set
            self.title_patterns = title_set
            self.custom_detectors = list(custom_detectors)

    @property
    def is_active(self) -> bool:
        """Return True unless the detector is idle."""
        return self.state != DetectorState.IDLE

    def start(
        self,
        watcher: NavigationWatcher | None = None,
        initial_url: str | None = None,
    ) -> None:
        """Start watching for conversions.

        The initial URL is checked immediately, so landing directly on a
        conversion page counts.

        Args:
            watcher: Source of later navigations. Without one, the host
                drives the detector through handle_navigation().
            initial_url: URL the page is on now.
        """
        if self.is_active:
            logger.debug("Conversion detector already started")
            return

        self.state = DetectorState.WATCHING
        logger.debug(
            f"Watching for {len(self.patterns)} path patterns, "
            f"{len(self.title_patterns)} title patterns and "
            f"{len(self.custom_detectors)} custom detectors"
        )

        if watcher is not None:
            self._watcher = watcher
            watcher.subscribe(self.handle_navigation)
            watcher.start(initial_url)

        if initial_url:
            self.handle_navigation(initial_url)

    def stop(self) -> None:
        """Stop watching and return to idle."""
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        with self._lock:
            self.state = DetectorState.IDLE
            self._last_url = None

    def handle_navigation(self, url: str) -> str | None:
        """Process one navigation.

        Args:
            url: The new page URL.

        Returns:
            The matched rule (path pattern, title pattern or custom detector
            name) if a conversion was dispatched, else None.
        """
        with self._lock:
            if self.state == DetectorState.IDLE:
                return None
            if url == self._last_url:
                return None
            self._last_url = url
            self.state = DetectorState.WATCHING

        detected = self.detect(url)
        if detected is None:
            return None
        trigger, rule = detected

        with self._lock:
            # Stopped, or superseded by a later navigation, while detecting
            if self.state == DetectorState.IDLE or self._last_url != url:
                return None
            self.state = DetectorState.MATCHED
        logger.info(f"Conversion page detected on {url}: {trigger.value} {rule}")

        try:
            self.on_match(url, trigger, rule)
        except Exception:
            logger.exception(f"Conversion dispatch failed for {url}")
            with self._lock:
                if self.state == DetectorState.MATCHED:
                    self.state = DetectorState.WATCHING
            return None

        with self._lock:
            if self.state == DetectorState.MATCHED:
                self.state = DetectorState.DISPATCHED
            self.dispatch_count += 1
        return rule

    def detect(self, url: str) -> tuple[ConversionTrigger, str] | None:
        """Check a URL against every rule without changing state.

        Returns:
            (trigger, matched rule) for the first matching rule, or None.
        """
        path = urlparse(url).path or "/"
        pattern = self.patterns.match(path)
        if pattern is not None:
            return ConversionTrigger.URL_PATTERN, pattern.raw

        if self.title_source is not None and len(self.title_patterns):
            title = self.title_source() or ""
            title_pattern = self.title_patterns.match(title)
            if title_pattern is not None:
                return ConversionTrigger.TITLE_PATTERN, title_pattern.raw

        for detector in self.custom_detectors:
            name = detector_name(detector)
            try:
                if detector(url):
                    return ConversionTrigger.CUSTOM_DETECTOR, name
            except Exception:
                logger.exception(f"Custom conversion detector {name} failed")
        return None
