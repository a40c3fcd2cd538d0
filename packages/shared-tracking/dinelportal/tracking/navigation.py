"""Navigation watchers.

A NavigationWatcher reports URL changes of the host page to a single
callback. Two implementations are provided:

- PollingNavigationWatcher reads a URL source on an interval thread, for
  hosts that cannot hook their router.
- HistoryNavigationWatcher is driven by the host, which calls notify()
  from its pushState/popstate hooks.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable

logger = logging.getLogger(__name__)

NavigationCallback = Callable[[str], None]


class NavigationWatcher(ABC):
    """Abstract base class for navigation watchers."""

    def __init__(self) -> None:
        self._callback: NavigationCallback | None = None
        self._last_url: str | None = None

    def subscribe(self, callback: NavigationCallback) -> None:
        """Register the callback receiving each new URL.

        A watcher has one subscriber; subscribing again replaces it.
        """
        self._callback = callback

    @property
    def last_url(self) -> str | None:
        """The most recently reported URL."""
        return self._last_url

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Return True while the watcher reports navigations."""
        pass

    @abstractmethod
    def start(self, initial_url: str | None = None) -> None:
        """Start watching.

        Args:
            initial_url: URL the page is on now. It is remembered but not
                reported, so only later changes reach the callback.
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop watching. Safe to call more than once."""
        pass

    def _emit_if_changed(self, url: str) -> bool:
        if not url or url == self._last_url:
            return False
        self._last_url = url
        if self._callback is None:
            return False
        try:
            self._callback(url)
        except Exception:
            logger.exception(f"Navigation callback failed for {url}")
        return True


class PollingNavigationWatcher(NavigationWatcher):
    """Watch a URL source by polling it on a daemon thread.

    Example:
        >>> watcher = PollingNavigationWatcher(lambda: page.url, interval=0.5)
        >>> watcher.subscribe(print)
        >>> watcher.start(page.url)
    """

    def __init__(self, url_source: Callable[[], str], interval: float = 0.5):
        super().__init__()
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.url_source = url_source
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, initial_url: str | None = None) -> None:
        if self.is_running:
            return
        self._last_url = initial_url if initial_url is not None else self.url_source()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="dinelportal-navigation",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Polling navigation every {self.interval}s")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval * 2)
        self._thread = None

    def poll_once(self) -> bool:
        """Read the URL source once and report it if it changed.

        Returns:
            True if a navigation was reported.
        """
        try:
            url = self.url_source()
        except Exception:
            logger.exception("Reading the current URL failed")
            return False
        return self._emit_if_changed(url)

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.poll_once()


class HistoryNavigationWatcher(NavigationWatcher):
    """Watcher fed by the host's history hooks."""

    def __init__(self) -> None:
        super().__init__()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, initial_url: str | None = None) -> None:
        self._running = True
        if initial_url is not None:
            self._last_url = initial_url

    def stop(self) -> None:
        self._running = False

    def notify(self, url: str) -> bool:
        """Report a navigation from pushState, replaceState or popstate.

        Returns:
            True if the URL was new and reached the callback.
        """
        if not self._running:
            return False
        return self._emit_if_changed(url)
