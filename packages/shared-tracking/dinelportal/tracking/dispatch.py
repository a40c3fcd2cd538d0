"""Beacon dispatch to the collection endpoint.

Beacons are sent with httpx. A transport error or a 5xx response is
retried once after a short backoff; after that the beacon is dropped and
the failure logged. 4xx responses mean the endpoint rejected the payload
and are never retried.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

import httpx

from dinelportal.tracking.config import DEFAULT_ENDPOINT, VALID_BEACON_METHODS
from dinelportal.tracking.exceptions import BeaconDeliveryError
from dinelportal.tracking.schema import TrackingPayload

logger = logging.getLogger(__name__)

USER_AGENT = "dinelportal-tracking/1.0"

JSON_HEADERS = {"Content-Type": "application/json"}


@dataclass
class DeliveryResult:
    """Outcome of sending one beacon.

    Attributes:
        delivered: True if the endpoint accepted the beacon.
        attempts: Number of HTTP attempts made.
        status_code: Status of the last response, if any.
        error: Description of the last failure, if any.
    """

    delivered: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class BeaconDispatcher:
    """Send TrackingPayloads to the collection endpoint.

    send() is synchronous and returns a DeliveryResult. dispatch() runs
    send() on a single background worker and returns immediately.

    Example:
        >>> dispatcher = BeaconDispatcher("https://dinelportal.dk/api/tracking/log")
        >>> future = dispatcher.dispatch(payload)
        >>> future.result().delivered
        True
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        client: httpx.Client | None = None,
        method: str = "POST",
        max_retries: int = 1,
        backoff_seconds: float = 0.5,
        timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the dispatcher.

        Args:
            endpoint: Collection endpoint URL.
            client: HTTP client to use. Created lazily when None.
            method: "POST" sends a JSON body, "GET" sends query parameters.
            max_retries: Retries after a retryable failure.
            backoff_seconds: Delay before each retry.
            timeout: Timeout for one attempt, in seconds.
            sleep: Function used to wait between attempts.
        """
        method = method.upper()
        if method not in VALID_BEACON_METHODS:
            raise ValueError(f"Invalid beacon method: '{method}'")
        self.endpoint = endpoint
        self.method = method
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self._sleep = sleep
        self._client = client
        self._owns_client = client is None
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        """Lazy-initialize the HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 3.0)),
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    def send(self, payload: TrackingPayload) -> DeliveryResult:
        """Send a beacon, retrying once on a retryable failure.

        Never raises: a beacon that cannot be delivered is dropped and
        reported through the returned DeliveryResult.
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                status_code = self._attempt(payload)
                logger.debug(
                    f"Delivered {payload.type.value} beacon to {self.endpoint} "
                    f"(status={status_code}, attempts={attempts})"
                )
                return DeliveryResult(delivered=True, attempts=attempts, status_code=status_code)
            except BeaconDeliveryError as e:
                if e.retryable and attempts <= self.max_retries:
                    logger.warning(
                        f"Beacon delivery failed: {e}. Retrying in "
                        f"{self.backoff_seconds}s (attempt {attempts}/{self.max_retries + 1})"
                    )
                    self._sleep(self.backoff_seconds)
                    continue
                logger.error(
                    f"Dropping {payload.type.value} beacon after {attempts} "
                    f"attempt(s): {e}"
                )
                return DeliveryResult(
                    delivered=False,
                    attempts=attempts,
                    status_code=e.status_code,
                    error=str(e),
                )

    def dispatch(self, payload: TrackingPayload) -> Future[DeliveryResult]:
        """Send a beacon in the background.

        Returns:
            Future resolving to the DeliveryResult.
        """
        return self._get_executor().submit(self.send, payload)

    def close(self, wait: bool = True) -> None:
        """Shut down the worker and close an owned HTTP client."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1,
                    thread_name_prefix="dinelportal-beacon",
                )
            return self._executor

    def _attempt(self, payload: TrackingPayload) -> int:
        try:
            if self.method == "GET":
                request = {"params": payload.to_query_params()}
            else:
                request = {"content": payload.to_json(), "headers": JSON_HEADERS}
        except (TypeError, ValueError) as e:
            raise BeaconDeliveryError(f"Cannot encode payload: {e}", retryable=False) from e

        try:
            if self.method == "GET":
                response = self.client.get(self.endpoint, **request)
            else:
                response = self.client.post(self.endpoint, **request)
        except httpx.TransportError as e:
            raise BeaconDeliveryError(f"{type(e).__name__}: {e}") from e

        status_code = response.status_code
        if status_code >= 500:
            raise BeaconDeliveryError(f"Server error {status_code}", status_code=status_code)
        if status_code >= 400:
            raise BeaconDeliveryError(
                f"Rejected with {status_code}",
                status_code=status_code,
                retryable=False,
            )
        return status_code
