"""
Tilequery client - nearby-feature lookups against the Mapbox Tilequery API.

Features:
- Shared requests.Session with a hard timeout on every call
- Retry with exponential backoff for transient failures (timeouts, 429, 5xx)
- Rate limiting shared across threads
- Typed feature parsing at the response boundary
"""

import threading
import time
import logging
from typing import Dict, Iterable, Optional

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from geodata.errors import AuthenticationFailure, ProviderUnavailable
from geodata.features import FeatureCollection, parse_feature_collection

log = logging.getLogger(__name__)

ALL_LAYERS = ("road", "building", "place", "landuse")


class _TransientProviderError(ProviderUnavailable):
    """Failure worth retrying: timeouts, connection resets, 429 and 5xx."""


class TilequeryClient:
    """
    Thin client for the Tilequery endpoint.

    Usage:
        client = TilequeryClient(access_token="pk....")
        collection = client.query(52.5163, 13.3777, radius_m=1500)
        print(collection.breakdown())
    """

    DEFAULT_URL = "https://api.mapbox.com/v4/mapbox.mapbox-streets-v8/tilequery"

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
        min_request_interval: float = 0.1,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            access_token: Provider access token. Without one every query raises
                ProviderUnavailable.
            base_url: Tilequery endpoint up to (not including) the coordinate
            timeout: Per-request timeout in seconds
            retry_attempts: Total attempts for transient failures
            retry_backoff: Exponential backoff multiplier in seconds (0 disables waiting)
            min_request_interval: Minimum spacing between outbound requests
        """
        self.access_token = access_token
        self.base_url = (base_url or self.DEFAULT_URL).rstrip("/")
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.min_request_interval = min_request_interval
        self.session = session or requests.Session()

        self._rate_lock = threading.Lock()
        self._last_request_time = 0.0
        self.api_calls = 0

    def _rate_limit(self):
        """Ensure we don't exceed the provider's request rate."""
        with self._rate_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self.min_request_interval:
                time.sleep(self.min_request_interval - elapsed)
            self._last_request_time = time.time()
            self.api_calls += 1

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, min=0, max=15 * self.retry_backoff),
            retry=retry_if_exception_type(_TransientProviderError),
            reraise=True,
        )

    def _make_request(self, url: str, params: Dict) -> Dict:
        """Make a single rate-limited request and classify the outcome."""
        self._rate_limit()

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise _TransientProviderError(f"Tilequery request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise _TransientProviderError(f"Tilequery request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationFailure(
                f"Tilequery authentication failed ({status}). Check token scopes: maps:read, tilesets:read",
                status_code=status,
            )
        if status == 429 or status >= 500:
            log.warning(f"Tilequery returned {status}, backing off...")
            raise _TransientProviderError(f"Tilequery returned HTTP {status}", status_code=status)
        if status >= 400:
            raise ProviderUnavailable(f"Tilequery returned HTTP {status}", status_code=status)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderUnavailable(f"Tilequery returned an undecodable body: {e}") from e

        # A body that is not a FeatureCollection is an outage, not "no features"
        if not isinstance(payload, dict) or not isinstance(payload.get("features"), list):
            raise ProviderUnavailable(
                f"Tilequery returned a malformed FeatureCollection: {type(payload).__name__}"
            )
        return payload

    def query(
        self,
        lat: float,
        lng: float,
        radius_m: int,
        layers: Iterable[str] = ALL_LAYERS,
        limit: int = 50,
    ) -> FeatureCollection:
        """
        Fetch features near a coordinate.

        Args:
            lat: Center latitude
            lng: Center longitude
            radius_m: Search radius in meters
            layers: Layers to include
            limit: Maximum number of features returned

        Returns:
            Parsed FeatureCollection

        Raises:
            AuthenticationFailure: Credentials were rejected
            ProviderUnavailable: No token, network failure or unusable response
        """
        if not self.access_token:
            raise ProviderUnavailable("MAPBOX_ACCESS_TOKEN not configured")

        url = f"{self.base_url}/{lng},{lat}.json"
        params = {
            "radius": int(radius_m),
            "layers": ",".join(layers),
            "limit": limit,
            "access_token": self.access_token,
        }

        log.info(f"Querying Tilequery at ({lat:.6f}, {lng:.6f}) radius={radius_m}m layers={params['layers']}")

        try:
            payload = self._retrying()(self._make_request, url, params)
        except _TransientProviderError as e:
            # Surface as the plain public type once retries are exhausted
            raise ProviderUnavailable(str(e), status_code=e.status_code) from e

        collection = parse_feature_collection(payload)
        if len(collection):
            log.info(f"  -> {len(collection)} features: {collection.breakdown()}")
        else:
            log.info("  -> no features")
        return collection
