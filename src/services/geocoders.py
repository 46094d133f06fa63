"""Geocoding providers and the fallback chain that tries them in order.

Each provider turns an address into ``(lat, lon)`` or ``None`` for no match,
and translates vendor failures into GeocodeError, GeocodeTimeoutError or
RateLimitError. The chain absorbs those errors, falls through to the next
provider, and reports a single GeocodeOutcome per property.

Providers are shared by the geocoding worker threads; their httpx clients
are thread-safe and Nominatim's throttle is guarded by a lock.
"""
from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import httpx

from core.config import Settings, get_settings
from core.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    GeocodeError,
    GeocodeTimeoutError,
    MissingCredentialsError,
    RateLimitError,
    ServiceUnavailableError,
)
from core.logging_config import get_logger, log_external_call
from core.models import GeocodeStatus
from services.retry import raise_for_vendor_status, with_retry

LOGGER = get_logger(__name__)

CENSUS_URL = "https://geocoding.geo.census.gov/geocoder/locations/onelineaddress"
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
GOOGLE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

MIN_ADDRESS_LENGTH = 3
MAX_ADDRESS_LENGTH = 200
EMPTY_ZIPS = ("", "00000")

# Phrases that mark a description rather than a street address
NON_ADDRESS_PHRASES = (
    "debris",
    "parcel-based location",
    "parcel based location",
    "vacant lot",
    "multiple addresses",
    "various locations",
    "no address",
    "illegal dumping",
)

Coordinates = Tuple[float, float]


# =============================================================================
# Address preparation
# =============================================================================


def clean_street(address: str) -> str:
    """
    Strip unit-letter suffixes such as ``"123 Main St - A"`` and collapse spaces.

    Example:
        >>> clean_street("123 Main St - B  ")
        '123 Main St'
    """
    cleaned = re.sub(r"\s+-\s*[A-Z](?:\s|$)", " ", address or "")
    return re.sub(r"\s+", " ", cleaned).strip()


def _is_unknown(value: Optional[str]) -> bool:
    return not value or not value.strip() or "unknown" in value.strip().lower()


def validate_geocode_input(
    address: Optional[str],
    city: Optional[str],
    state: Optional[str],
) -> Optional[str]:
    """
    Check whether an address is worth sending to a geocoder.

    Returns:
        None when the input is usable, otherwise the reason it is skipped.
    """
    if _is_unknown(address):
        return "missing or unknown address"
    if _is_unknown(city):
        return "missing or unknown city"
    if not state or not state.strip() or state.strip().lower() == "unknown":
        return "missing state"

    street = address.strip()
    if len(street) < MIN_ADDRESS_LENGTH:
        return "address too short"
    if len(street) > MAX_ADDRESS_LENGTH:
        return "address too long"

    lowered = street.lower()
    for phrase in NON_ADDRESS_PHRASES:
        if phrase in lowered:
            return f"address is a description ({phrase})"
    return None


@dataclass(frozen=True)
class AddressQuery:
    """One property's address in the shapes the providers want."""

    address: str
    city: str
    state: str
    zip: Optional[str] = None

    @property
    def street(self) -> str:
        return clean_street(self.address)

    def one_line(self) -> str:
        parts = [self.street, self.city.strip(), self.state.strip()]
        if self.zip and self.zip.strip() not in EMPTY_ZIPS:
            parts.append(self.zip.strip())
        return ", ".join(parts)

    def variations(self) -> List[str]:
        """Free-text queries, most to least specific."""
        city, state = self.city.strip(), self.state.strip()
        return [
            f"{self.street}, {city}, {state}, USA",
            f"{self.street}, {city}, {state}",
            f"{city}, {state}, USA",
        ]


@dataclass
class GeocodeOutcome:
    """Result of resolving one property through the provider chain."""

    property_id: int
    status: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    provider: Optional[str] = None
    reason: Optional[str] = None
    timed_out: bool = False

    @property
    def resolved(self) -> bool:
        return self.status == GeocodeStatus.GEOCODED.value


def _valid_coordinates(lat: float, lon: float) -> bool:
    return lat != 0 and lon != 0 and -90 <= lat <= 90 and -180 <= lon <= 180


# =============================================================================
# Providers
# =============================================================================


class Geocoder:
    """Base provider with a lazily created, shared httpx client."""

    name = "base"

    def __init__(self, timeout: float, client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(timeout=self.timeout)
            return self._client

    def geocode(self, query: AddressQuery) -> Optional[Coordinates]:
        raise NotImplementedError

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None


class CensusGeocoder(Geocoder):
    """US Census Bureau one-line address geocoder. Free, no key."""

    name = "census"

    def __init__(
        self,
        timeout: float,
        benchmark: str = "Public_AR_Current",
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout, client)
        self.benchmark = benchmark

    @with_retry(max_attempts=2, retry_exceptions=(ServiceUnavailableError,), min_wait=0.5, max_wait=2)
    def geocode(self, query: AddressQuery) -> Optional[Coordinates]:
        """
        Geocode using the full one-line address.

        Raises:
            GeocodeTimeoutError: The request exceeded the timeout.
            GeocodeError: Transport or response errors.
        """
        start_time = time.perf_counter()
        success = False
        try:
            response = self._get_client().get(
                CENSUS_URL,
                params={
                    "address": query.one_line(),
                    "benchmark": self.benchmark,
                    "format": "json",
                },
                timeout=self.timeout,
            )
            raise_for_vendor_status(response, "Census geocoder", GeocodeError)
            matches = response.json().get("result", {}).get("addressMatches") or []
            success = True
            if not matches:
                return None
            coords = matches[0].get("coordinates") or {}
            lon, lat = coords.get("x"), coords.get("y")
            if lat is None or lon is None:
                return None
            return float(lat), float(lon)
        except httpx.TimeoutException as e:
            raise GeocodeTimeoutError(f"Census geocoder timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GeocodeError(f"HTTP error during Census geocoding: {e}") from e
        except (ValueError, TypeError, AttributeError) as e:
            raise GeocodeError(f"Unreadable Census response: {e}") from e
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_external_call(LOGGER, "census", "geocode", success, duration_ms)


class NominatimGeocoder(Geocoder):
    """
    OpenStreetMap Nominatim search.

    The usage policy allows one request per second, so every request goes
    through a throttle shared by all threads using this instance. Up to three
    address variations are tried per property.
    """

    name = "nominatim"

    def __init__(
        self,
        timeout: float,
        user_agent: str,
        delay_seconds: float = 1.1,
        variation_delay_seconds: float = 0.5,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(timeout, client)
        self.user_agent = user_agent
        self.delay_seconds = delay_seconds
        self.variation_delay_seconds = variation_delay_seconds
        self._throttle_lock = threading.Lock()
        self._last_request = 0.0

    def _throttle(self) -> None:
        with self._throttle_lock:
            wait = self.delay_seconds - (time.monotonic() - self._last_request)
            if wait > 0:
                time.sleep(wait)
            self._last_request = time.monotonic()

    def _search(self, text: str) -> Optional[Coordinates]:
        self._throttle()
        start_time = time.perf_counter()
        success = False
        try:
            response = self._get_client().get(
                NOMINATIM_URL,
                params={"format": "json", "q": text, "limit": 1},
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            if response.status_code == 429:
                raise RateLimitError("Nominatim rate limit exceeded")
            if response.status_code >= 400:
                LOGGER.debug(f"Nominatim returned HTTP {response.status_code} for {text!r}")
                return None
            results = response.json()
            success = True
            if not results:
                return None
            lat, lon = float(results[0]["lat"]), float(results[0]["lon"])
            return (lat, lon) if _valid_coordinates(lat, lon) else None
        except httpx.TimeoutException as e:
            raise GeocodeTimeoutError(f"Nominatim timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GeocodeError(f"HTTP error during Nominatim geocoding: {e}") from e
        except (ValueError, TypeError, KeyError, IndexError) as e:
            raise GeocodeError(f"Unreadable Nominatim response: {e}") from e
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_external_call(LOGGER, "nominatim", "search", success, duration_ms)

    def geocode(self, query: AddressQuery) -> Optional[Coordinates]:
        variations = query.variations()
        for i, text in enumerate(variations):
            coords = self._search(text)
            if coords:
                return coords
            if i < len(variations) - 1 and self.variation_delay_seconds:
                time.sleep(self.variation_delay_seconds)
        return None


class GoogleGeocoder(Geocoder):
    """Google Maps Geocoding API. Paid; only used when enabled with a key."""

    name = "google"

    def __init__(self, api_key: Optional[str], timeout: float, client: Optional[httpx.Client] = None):
        super().__init__(timeout, client)
        if not api_key:
            raise MissingCredentialsError(
                "Google Maps API key not configured. Set GOOGLE_MAPS_API_KEY environment variable."
            )
        self.api_key = api_key

    @with_retry(max_attempts=2, retry_exceptions=(ServiceUnavailableError,), min_wait=0.5, max_wait=2)
    def geocode(self, query: AddressQuery) -> Optional[Coordinates]:
        """
        Raises:
            RateLimitError: Quota exceeded.
            GeocodeError: The API rejected the request.
        """
        start_time = time.perf_counter()
        success = False
        try:
            response = self._get_client().get(
                GOOGLE_URL,
                params={
                    "address": query.one_line(),
                    "key": self.api_key,
                    "components": "country:US",
                },
                timeout=self.timeout,
            )
            raise_for_vendor_status(response, "Google Maps", GeocodeError)
            data = response.json()

            status = data.get("status")
            if status == "OK":
                results = data.get("results") or []
                success = True
                if not results:
                    return None
                location = results[0]["geometry"]["location"]
                return float(location["lat"]), float(location["lng"])
            elif status == "ZERO_RESULTS":
                success = True  # Not an error, just no results
                return None
            elif status == "OVER_QUERY_LIMIT":
                raise RateLimitError("Google Maps API quota exceeded")
            elif status in ("REQUEST_DENIED", "INVALID_REQUEST"):
                error_msg = data.get("error_message", status)
                raise GeocodeError(f"Google Maps API error: {error_msg}")
            else:
                raise GeocodeError(f"Unexpected status from Google Maps API: {status}")

        except httpx.TimeoutException as e:
            raise GeocodeTimeoutError(f"Google Maps timed out: {e}") from e
        except httpx.HTTPError as e:
            raise GeocodeError(f"HTTP error during geocoding: {e}") from e
        except (ValueError, TypeError, KeyError, IndexError) as e:
            raise GeocodeError(f"Unreadable Google Maps response: {e}") from e
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_external_call(LOGGER, "google_maps", "geocode", success, duration_ms)


# =============================================================================
# Provider chain
# =============================================================================


class GeocoderChain:
    """Try each provider in order until one returns coordinates."""

    def __init__(self, providers: Sequence[Geocoder]):
        if not providers:
            raise ConfigurationError("At least one geocoding provider is required")
        self.providers = list(providers)

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.providers]

    def resolve(
        self,
        property_id: int,
        address: Optional[str],
        city: Optional[str],
        state: Optional[str],
        zip: Optional[str] = None,
    ) -> GeocodeOutcome:
        """
        Resolve one property.

        Outcome is ``geocoded`` with coordinates, ``skipped`` when the input
        is unusable, or ``failed`` when no provider matched. ``timed_out`` is
        set only when every provider timed out.
        """
        reason = validate_geocode_input(address, city, state)
        if reason:
            return GeocodeOutcome(property_id, GeocodeStatus.SKIPPED.value, reason=reason)

        query = AddressQuery(address=address, city=city, state=state, zip=zip)
        errors: List[str] = []
        timeouts = 0
        for provider in self.providers:
            try:
                coords = provider.geocode(query)
            except GeocodeTimeoutError as e:
                timeouts += 1
                errors.append(f"{provider.name}: timeout")
                LOGGER.debug(f"{provider.name} timed out for property {property_id}: {e}")
                continue
            except ExternalServiceError as e:
                errors.append(f"{provider.name}: {e}")
                LOGGER.debug(f"{provider.name} failed for property {property_id}: {e}")
                continue
            if coords:
                lat, lon = coords
                return GeocodeOutcome(
                    property_id,
                    GeocodeStatus.GEOCODED.value,
                    latitude=lat,
                    longitude=lon,
                    provider=provider.name,
                )

        return GeocodeOutcome(
            property_id,
            GeocodeStatus.FAILED.value,
            reason="; ".join(errors) or "no match",
            timed_out=timeouts == len(self.providers),
        )

    def close(self) -> None:
        for provider in self.providers:
            provider.close()


def build_geocoder_chain(settings: Optional[Settings] = None) -> GeocoderChain:
    """
    Build the provider chain from GEOCODER_PROVIDERS.

    Google is dropped with a warning when it is listed but not enabled.

    Raises:
        ConfigurationError: If no usable provider remains.
    """
    settings = settings or get_settings()
    timeout = settings.geocode_timeout_seconds
    providers: List[Geocoder] = []
    for name in settings.geocoder_order():
        if name == "census":
            providers.append(CensusGeocoder(timeout, benchmark=settings.census_benchmark))
        elif name == "nominatim":
            providers.append(
                NominatimGeocoder(
                    timeout,
                    user_agent=settings.nominatim_user_agent,
                    delay_seconds=settings.nominatim_delay_seconds,
                    variation_delay_seconds=settings.nominatim_variation_delay_seconds,
                )
            )
        elif name == "google":
            if not settings.is_google_enabled():
                LOGGER.warning("Google geocoder listed but not enabled; skipping it")
                continue
            providers.append(GoogleGeocoder(settings.google_maps_api_key, timeout))
    LOGGER.debug(f"Geocoder chain: {[p.name for p in providers]}")
    return GeocoderChain(providers)


__all__ = [
    "AddressQuery",
    "GeocodeOutcome",
    "Geocoder",
    "CensusGeocoder",
    "NominatimGeocoder",
    "GoogleGeocoder",
    "GeocoderChain",
    "build_geocoder_chain",
    "clean_street",
    "validate_geocode_input",
]
