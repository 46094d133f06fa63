"""Skip trace client: owner contact lookup by property address.

Calls a BatchData-style endpoint with a bearer token and returns the owner
name plus any phone numbers and emails, or no match. Disabled unless
ENABLE_SKIP_TRACE is set and an API key is configured.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.exceptions import (
    ConfigurationError,
    PropertyNotFoundError,
    ServiceUnavailableError,
    SkipTraceError,
)
from core.logging_config import get_logger, log_external_call
from core.models import Property
from services.retry import raise_for_vendor_status, with_retry

LOGGER = get_logger(__name__)

UNKNOWN_OWNER = "Unknown Owner"


@dataclass
class SkipTraceResult:
    """Contacts found for one address."""
    address: str
    owner_name: Optional[str] = None
    phones: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    found: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "owner_name": self.owner_name,
            "phones": list(self.phones),
            "emails": list(self.emails),
            "found": self.found,
        }


def format_full_address(
    address: str,
    city: Optional[str] = None,
    state: Optional[str] = None,
    zip_code: Optional[str] = None,
) -> str:
    """``"123 Main St, Chicago, IL 60601"``; missing parts are left out."""
    locality = " ".join(part for part in (state, zip_code) if part)
    return ", ".join(part for part in (address, city, locality) if part)


def _as_strings(values: Any, key: str) -> List[str]:
    """Accept either plain strings or ``{key: value}`` objects from the vendor."""
    result = []
    for value in values or []:
        if isinstance(value, dict):
            value = value.get(key)
        if value and str(value).strip():
            result.append(str(value).strip())
    return list(dict.fromkeys(result))


class SkipTraceService:
    """
    Skip trace vendor client.

    Requests are throttled to one per SKIP_TRACE_RATE_LIMIT_SECONDS across
    threads sharing the instance.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        settings: Optional[Settings] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.skip_trace_api_key
        self.base_url = (base_url or self.settings.skip_trace_base_url).rstrip("/")
        self.timeout = self.settings.skip_trace_timeout
        self.min_interval = self.settings.skip_trace_rate_limit_seconds
        self._client = client
        self._lock = threading.Lock()
        self._last_request_time = 0.0

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, headers=self._get_headers())
        return self._client

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _rate_limit(self) -> None:
        with self._lock:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)
            self._last_request_time = time.monotonic()

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def is_enabled(self) -> bool:
        """Check if skip trace is enabled via feature flag and configured."""
        return self.settings.enable_skip_trace and self.is_configured()

    @with_retry(max_attempts=3, retry_exceptions=(ServiceUnavailableError,))
    def lookup(self, full_address: str, phone_hint: Optional[str] = None) -> SkipTraceResult:
        """
        Look up the owner of ``full_address``.

        Returns:
            SkipTraceResult; ``found`` is False when the vendor has no match.

        Raises:
            ConfigurationError: Skip trace is not enabled or not configured.
            RateLimitError: The vendor throttled the request.
            SkipTraceError: Any other vendor failure.
        """
        if not self.is_enabled():
            raise ConfigurationError(
                "Skip trace is disabled. Set ENABLE_SKIP_TRACE=true and SKIP_TRACE_API_KEY."
            )

        self._rate_limit()
        start_time = time.perf_counter()
        success = False
        try:
            payload: Dict[str, Any] = {"address": full_address}
            if phone_hint:
                payload["phone_hint"] = phone_hint
            response = self._get_client().post(f"{self.base_url}/skip-trace", json=payload)

            if response.status_code == 404:
                success = True
                return SkipTraceResult(address=full_address)
            raise_for_vendor_status(response, "Skip trace", SkipTraceError)

            data = response.json()
            success = True
            return self._parse_response(full_address, data)
        except httpx.TimeoutException as e:
            raise SkipTraceError(f"Skip trace timed out: {e}") from e
        except httpx.HTTPError as e:
            raise SkipTraceError(f"Skip trace HTTP error: {e}") from e
        except ValueError as e:
            raise SkipTraceError(f"Unreadable skip trace response: {e}") from e
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_external_call(
                LOGGER,
                service="skip_trace",
                operation="lookup",
                success=success,
                duration_ms=duration_ms,
            )

    def _parse_response(self, address: str, data: Dict[str, Any]) -> SkipTraceResult:
        phones = _as_strings(data.get("phones"), "number")
        emails = _as_strings(data.get("emails"), "email")
        found = bool(phones or emails or data.get("owner_name"))
        return SkipTraceResult(
            address=address,
            owner_name=(data.get("owner_name") or UNKNOWN_OWNER) if found else None,
            phones=phones,
            emails=emails,
            found=found,
            raw=data,
        )

    def skip_trace_property(
        self,
        session: Session,
        property_id: int,
        phone_hint: Optional[str] = None,
    ) -> SkipTraceResult:
        """
        Skip trace a stored property by id.

        Raises:
            PropertyNotFoundError: If the property does not exist.
        """
        prop = session.get(Property, property_id)
        if prop is None:
            raise PropertyNotFoundError(f"Property {property_id} not found")
        full_address = format_full_address(prop.address, prop.city, prop.state, prop.zip)
        LOGGER.info(f"Skip tracing property {property_id}")
        return self.lookup(full_address, phone_hint=phone_hint)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


_service: Optional[SkipTraceService] = None


def get_skip_trace_service() -> SkipTraceService:
    """Get the process-wide skip trace client."""
    global _service
    if _service is None:
        _service = SkipTraceService()
    return _service


__all__ = [
    "SkipTraceResult",
    "SkipTraceService",
    "format_full_address",
    "get_skip_trace_service",
]
