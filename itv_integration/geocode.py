"""Geocoding resolution strategy and provider clients.

The pipeline consumes geocoding through one narrow interface,
``Geocoder.lookup(text) -> (lon, lat)``, and owns only the policy around
it:

1. Skip mobile and agricultural units entirely (no fixed location).
2. Query ``address, municipality, province, España`` when an address
   exists.
3. Fall back to ``municipality, province, España``.
4. Treat every provider failure as a miss, never as a fatal error.

Providers (Nominatim, OpenCage, or none) are interchangeable and chosen by
configuration. Each network provider enforces its own minimum spacing
between requests.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Final, Protocol, TypeAlias

import httpx

from itv_integration.config import GeocoderProvider, GeocodingSettings
from itv_integration.normalize import clean_text, is_mobile_or_agricultural

logger: Final[logging.Logger] = logging.getLogger(__name__)

# (longitude, latitude); both None on a miss.
LonLat: TypeAlias = tuple[float | None, float | None]
NO_RESULT: Final[LonLat] = (None, None)

_COUNTRY: Final[str] = "España"
_RETRIES: Final[int] = 2
_USER_AGENT: Final[str] = "itv-integration/0.1 (station registry normalization)"

_NOMINATIM_URL: Final[str] = "https://nominatim.openstreetmap.org/search"
_NOMINATIM_MIN_DELAY: Final[float] = 1.0

_OPENCAGE_URL: Final[str] = "https://api.opencagedata.com/geocode/v1/json"
# Free tier allows 1 request/second; keep a margin.
_OPENCAGE_MIN_DELAY: Final[float] = 1.1


class GeocodingMiss(Exception):
    """Raised by providers when a lookup fails for a non-empty query."""


class Geocoder(Protocol):
    """Address to coordinate lookup collaborator."""

    def lookup(self, text: str) -> LonLat:
        """Return (longitude, latitude) for an address, or (None, None)."""
        ...


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimiter:
    """Enforce a minimum interval between successive calls.

    The first call never waits.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None

    def wait(self) -> float:
        """Block until the interval has elapsed; return seconds slept."""
        slept = 0.0
        if self._last_call is not None:
            remaining = self.min_interval - (self._clock() - self._last_call)
            if remaining > 0:
                self._sleep(remaining)
                slept = remaining
        self._last_call = self._clock()
        return slept


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


def _build_client(timeout: float) -> httpx.Client:
    """Construct an httpx client configured for geocoding requests."""
    transport = httpx.HTTPTransport(retries=_RETRIES)
    return httpx.Client(
        timeout=timeout,
        transport=transport,
        headers={"User-Agent": _USER_AGENT},
    )


class NullGeocoder:
    """Provider used when geocoding is disabled; every lookup misses."""

    def lookup(self, text: str) -> LonLat:
        return NO_RESULT

    def close(self) -> None:
        pass


class NominatimGeocoder:
    """OpenStreetMap Nominatim search API (no key, 1 request/second)."""

    def __init__(
        self,
        *,
        client: httpx.Client | None = None,
        min_delay: float = _NOMINATIM_MIN_DELAY,
        timeout: float = 10.0,
        limiter: RateLimiter | None = None,
    ) -> None:
        self._client = client if client is not None else _build_client(timeout)
        self._limiter = limiter if limiter is not None else RateLimiter(min_delay)

    def lookup(self, text: str) -> LonLat:
        """Query Nominatim for the best match of ``text``.

        Raises:
            GeocodingMiss: On HTTP errors or unreadable responses.
        """
        if not text.strip():
            return NO_RESULT
        self._limiter.wait()
        try:
            response = self._client.get(
                _NOMINATIM_URL,
                params={"q": text, "format": "json", "limit": 1},
            )
        except httpx.HTTPError as exc:
            raise GeocodingMiss(f"Nominatim request failed: {exc}") from exc
        if response.status_code >= 400:
            raise GeocodingMiss(f"Nominatim HTTP {response.status_code} for {text!r}")

        try:
            payload: list[dict[str, Any]] = response.json()
            if not payload:
                return NO_RESULT
            first = payload[0]
            return float(first["lon"]), float(first["lat"])
        except (ValueError, KeyError, TypeError, IndexError) as exc:
            raise GeocodingMiss(f"Unreadable Nominatim response: {exc}") from exc

    def close(self) -> None:
        self._client.close()


class OpenCageGeocoder:
    """OpenCage geocoding API (key required, 2,500 requests/day free)."""

    def __init__(
        self,
        api_key: str | None,
        *,
        client: httpx.Client | None = None,
        min_delay: float = _OPENCAGE_MIN_DELAY,
        timeout: float = 10.0,
        limiter: RateLimiter | None = None,
    ) -> None:
        self._api_key = api_key.strip() if api_key else ""
        self._client = client if client is not None else _build_client(timeout)
        self._limiter = limiter if limiter is not None else RateLimiter(min_delay)
        if not self.is_configured:
            logger.error(
                "OpenCage API key not configured; set OPENCAGE_API_KEY. "
                "All lookups will miss."
            )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def lookup(self, text: str) -> LonLat:
        """Query OpenCage, restricted to Spain, for the best match of ``text``.

        Raises:
            GeocodingMiss: On transport errors or unreadable responses.
        """
        if not text.strip() or not self.is_configured:
            return NO_RESULT
        self._limiter.wait()
        try:
            response = self._client.get(
                _OPENCAGE_URL,
                params={
                    "q": text,
                    "key": self._api_key,
                    "countrycode": "es",
                    "limit": 1,
                    "no_annotations": 1,
                    "language": "es",
                },
            )
            payload: dict[str, Any] = response.json()
        except httpx.HTTPError as exc:
            raise GeocodingMiss(f"OpenCage request failed: {exc}") from exc
        except ValueError as exc:
            raise GeocodingMiss(
                f"OpenCage HTTP {response.status_code}: non-JSON body"
            ) from exc

        status = payload.get("status") or {}
        code = int(status.get("code", response.status_code))
        match code:
            case 200:
                pass
            case 402:
                logger.error("OpenCage daily quota exceeded (2,500/day)")
                return NO_RESULT
            case 403:
                logger.error("OpenCage API key invalid or access denied")
                return NO_RESULT
            case 429:
                logger.warning("OpenCage rate limit hit (max 1 request/second)")
                return NO_RESULT
            case _:
                logger.warning(
                    "OpenCage error %d: %s", code, status.get("message", "")
                )
                return NO_RESULT

        results = payload.get("results") or []
        if not results:
            return NO_RESULT
        try:
            geometry = results[0]["geometry"]
            return float(geometry["lng"]), float(geometry["lat"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodingMiss(f"Unreadable OpenCage result: {exc}") from exc

    def close(self) -> None:
        self._client.close()


def build_geocoder(settings: GeocodingSettings) -> Geocoder:
    """Instantiate the provider selected by configuration."""
    match settings.provider:
        case GeocoderProvider.NOMINATIM:
            return NominatimGeocoder(
                min_delay=settings.min_delay_seconds or _NOMINATIM_MIN_DELAY,
                timeout=settings.timeout_seconds,
            )
        case GeocoderProvider.OPENCAGE:
            return OpenCageGeocoder(
                settings.api_key,
                min_delay=settings.min_delay_seconds or _OPENCAGE_MIN_DELAY,
                timeout=settings.timeout_seconds,
            )
        case GeocoderProvider.NONE:
            return NullGeocoder()


# ---------------------------------------------------------------------------
# Resolution strategy
# ---------------------------------------------------------------------------


def build_query(
    address: str | None,
    municipality: str | None,
    province: str | None,
    country: str = _COUNTRY,
) -> str:
    """Join the non-empty address parts with the country name."""
    parts = [
        part
        for part in (clean_text(address), clean_text(municipality), clean_text(province))
        if part
    ]
    parts.append(country)
    return ", ".join(parts)


def _safe_lookup(geocoder: Geocoder, query: str) -> LonLat:
    """Run a lookup, degrading any provider failure to a miss."""
    try:
        return geocoder.lookup(query)
    except Exception as exc:  # noqa: BLE001 - provider failures are misses
        logger.warning(
            "Geocoding miss for %r: %s: %s", query, type(exc).__name__, exc
        )
        return NO_RESULT


def _found(result: LonLat) -> bool:
    return result[0] is not None and result[1] is not None


def resolve_coordinates(
    geocoder: Geocoder,
    address: str | None,
    municipality: str | None,
    province: str | None,
) -> LonLat:
    """Look up a station's coordinates with skip and fallback rules.

    Returns:
        (longitude, latitude), or (None, None) when skipped or not found.
    """
    if is_mobile_or_agricultural(address):
        logger.debug("Skipping geocoding for mobile/agricultural unit: %s", address)
        return NO_RESULT

    if clean_text(address):
        result = _safe_lookup(geocoder, build_query(address, municipality, province))
        if _found(result):
            return result
        logger.warning("No coordinates for address %r", address)

    if clean_text(municipality):
        logger.debug("Falling back to municipality lookup: %s", municipality)
        result = _safe_lookup(geocoder, build_query(None, municipality, province))
        if _found(result):
            return result

    return NO_RESULT
