"""
Nominatim (OpenStreetMap) geocoding via geopy.

``geocode`` / ``reverse_geocode`` return a GeoPoint, or None when the service
has no match.  "Not found" is never an error; GeocodeError is raised only
when the service itself fails (after retrying transient failures).

Usage:
    from agents.GeocodeAgent import geocode, geocode_first

    point = geocode_first(["Forsyth Park, Savannah, GA", "Savannah, GA"])
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Optional

from geopy.exc import (
    GeocoderRateLimited, GeocoderServiceError, GeocoderTimedOut, GeocoderUnavailable,
)
from geopy.geocoders import Nominatim

from settings import get_geocode_timeout, get_user_agent
from trip_models import GeoPoint

try:
    from .resilience import (
        RetryExhausted, SingleFlight, TTLCache, TransientError,
        cache_signature, cached_call, geocode_cache, retry_call, single_flight,
    )
except ImportError:
    from resilience import (  # type: ignore
        RetryExhausted, SingleFlight, TTLCache, TransientError,
        cache_signature, cached_call, geocode_cache, retry_call, single_flight,
    )

logger = logging.getLogger(__name__)

# Cache sentinel for "service answered, no match" so misses are not re-queried
_NOT_FOUND = {"found": False}


class GeocodeError(RuntimeError):
    """The geocoding service failed (transport error or bad response)."""


def _geolocator() -> Nominatim:
    return Nominatim(user_agent=get_user_agent(), timeout=get_geocode_timeout())


def _request(lookup):
    """Run one geopy lookup; timeouts, outages and throttling are transient."""
    try:
        return lookup(_geolocator())
    except (GeocoderTimedOut, GeocoderUnavailable, GeocoderRateLimited) as exc:
        raise TransientError(f"Geocoding service temporarily unavailable: {exc}") from exc
    except GeocoderServiceError as exc:
        raise GeocodeError(f"Geocoding request failed: {exc}") from exc


def _call(lookup):
    try:
        return retry_call(lambda: _request(lookup), label="geocode")
    except RetryExhausted as exc:
        raise GeocodeError(str(exc)) from exc


def _to_point(location, fallback_name: str) -> Optional[GeoPoint]:
    if location is None:
        return None
    try:
        lat = float(location.latitude)
        lon = float(location.longitude)
    except (AttributeError, TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    display = location.address if isinstance(location.address, str) else ""
    return GeoPoint(lat=lat, lon=lon, display_name=display.strip() or fallback_name)


def _cached_lookup(signature: str, fetch, cache: TTLCache,
                   flight: SingleFlight) -> Optional[GeoPoint]:
    def _fetch_payload() -> dict:
        point = fetch()
        return point.to_dict() if point is not None else dict(_NOT_FOUND)

    payload = cached_call(cache, flight, signature, _fetch_payload)
    if payload.get("found") is False:
        return None
    return GeoPoint.from_dict(payload)


def geocode(
    query: str,
    cache: TTLCache | None = None,
    flight: SingleFlight | None = None,
) -> Optional[GeoPoint]:
    """Resolve free text to a GeoPoint, or None if nothing matches."""
    trimmed = (query or "").strip()
    if not trimmed:
        return None

    def _fetch() -> Optional[GeoPoint]:
        location = _call(lambda geo: geo.geocode(trimmed, exactly_one=True, language="en"))
        if location is None:
            logger.debug("No geocoding match for %r", trimmed)
        return _to_point(location, trimmed)

    signature = cache_signature("geocode", trimmed.lower())
    return _cached_lookup(signature, _fetch,
                          cache if cache is not None else geocode_cache,
                          flight if flight is not None else single_flight)


def reverse_geocode(
    lat: float,
    lon: float,
    cache: TTLCache | None = None,
    flight: SingleFlight | None = None,
) -> Optional[GeoPoint]:
    """Resolve coordinates to a display name, or None if nothing matches."""
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None

    def _fetch() -> Optional[GeoPoint]:
        location = _call(lambda geo: geo.reverse((lat, lon), exactly_one=True, language="en"))
        point = _to_point(location, "")
        if point is None:
            return None
        # Keep the caller's coordinates; Nominatim snaps to the nearest object
        return GeoPoint(lat=lat, lon=lon, display_name=point.display_name)

    signature = cache_signature("reverse_geocode", [round(lat, 6), round(lon, 6)])
    return _cached_lookup(signature, _fetch,
                          cache if cache is not None else geocode_cache,
                          flight if flight is not None else single_flight)


def geocode_first(candidates: Iterable[str]) -> Optional[GeoPoint]:
    """Try each candidate string in order; return the first hit.

    Service failures for one candidate are logged and the next candidate is
    tried, so a flaky lookup never aborts the caller.
    """
    for candidate in candidates:
        candidate = (candidate or "").strip()
        if not candidate:
            continue
        try:
            point = geocode(candidate)
        except GeocodeError as exc:
            logger.warning("Geocode failed stage=geocode_candidate candidate=%r: %s",
                           candidate, exc)
            continue
        if point is not None:
            return point
    return None
