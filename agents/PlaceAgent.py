"""
Live place lookup: one normalised PlaceRecord per query.

Sources, in the order they are consulted:

  1. Nominatim: coordinates (via GeocodeAgent), if not supplied
  2. OpenTripMap: POI search by name + radius, then detail by xid
  3. TripAdvisor: business listing by name + location, then detail
  4. Wikipedia: summary for the POI (or business) title
  5. OpenWeather: current conditions at the final coordinates

Every source is optional.  A missing API key means the source is skipped;
a failing request is logged and treated as "no data".  Nothing a single
source does can abort the lookup.

Usage:
    from agents.PlaceAgent import fetch_place_data

    record = fetch_place_data("Forsyth Park", {"city": "Savannah", "region": "GA"})
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from difflib import SequenceMatcher
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from settings import (
    get_http_timeout, get_openweather_key, get_opentripmap_key,
    get_tripadvisor_key, get_user_agent,
)
from trip_models import (
    BusinessSource, Contact, EncyclopediaSummary, GeoPoint, PlaceDetail,
    PlaceRecord, PoiSource, Weather,
)

try:
    from .GeocodeAgent import geocode_first
    from .resilience import (
        SingleFlight, TTLCache, cache_signature, cached_call, place_cache,
        single_flight,
    )
except ImportError:
    from GeocodeAgent import geocode_first  # type: ignore
    from resilience import (  # type: ignore
        SingleFlight, TTLCache, cache_signature, cached_call, place_cache,
        single_flight,
    )

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_OTM_SEARCH_URL = "https://api.opentripmap.com/0.1/en/places/autosuggest"
_OTM_DETAIL_URL = "https://api.opentripmap.com/0.1/en/places/xid/{xid}"
_TA_SEARCH_URL = "https://api.content.tripadvisor.com/api/v1/location/search"
_TA_DETAIL_URL = "https://api.content.tripadvisor.com/api/v1/location/{location_id}/details"
_WIKI_SUMMARY_URL = "https://en.wikipedia.org/api/rest_v1/page/summary/{slug}"
_WIKI_SEARCH_URL = "https://en.wikipedia.org/w/api.php"
_WIKI_NOT_FOUND = "https://mediawiki.org/wiki/HyperSwitch/errors/not_found"
_WEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"

_POI_RADIUS_METERS = 10000
_POI_LIMIT = 5
_PROXIMITY_HORIZON_KM = 50.0


@dataclass
class PlaceContext:
    """Normalised lookup hints."""

    address: str = ""
    city: str = ""
    region: str = ""
    country: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def locality(self) -> list[str]:
        return [p for p in (self.city, self.region, self.country) if p]

    def as_signature(self) -> dict:
        return {
            "address": self.address, "city": self.city, "region": self.region,
            "country": self.country, "latitude": self.latitude,
            "longitude": self.longitude,
        }


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _clean(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def _coalesce(*values: Any) -> str:
    for value in values:
        cleaned = _clean(value)
        if cleaned:
            return cleaned
    return ""


def _sentence(value: str) -> str:
    value = value.strip()
    return value.lower().capitalize() if value else ""


def normalize_context(context: Optional[Dict[str, Any]]) -> PlaceContext:
    context = context or {}
    return PlaceContext(
        address=_clean(context.get("address")),
        city=_clean(context.get("city")),
        region=_clean(context.get("region")),
        country=_clean(context.get("country")),
        latitude=_to_float(context.get("latitude")),
        longitude=_to_float(context.get("longitude")),
    )


# ---------------------------------------------------------------------------
# Matching helpers
# ---------------------------------------------------------------------------

def _alnum(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "", (value or "").lower())


def name_similarity(a: str, b: str) -> float:
    """Symmetric character-overlap ratio in [0, 1].

    Identical (after lowercasing and stripping non-alphanumerics) → 1.0;
    no shared characters → 0.0.
    """
    a, b = _alnum(a), _alnum(b)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    forward = SequenceMatcher(None, a, b, autojunk=False).ratio()
    backward = SequenceMatcher(None, b, a, autojunk=False).ratio()
    return (forward + backward) / 2.0


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance (haversine)."""
    r = 6371.0
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * r * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

def _request_json(url: str, params: Optional[dict] = None, *,
                  stage: str, query: str, city: str = "") -> Optional[Any]:
    """GET JSON; any failure is logged and returned as None."""
    headers = {
        "Accept": "application/json",
        "Accept-Language": "en",
        "User-Agent": get_user_agent(),
    }
    try:
        resp = requests.get(url, params=params, headers=headers,
                            timeout=get_http_timeout())
    except requests.RequestException as exc:
        log.warning("Live source request failed stage=%s query=%r city=%r: %s",
                    stage, query, city, exc)
        return None

    if not 200 <= resp.status_code < 300:
        log.info("Live source non-success stage=%s query=%r city=%r status=%s",
                 stage, query, city, resp.status_code)
        return None
    try:
        return resp.json()
    except ValueError:
        log.warning("Live source returned non-JSON stage=%s query=%r city=%r",
                    stage, query, city)
        return None


# ---------------------------------------------------------------------------
# Coordinates
# ---------------------------------------------------------------------------

def _resolve_coordinates(query: str, ctx: PlaceContext) -> Optional[GeoPoint]:
    """Explicit coordinates win; otherwise geocode progressively looser text."""
    if ctx.latitude is not None and ctx.longitude is not None:
        return GeoPoint(lat=ctx.latitude, lon=ctx.longitude,
                        display_name=ctx.address)

    candidates: list[str] = []
    if ctx.address:
        candidates.append(ctx.address)
    locality = ctx.locality()
    if locality:
        candidates.append(", ".join([query] + locality))
        candidates.append(", ".join(locality))
    candidates.append(query)

    return geocode_first(candidates)


# ---------------------------------------------------------------------------
# OpenTripMap (POI directory)
# ---------------------------------------------------------------------------

def _format_otm_address(value: Any) -> str:
    if not isinstance(value, dict):
        return ""
    keys = ("house_number", "road", "neighbourhood", "suburb", "city",
            "state", "postcode", "country")
    return ", ".join(p for p in (_clean(value.get(k)) for k in keys) if p)


def _format_kinds(kinds: str) -> str:
    parts = [_sentence(k.replace("_", " ")) for k in kinds.split(",")]
    return " • ".join(p for p in parts if p)


def _otm_price(detail: dict) -> str:
    info = detail.get("info") if isinstance(detail.get("info"), dict) else {}
    extratags = detail.get("extratags") if isinstance(detail.get("extratags"), dict) else {}
    return _coalesce(detail.get("price"), info.get("price"), extratags.get("fee"))


def _format_otm_detail(properties: dict, geometry: Any,
                       detail: Optional[dict]) -> tuple[PlaceDetail, PoiSource]:
    detail = detail if isinstance(detail, dict) else {}

    coords = None
    point = detail.get("point") if isinstance(detail.get("point"), dict) else {}
    lat, lon = _to_float(point.get("lat")), _to_float(point.get("lon"))
    if (lat is None or lon is None) and isinstance(geometry, dict):
        pair = geometry.get("coordinates")
        if isinstance(pair, list) and len(pair) == 2:
            lon, lat = _to_float(pair[0]), _to_float(pair[1])
    name = _coalesce(detail.get("name"), properties.get("name"))
    if lat is not None and lon is not None:
        coords = GeoPoint(lat=lat, lon=lon, display_name=name)

    extracts = detail.get("wikipedia_extracts")
    extracts = extracts if isinstance(extracts, dict) else {}
    info = detail.get("info") if isinstance(detail.get("info"), dict) else {}
    contact = detail.get("contacts") if isinstance(detail.get("contacts"), dict) else {}
    kinds = _coalesce(detail.get("kinds"), properties.get("kinds"))
    xid = _coalesce(detail.get("xid"), properties.get("xid"))
    url = _coalesce(detail.get("otm"), detail.get("url"))

    fields = PlaceDetail(
        name=name,
        category=_format_kinds(kinds),
        description=_coalesce(extracts.get("text"), info.get("descr")),
        coordinates=coords,
        address=_format_otm_address(detail.get("address")),
        hours=_coalesce(detail.get("opening_hours")),
        phone=_coalesce(contact.get("phone"), detail.get("phone")),
        website=_coalesce(contact.get("website"), detail.get("url")),
        price=_otm_price(detail),
        source_url=url,
    )
    source = PoiSource(
        id=xid, url=url, name=name, kinds=kinds,
        rate=_to_float(detail.get("rate", properties.get("rate"))),
        wikipedia=_coalesce(detail.get("wikipedia"), properties.get("wikipedia")),
    )
    return fields, source


def _fetch_opentripmap(query: str, ctx: PlaceContext,
                       coords: Optional[GeoPoint]) -> Optional[tuple[PlaceDetail, PoiSource]]:
    api_key = get_opentripmap_key()
    if not api_key:
        return None

    params: dict[str, Any] = {"name": query, "limit": _POI_LIMIT, "apikey": api_key}
    if coords is not None:
        params.update(lat=coords.lat, lon=coords.lon, radius=_POI_RADIUS_METERS)

    listing = _request_json(_OTM_SEARCH_URL, params, stage="opentripmap_search",
                            query=query, city=ctx.city)
    features = listing.get("features") if isinstance(listing, dict) else None
    if not isinstance(features, list):
        return None

    best, best_score = None, -math.inf
    for feature in features:
        if not isinstance(feature, dict) or not isinstance(feature.get("properties"), dict):
            continue
        props = feature["properties"]
        name = _clean(props.get("name"))
        if not name:
            continue
        score = name_similarity(query, name)
        rate = _to_float(props.get("rate"))
        if rate is not None:
            score += rate / 10.0
        if score > best_score:
            best, best_score = feature, score

    if best is None:
        return None

    props = best["properties"]
    detail = None
    xid = _clean(props.get("xid"))
    if xid:
        detail = _request_json(_OTM_DETAIL_URL.format(xid=quote(xid, safe="")),
                               {"apikey": api_key}, stage="opentripmap_detail",
                               query=query, city=ctx.city)
    return _format_otm_detail(props, best.get("geometry"), detail)


# ---------------------------------------------------------------------------
# TripAdvisor (business directory)
# ---------------------------------------------------------------------------

def _ta_search_query(query: str, ctx: PlaceContext) -> str:
    parts: list[str] = []
    for part in [query.strip()] + ctx.locality():
        if part and part not in parts:
            parts.append(part)
    return " ".join(parts) or query


def _ta_address(value: Any) -> str:
    if not isinstance(value, dict):
        return ""
    address = _clean(value.get("address_string"))
    if address:
        return address
    keys = ("street1", "street2", "city", "state", "postalcode", "country")
    return ", ".join(p for p in (_clean(value.get(k)) for k in keys) if p)


def _ta_hours(hours: Any) -> str:
    if not isinstance(hours, dict):
        return ""
    weekday = hours.get("weekday_text")
    if isinstance(weekday, list):
        lines = [_clean(line) for line in weekday if _clean(line)]
        if lines:
            return " • ".join(lines)
    for key in ("display_text", "text"):
        if _clean(hours.get(key)):
            return _clean(hours[key])
    return ""


def _ta_category(listing: dict, detail: dict) -> str:
    labels: list[str] = []
    subcategory = detail.get("subcategory")
    if isinstance(subcategory, list):
        for entry in subcategory:
            if isinstance(entry, dict) and _clean(entry.get("name")):
                labels.append(_sentence(_clean(entry["name"]).replace("_", " ")))
    if not labels and isinstance(detail.get("category"), dict):
        label = _clean(detail["category"].get("name"))
        if label:
            labels.append(_sentence(label))
    if not labels:
        label = _coalesce(listing.get("category"),
                          _clean(listing.get("location_type")).replace("_", " "))
        if label:
            labels.append(_sentence(label))
    unique: list[str] = []
    for label in labels:
        if label not in unique:
            unique.append(label)
    return " • ".join(unique)


def _format_ta_detail(listing: dict, detail: Optional[dict]) -> tuple[PlaceDetail, BusinessSource]:
    detail = detail if isinstance(detail, dict) else {}
    name = _coalesce(detail.get("name"), listing.get("name"))

    lat = _to_float(detail.get("latitude"))
    if lat is None:
        lat = _to_float(listing.get("latitude"))
    lon = _to_float(detail.get("longitude"))
    if lon is None:
        lon = _to_float(listing.get("longitude"))
    coords = GeoPoint(lat=lat, lon=lon, display_name=name) if lat is not None and lon is not None else None

    rating = _to_float(detail.get("rating"))
    if rating is None:
        rating = _to_float(listing.get("rating"))

    ranking = detail.get("ranking_data")
    ranking = _clean(ranking.get("ranking_string")) if isinstance(ranking, dict) else ""
    ranking = ranking or _clean(detail.get("ranking"))

    address = _ta_address(detail.get("address_obj")) or _ta_address(listing.get("address_obj"))
    url = _coalesce(detail.get("web_url"), listing.get("web_url"))
    review_count = _to_float(detail.get("num_reviews"))

    fields = PlaceDetail(
        name=name,
        category=_ta_category(listing, detail),
        description=_clean(detail.get("description")),
        coordinates=coords,
        address=address or _clean(listing.get("address")),
        hours=_ta_hours(detail.get("hours") or listing.get("hours")),
        phone=_coalesce(detail.get("phone"), detail.get("phone_number"),
                        listing.get("phone"), listing.get("phone_number")),
        website=_coalesce(detail.get("website"), detail.get("website_url"),
                          listing.get("website")),
        rating=rating,
        price=_coalesce(detail.get("price_level"), detail.get("price"),
                        listing.get("price_level"), listing.get("price")),
        source_url=url,
    )
    source = BusinessSource(
        id=_coalesce(detail.get("location_id"), listing.get("location_id")),
        url=url,
        name=name,
        rating=rating,
        review_count=int(review_count) if review_count is not None else None,
        ranking=ranking,
        rating_image_url=_coalesce(detail.get("rating_image_url"),
                                   listing.get("rating_image_url")),
    )
    return fields, source


def _fetch_tripadvisor(query: str, ctx: PlaceContext,
                       coords: Optional[GeoPoint]) -> Optional[tuple[PlaceDetail, BusinessSource]]:
    api_key = get_tripadvisor_key()
    if not api_key:
        return None

    params = {"key": api_key, "searchQuery": _ta_search_query(query, ctx), "language": "en"}
    if coords is not None:
        params["latLong"] = f"{coords.lat:.6f},{coords.lon:.6f}"

    listing = _request_json(_TA_SEARCH_URL, params, stage="tripadvisor_search",
                            query=query, city=ctx.city)
    data = listing.get("data") if isinstance(listing, dict) else None
    if not isinstance(data, list):
        return None

    best, best_score = None, -math.inf
    for candidate in data:
        if not isinstance(candidate, dict):
            continue
        name = _clean(candidate.get("name"))
        if not name:
            continue
        score = name_similarity(query, name)
        lat, lon = _to_float(candidate.get("latitude")), _to_float(candidate.get("longitude"))
        if coords is not None and lat is not None and lon is not None:
            km = distance_km(coords.lat, coords.lon, lat, lon)
            score += max(0.0, 1.0 - min(km, _PROXIMITY_HORIZON_KM) / _PROXIMITY_HORIZON_KM)
        if score > best_score:
            best, best_score = candidate, score

    if best is None:
        return None

    detail = None
    location_id = _clean(best.get("location_id"))
    if location_id:
        detail = _request_json(
            _TA_DETAIL_URL.format(location_id=quote(location_id, safe="")),
            {"key": api_key, "language": "en"},
            stage="tripadvisor_detail", query=query, city=ctx.city,
        )
    return _format_ta_detail(best, detail)


# ---------------------------------------------------------------------------
# Wikipedia (encyclopedia)
# ---------------------------------------------------------------------------

def _wikipedia_title(cross_ref: str) -> Optional[str]:
    """'en:Forsyth Park' → 'Forsyth Park'."""
    cross_ref = cross_ref.strip()
    if not cross_ref:
        return None
    return cross_ref.split(":", 1)[-1].strip() or None


def _summary_by_title(title: str, query: str, city: str) -> Optional[EncyclopediaSummary]:
    slug = quote(title.replace(" ", "_"), safe="")
    data = _request_json(_WIKI_SUMMARY_URL.format(slug=slug), stage="wikipedia_summary",
                         query=query, city=city)
    if not isinstance(data, dict) or data.get("type") == _WIKI_NOT_FOUND:
        return None

    url = ""
    urls = data.get("content_urls")
    if isinstance(urls, dict):
        for variant in ("desktop", "mobile"):
            page = urls.get(variant)
            if isinstance(page, dict) and _clean(page.get("page")):
                url = _clean(page["page"])
                break
    if not url and isinstance(data.get("titles"), dict):
        canonical = _clean(data["titles"].get("canonical"))
        if canonical:
            url = "https://en.wikipedia.org/wiki/" + quote(canonical, safe="")

    return EncyclopediaSummary(
        title=_clean(data.get("title")) or title,
        description=_clean(data.get("description")),
        extract=_clean(data.get("extract")),
        url=url,
        last_modified=_clean(data.get("timestamp")),
    )


def _search_title(title: str, query: str, city: str) -> Optional[str]:
    params = {"action": "query", "list": "search", "srsearch": title,
              "srlimit": 1, "format": "json", "utf8": 1}
    data = _request_json(_WIKI_SEARCH_URL, params, stage="wikipedia_search",
                         query=query, city=city)
    body = data.get("query") if isinstance(data, dict) else None
    results = body.get("search") if isinstance(body, dict) else None
    if not isinstance(results, list):
        return None
    for result in results:
        if isinstance(result, dict) and _clean(result.get("title")):
            return _clean(result["title"])
    return None


def _request_summary(title: str, query: str, city: str) -> Optional[EncyclopediaSummary]:
    title = title.strip()
    if not title:
        return None
    summary = _summary_by_title(title, query, city)
    if summary is not None:
        return summary
    alternate = _search_title(title, query, city)
    if alternate and alternate.lower() != title.lower():
        return _summary_by_title(alternate, query, city)
    return None


def _fetch_wikipedia(poi: Optional[PoiSource], business: Optional[BusinessSource],
                     query: str, city: str) -> Optional[EncyclopediaSummary]:
    title = None
    if poi is not None:
        title = _wikipedia_title(poi.wikipedia) or (poi.name or None)
    elif business is not None:
        title = business.name or None
    if title is None:
        title = query

    summary = _request_summary(title, query, city)
    if summary is None and title != query:
        summary = _request_summary(query, query, city)
    return summary


# ---------------------------------------------------------------------------
# OpenWeather
# ---------------------------------------------------------------------------

def _fetch_weather(coords: GeoPoint, query: str, city: str) -> Optional[Weather]:
    api_key = get_openweather_key()
    if not api_key:
        return None

    params = {"lat": coords.lat, "lon": coords.lon, "appid": api_key, "units": "imperial"}
    data = _request_json(_WEATHER_URL, params, stage="openweather", query=query, city=city)
    if not isinstance(data, dict):
        return None

    main = data.get("main") if isinstance(data.get("main"), dict) else {}
    conditions = ""
    entries = data.get("weather")
    if isinstance(entries, list):
        for entry in entries:
            if isinstance(entry, dict) and _clean(entry.get("description")):
                conditions = _sentence(_clean(entry["description"]))
                break

    updated_at = ""
    stamp = _to_float(data.get("dt"))
    if stamp is not None:
        try:
            updated_at = datetime.fromtimestamp(stamp, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError) as exc:
            log.warning("Weather timestamp unreadable stage=parse_timestamp query=%r: %s",
                        query, exc)
    city_id = _to_float(data.get("id"))

    return Weather(
        temperature=_to_float(main.get("temp")),
        feels_like=_to_float(main.get("feels_like")),
        conditions=conditions,
        updated_at=updated_at or _now(),
        source_url=(f"https://openweathermap.org/city/{int(city_id)}"
                    if city_id is not None else "https://openweathermap.org/"),
    )


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MergeRule:
    """Copy ``field`` from ``source`` into the record.

    The write happens only when the source has a value and the record field is
    empty, or currently owned by one of ``overrides``.
    """

    source: str
    field: str
    overrides: tuple[str, ...] = ()


_CONTACT_FIELDS = ("address", "hours", "phone", "website")

_MERGE_RULES: tuple[MergeRule, ...] = (
    MergeRule("opentripmap", "name"),
    MergeRule("opentripmap", "category"),
    MergeRule("opentripmap", "description"),
    MergeRule("opentripmap", "coordinates", overrides=("context",)),
    MergeRule("opentripmap", "address", overrides=("context",)),
    MergeRule("opentripmap", "hours"),
    MergeRule("opentripmap", "phone"),
    MergeRule("opentripmap", "website"),
    MergeRule("opentripmap", "price"),
    MergeRule("opentripmap", "source_url"),
    MergeRule("tripadvisor", "name", overrides=("opentripmap",)),
    MergeRule("tripadvisor", "category", overrides=("opentripmap",)),
    MergeRule("tripadvisor", "description", overrides=("opentripmap",)),
    MergeRule("tripadvisor", "coordinates", overrides=("context", "opentripmap")),
    MergeRule("tripadvisor", "address", overrides=("context", "opentripmap")),
    MergeRule("tripadvisor", "hours", overrides=("opentripmap",)),
    MergeRule("tripadvisor", "phone", overrides=("opentripmap",)),
    MergeRule("tripadvisor", "website", overrides=("opentripmap",)),
    MergeRule("tripadvisor", "rating", overrides=("opentripmap",)),
    MergeRule("tripadvisor", "price", overrides=("opentripmap",)),
    MergeRule("tripadvisor", "source_url", overrides=("opentripmap",)),
    MergeRule("wikipedia", "description"),
    MergeRule("wikipedia", "source_url"),
)


def _get_field(record: PlaceRecord, name: str) -> Any:
    if name in _CONTACT_FIELDS:
        return getattr(record.contact, name)
    return getattr(record, name)


def _set_field(record: PlaceRecord, name: str, value: Any) -> None:
    if name in _CONTACT_FIELDS:
        setattr(record.contact, name, value)
    else:
        setattr(record, name, value)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def apply_merge_rules(record: PlaceRecord, owners: dict[str, str],
                      contributions: dict[str, PlaceDetail]) -> None:
    """Evaluate ``_MERGE_RULES`` in order against the available sources."""
    for rule in _MERGE_RULES:
        detail = contributions.get(rule.source)
        if detail is None:
            continue
        value = getattr(detail, rule.field)
        if _is_empty(value):
            continue
        current = _get_field(record, rule.field)
        if _is_empty(current) or owners.get(rule.field) in rule.overrides:
            _set_field(record, rule.field, value)
            owners[rule.field] = rule.source


def _wikipedia_detail(summary: EncyclopediaSummary) -> PlaceDetail:
    return PlaceDetail(description=summary.extract, source_url=summary.url)


# ---------------------------------------------------------------------------
# Core public API
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _assemble(query: str, ctx: PlaceContext) -> PlaceRecord:
    coords = _resolve_coordinates(query, ctx)
    record = PlaceRecord(
        query=query,
        contact=Contact(address=ctx.address or (coords.display_name if coords else "")),
        coordinates=coords,
        last_checked=_now(),
    )
    owners: dict[str, str] = {}
    if record.contact.address:
        owners["address"] = "context"
    if coords is not None:
        owners["coordinates"] = "context"
    contributions: dict[str, PlaceDetail] = {}

    poi = _fetch_opentripmap(query, ctx, coords)
    if poi is not None:
        contributions["opentripmap"], record.sources.opentripmap = poi
        record.matched = True
        apply_merge_rules(record, owners, contributions)

    business = _fetch_tripadvisor(query, ctx, record.coordinates)
    if business is not None:
        contributions["tripadvisor"], record.sources.tripadvisor = business
        record.matched = True

    summary = _fetch_wikipedia(record.sources.opentripmap, record.sources.tripadvisor,
                               query, ctx.city)
    if summary is not None:
        record.sources.wikipedia = summary
        contributions["wikipedia"] = _wikipedia_detail(summary)
    apply_merge_rules(record, owners, contributions)

    if record.coordinates is not None:
        record.weather = _fetch_weather(record.coordinates, query, ctx.city)

    return record


def fetch_place_data(
    query: str,
    context: Optional[Dict[str, Any]] = None,
    cache: TTLCache | None = None,
    flight: SingleFlight | None = None,
) -> PlaceRecord:
    """Assemble (or serve from cache) the live record for *query*.

    Raises ValueError for a blank query; never raises for source failures.
    """
    query = (query or "").strip()
    if not query:
        raise ValueError("Query is required.")

    ctx = normalize_context(context)
    signature = cache_signature("fetch_place_data",
                                {"q": query.lower(), "context": ctx.as_signature()})
    payload = cached_call(
        cache if cache is not None else place_cache,
        flight if flight is not None else single_flight,
        signature,
        lambda: _assemble(query, ctx).to_dict(),
    )
    return PlaceRecord.from_dict(payload)
