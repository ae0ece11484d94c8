"""
Shared data structures for the grounding pipeline.

Upstream JSON is normalised into these types once, at the adapter boundary
(GeocodeAgent / PlaceAgent / planning_agent). Scoring and merging only ever
see these classes, never raw response dicts.

Records that are cached or returned to callers carry ``@dataclass_json`` so
they round-trip through ``to_dict()`` / ``from_dict()``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from dataclasses_json import dataclass_json


# ---------------------------------------------------------------------------
# Live data (acquisition output)
# ---------------------------------------------------------------------------

@dataclass_json
@dataclass
class GeoPoint:
    lat: float
    lon: float
    display_name: str = ""


@dataclass_json
@dataclass
class Contact:
    address: str = ""
    hours: str = ""
    phone: str = ""
    website: str = ""

    def fill_from(self, other: "Contact") -> None:
        """Copy non-empty fields of *other* into empty fields of self."""
        for key in ("address", "hours", "phone", "website"):
            if not getattr(self, key) and getattr(other, key):
                setattr(self, key, getattr(other, key))


@dataclass_json
@dataclass
class Weather:
    temperature: Optional[float] = None
    feels_like: Optional[float] = None
    conditions: str = ""
    updated_at: str = ""
    source_url: str = ""

    def describe(self) -> str:
        parts = []
        if self.conditions:
            parts.append(self.conditions)
        if self.temperature is not None:
            parts.append(f"{round(self.temperature)}°F")
        return ", ".join(parts)


@dataclass_json
@dataclass
class PoiSource:
    id: str = ""
    url: str = ""
    name: str = ""
    kinds: str = ""
    rate: Optional[float] = None
    wikipedia: str = ""


@dataclass_json
@dataclass
class BusinessSource:
    id: str = ""
    url: str = ""
    name: str = ""
    rating: Optional[float] = None
    review_count: Optional[int] = None
    ranking: str = ""
    rating_image_url: str = ""


@dataclass_json
@dataclass
class EncyclopediaSummary:
    title: str = ""
    description: str = ""
    extract: str = ""
    url: str = ""
    last_modified: str = ""


@dataclass_json
@dataclass
class PlaceSources:
    opentripmap: Optional[PoiSource] = None
    tripadvisor: Optional[BusinessSource] = None
    wikipedia: Optional[EncyclopediaSummary] = None

    def fill_from(self, other: "PlaceSources") -> None:
        for key in ("opentripmap", "tripadvisor", "wikipedia"):
            if getattr(self, key) is None and getattr(other, key) is not None:
                setattr(self, key, getattr(other, key))


@dataclass
class PlaceDetail:
    """Flattened fields one source contributes to a PlaceRecord merge."""

    name: str = ""
    category: str = ""
    description: str = ""
    coordinates: Optional[GeoPoint] = None
    address: str = ""
    hours: str = ""
    phone: str = ""
    website: str = ""
    rating: Optional[float] = None
    price: str = ""
    source_url: str = ""


@dataclass_json
@dataclass
class PlaceRecord:
    query: str
    matched: bool = False
    name: str = ""
    category: str = ""
    description: str = ""
    contact: Contact = field(default_factory=Contact)
    coordinates: Optional[GeoPoint] = None
    rating: Optional[float] = None
    price: str = ""
    source_url: str = ""
    last_checked: str = ""
    sources: PlaceSources = field(default_factory=PlaceSources)
    weather: Optional[Weather] = None


# ---------------------------------------------------------------------------
# Request-side structures
# ---------------------------------------------------------------------------

@dataclass
class CityLeg:
    name: str
    coordinates: Optional[GeoPoint] = None
    arrival: Optional[datetime] = None
    departure: Optional[datetime] = None


@dataclass
class Intent:
    start_location: str
    start_coordinates: Optional[GeoPoint]
    departure: datetime
    legs: list[CityLeg]
    window_start: datetime
    window_end: datetime
    preferences: str = ""

    def city_names(self) -> list[str]:
        return [leg.name for leg in self.legs]


@dataclass_json
@dataclass
class Filter:
    category: str
    keywords: list[str] = field(default_factory=list)
    time_of_day: str = ""
    duration_hint: str = ""
    modifiers: list[str] = field(default_factory=list)


@dataclass_json
@dataclass
class PreferencePlan:
    pace: str = "moderate"
    budget: str = "moderate"
    notes: str = ""
    cities: dict[str, list[Filter]] = field(default_factory=dict)

    def filters_for(self, city: str) -> list[Filter]:
        return self.cities.get(city, [])


# ---------------------------------------------------------------------------
# Resolution / selection
# ---------------------------------------------------------------------------

@dataclass
class Candidate:
    city: str
    filter: Filter
    query: str
    record: PlaceRecord
    leg_index: int = 0


@dataclass
class CanonicalEntity:
    entity_id: str
    key: str
    city: str
    leg_index: int
    name: str
    category: str = ""
    description: str = ""
    contact: Contact = field(default_factory=Contact)
    coordinates: Optional[GeoPoint] = None
    rating: Optional[float] = None
    price: str = ""
    source_url: str = ""
    last_checked: str = ""
    sources: PlaceSources = field(default_factory=PlaceSources)
    weather: Optional[Weather] = None
    filters: list[Filter] = field(default_factory=list)
    score: float = 0.0
    summary: str = ""
    highlights: list[str] = field(default_factory=list)
    alignment: str = ""
    duration_minutes: int = 90
    arrival: Optional[datetime] = None
    departure: Optional[datetime] = None


@dataclass
class Selection:
    primaries: list[CanonicalEntity] = field(default_factory=list)
    fallbacks: dict[str, list[CanonicalEntity]] = field(default_factory=dict)
    padding: list[CanonicalEntity] = field(default_factory=list)

    @property
    def selected(self) -> list[CanonicalEntity]:
        return self.primaries + self.padding

    def all_fallbacks(self) -> list[CanonicalEntity]:
        return [e for group in self.fallbacks.values() for e in group]

    def is_empty(self) -> bool:
        return not self.primaries


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

@dataclass_json
@dataclass
class LiveDetails:
    coordinates: Optional[GeoPoint] = None
    rating: Optional[float] = None
    price: str = ""
    contact: Contact = field(default_factory=Contact)
    source_url: str = ""
    weather: Optional[Weather] = None
    last_checked: str = ""


@dataclass_json
@dataclass
class Stop:
    entity_id: str = ""
    title: str = ""
    city: str = ""
    address: str = ""
    duration: str = ""
    arrival: str = ""
    departure: str = ""
    category: str = ""
    description: str = ""
    highlight: str = ""
    fun_fact: str = ""
    challenge: str = ""
    food_pick: str = ""
    live_details: Optional[LiveDetails] = None


@dataclass_json
@dataclass
class Itinerary:
    route_overview: str = ""
    total_travel_time: str = ""
    summary: str = ""
    tips: str = ""
    start_location: str = ""
    departure_datetime: str = ""
    cities: list[str] = field(default_factory=list)
    preferences: str = ""
    status: str = "ok"
    stops: list[Stop] = field(default_factory=list)
