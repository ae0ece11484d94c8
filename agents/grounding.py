"""
Reconcile the model's narrative with the selected entities.

The narrative is never trusted for facts: every emitted stop is bound to a
CanonicalEntity whose live data overwrites the entity-authoritative fields.
Stops that cannot be bound are dropped; selected entities the model skipped
are appended with their own data.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from trip_models import (
    CanonicalEntity, Intent, Itinerary, LiveDetails, Selection, Stop,
)

try:
    from .selection import is_dining
except ImportError:
    from selection import is_dining  # type: ignore

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_INSUFFICIENT = "insufficient_data"

_NARRATIVE_FIELDS = ("description", "highlight", "fun_fact", "challenge", "food_pick")


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%dT%H:%M") if value is not None else ""


def duration_label(minutes: int) -> str:
    hours, mins = divmod(max(int(minutes), 0), 60)
    if hours and mins:
        return f"{hours} hr {mins} min"
    if hours:
        return f"{hours} hr"
    return f"{mins} min"


def _food_pick(entity: CanonicalEntity) -> str:
    if is_dining(entity):
        return f"Ask the staff at {entity.name} for the house specialty."
    return f"Look for a local cafe near {entity.name} in {entity.city}."


def _live_details(entity: CanonicalEntity) -> LiveDetails:
    return LiveDetails(
        coordinates=entity.coordinates,
        rating=entity.rating,
        price=entity.price,
        contact=entity.contact,
        source_url=entity.source_url,
        weather=entity.weather,
        last_checked=entity.last_checked,
    )


def bind_stop(stop: Stop, entity: CanonicalEntity, fill_narrative: bool = True) -> Stop:
    stop.entity_id = entity.entity_id
    stop.title = entity.name
    stop.city = entity.city
    stop.address = entity.contact.address
    stop.duration = duration_label(entity.duration_minutes)
    stop.arrival = _fmt_time(entity.arrival)
    stop.departure = _fmt_time(entity.departure)
    stop.category = entity.category
    stop.live_details = _live_details(entity)
    if not fill_narrative:
        return stop

    defaults = {
        "description": entity.summary,
        "highlight": entity.highlights[0] if entity.highlights else "",
        "fun_fact": entity.highlights[1] if len(entity.highlights) > 1 else "",
        "challenge": entity.alignment,
        "food_pick": _food_pick(entity),
    }
    for name in _NARRATIVE_FIELDS:
        if not getattr(stop, name):
            setattr(stop, name, defaults[name])
    return stop


def _narrative_stop(raw: Any) -> Stop:
    raw = raw if isinstance(raw, dict) else {}
    stop = Stop(entity_id=_text(raw.get("entity_id")), title=_text(raw.get("title")))
    for name in _NARRATIVE_FIELDS:
        setattr(stop, name, _text(raw.get(name)))
    return stop


class _Binder:
    """Tracks which entities have been used while walking the narrative."""

    def __init__(self, selection: Selection):
        self.selected = selection.selected
        self.fallbacks = selection.fallbacks
        self.known = {e.entity_id: e for e in self.selected + selection.all_fallbacks()}
        self.used: set[str] = set()

    def _unused(self, entity: Optional[CanonicalEntity]) -> Optional[CanonicalEntity]:
        if entity is not None and entity.entity_id not in self.used:
            return entity
        return None

    def _fallback_for(self, city: str) -> Optional[CanonicalEntity]:
        for entity in self.fallbacks.get(city, []):
            if entity.entity_id not in self.used:
                return entity
        return None

    def _title_match(self, title: str) -> Optional[CanonicalEntity]:
        folded = title.lower()
        if not folded:
            return None
        for entity in self.selected:
            if entity.name.lower() == folded:
                return entity
        return None

    def pick(self, stop: Stop) -> Optional[CanonicalEntity]:
        # known id
        entity = self._unused(self.known.get(stop.entity_id))
        if entity is not None:
            return entity

        # title names an unused selected entity
        titled = self._title_match(stop.title)
        entity = self._unused(titled)
        if entity is not None:
            return entity

        # next unused selected entity
        for candidate in self.selected:
            if candidate.entity_id not in self.used:
                return candidate

        # title names a used selected entity → its city's fallback
        if titled is not None:
            entity = self._fallback_for(titled.city)
            if entity is not None:
                return entity

        # fallback of the first selected entity's city
        if self.selected:
            return self._fallback_for(self.selected[0].city)
        return None

    def mark(self, entity: CanonicalEntity) -> None:
        self.used.add(entity.entity_id)


def _base_itinerary(intent: Intent) -> Itinerary:
    return Itinerary(
        start_location=intent.start_location,
        departure_datetime=_fmt_time(intent.departure),
        cities=intent.city_names(),
        preferences=intent.preferences,
    )


def merge_grounding(narrative: dict, selection: Selection, intent: Intent) -> Itinerary:
    """Bind each narrative stop to an entity; append any entity left unbound."""
    itinerary = _base_itinerary(intent)
    itinerary.route_overview = _text(narrative.get("route_overview"))
    itinerary.total_travel_time = _text(narrative.get("total_travel_time"))
    itinerary.summary = _text(narrative.get("summary"))
    itinerary.tips = _text(narrative.get("tips"))

    binder = _Binder(selection)
    raw_stops = narrative.get("stops")
    for raw in raw_stops if isinstance(raw_stops, list) else []:
        stop = _narrative_stop(raw)
        entity = binder.pick(stop)
        if entity is None:
            logger.info("Dropping unbindable narrative stop entity_id=%r title=%r",
                        stop.entity_id, stop.title)
            continue
        if stop.entity_id and stop.entity_id != entity.entity_id:
            logger.info("Rebound narrative stop entity_id=%r → %s",
                        stop.entity_id, entity.entity_id)
        binder.mark(entity)
        itinerary.stops.append(bind_stop(stop, entity))

    for entity in selection.selected:
        if entity.entity_id not in binder.used:
            binder.mark(entity)
            itinerary.stops.append(bind_stop(Stop(), entity, fill_narrative=False))

    return itinerary


def insufficient_data_itinerary(intent: Intent, reason: str) -> Itinerary:
    """Zero-stop itinerary returned when nothing verifiable could be planned."""
    itinerary = _base_itinerary(intent)
    itinerary.status = STATUS_INSUFFICIENT
    itinerary.route_overview = (
        f"We could not verify enough places to plan a route through "
        f"{', '.join(intent.city_names())}."
    )
    itinerary.summary = reason
    itinerary.tips = "Try broader preferences or a nearby larger city."
    return itinerary
