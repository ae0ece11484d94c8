"""
Entity resolution, scoring and stop selection.

Candidates (one per live lookup) are folded into CanonicalEntities, scored,
and split into per-city primaries, per-city fallbacks and cross-city padding.
Everything here is pure and deterministic: same candidates in, same selection
out.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, time, timedelta
from typing import Iterable, Optional

from trip_models import (
    Candidate, CanonicalEntity, Filter, Intent, PlaceRecord, Selection,
)

logger = logging.getLogger(__name__)

MIN_RATING = 2.5
MIN_STOPS = 4
MAX_STOPS = 6

_SLOT_TIMES = {
    "morning": time(9, 0),
    "evening": time(18, 0),
    "night": time(20, 0),
}
_DEFAULT_SLOT = time(13, 0)

# (category keywords, minutes), first match wins
_DURATION_RULES: tuple[tuple[tuple[str, ...], int], ...] = (
    (("museum", "gallery"), 120),
    (("tour",), 150),
    (("dining", "restaurant", "food", "cafe", "café", "bar", "bakery"), 90),
    (("park", "garden"), 110),
)
_DEFAULT_DURATION = 90

_HINT_RE = re.compile(
    r"(\d+(?:\.\d+)?)(?:\s*(?:-|\u2013|to)\s*(\d+(?:\.\d+)?))?\s*"
    r"(hours?|hrs?|h|minutes?|mins?|m)\b",
    re.IGNORECASE,
)

_DINING_WORDS = ("dining", "restaurant", "food", "cafe", "café", "bar", "bakery")


def slugify(value: str) -> str:
    """'Savannah, GA' → 'savannah-ga'."""
    value = (value or "").lower().strip()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    return value.strip("-")


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def entity_key(city: str, record: PlaceRecord) -> str:
    """Stable identity for (city, place) within one run."""
    url = (record.source_url or "").strip().lower()
    if url:
        return url
    city_slug = slugify(city)
    name_slug = slugify(record.name)
    if name_slug:
        return f"{city_slug}:{name_slug}"
    digest = hashlib.sha1((record.name or "").strip().lower().encode("utf-8")).hexdigest()
    return f"{city_slug}:{digest}"


def _new_entity(key: str, candidate: Candidate) -> CanonicalEntity:
    record = candidate.record
    return CanonicalEntity(
        entity_id="",
        key=key,
        city=candidate.city,
        leg_index=candidate.leg_index,
        name=record.name or candidate.query,
        category=record.category,
        description=record.description,
        contact=record.contact,
        coordinates=record.coordinates,
        rating=record.rating,
        price=record.price,
        source_url=record.source_url,
        last_checked=record.last_checked,
        sources=record.sources,
        weather=record.weather,
        filters=[candidate.filter],
    )


def _enrich(entity: CanonicalEntity, candidate: Candidate) -> None:
    record = candidate.record
    if entity.rating is None and record.rating is not None:
        entity.rating = record.rating
    if not entity.category and record.category:
        entity.category = record.category
    if not entity.description and record.description:
        entity.description = record.description
    if not entity.price and record.price:
        entity.price = record.price
    if entity.coordinates is None and record.coordinates is not None:
        entity.coordinates = record.coordinates
    if entity.weather is None and record.weather is not None:
        entity.weather = record.weather
    entity.contact.fill_from(record.contact)
    entity.sources.fill_from(record.sources)
    if candidate.filter not in entity.filters:
        entity.filters.append(candidate.filter)


def _passes_quality(entity: CanonicalEntity) -> bool:
    if entity.coordinates is None:
        logger.info("Dropping entity without coordinates name=%r city=%r",
                    entity.name, entity.city)
        return False
    if entity.rating is not None and entity.rating < MIN_RATING:
        logger.info("Dropping low-rated entity name=%r city=%r rating=%.1f",
                    entity.name, entity.city, entity.rating)
        return False
    return True


def resolve_entities(candidates: Iterable[Candidate]) -> list[CanonicalEntity]:
    """Fold candidates into deduplicated, quality-filtered, scored entities.

    Candidates whose lookup matched no source carry no place identity and
    are skipped.  Ids are ``<city-slug>-<n>`` in first-seen order.
    """
    by_key: dict[str, CanonicalEntity] = {}
    for candidate in candidates:
        record = candidate.record
        if not record.matched or not record.name:
            continue
        key = entity_key(candidate.city, record)
        existing = by_key.get(key)
        if existing is None:
            by_key[key] = _new_entity(key, candidate)
        else:
            _enrich(existing, candidate)

    survivors = [e for e in by_key.values() if _passes_quality(e)]

    counters: dict[str, int] = {}
    for entity in survivors:
        city_slug = slugify(entity.city) or "stop"
        counters[city_slug] = counters.get(city_slug, 0) + 1
        entity.entity_id = f"{city_slug}-{counters[city_slug]}"
        entity.score = score_entity(entity)
    return survivors


# ---------------------------------------------------------------------------
# Scoring / selection
# ---------------------------------------------------------------------------

def score_entity(entity: CanonicalEntity) -> float:
    if entity.rating is not None:
        score = 1.5 + min(entity.rating, 5.0)
    else:
        score = 1.0
    score += 1.2 * len(entity.filters)
    if entity.price:
        score += 0.4
    if entity.sources.wikipedia is not None:
        score += 0.7
    if entity.weather is not None:
        score += 0.3
    return round(score, 4)


def _rank_key(entity: CanonicalEntity) -> tuple:
    return (-entity.score, entity.entity_id)


def select_entities(entities: list[CanonicalEntity],
                    city_order: Optional[list[str]] = None) -> Selection:
    """Top entity per city → primary, runner-up → fallback, rest → padding pool."""
    groups: dict[str, list[CanonicalEntity]] = {}
    for city in city_order or []:
        groups.setdefault(city, [])
    for entity in entities:
        groups.setdefault(entity.city, []).append(entity)

    selection = Selection()
    pool: list[CanonicalEntity] = []
    for city, group in groups.items():
        if not group:
            continue
        ranked = sorted(group, key=_rank_key)
        selection.primaries.append(ranked[0])
        if len(ranked) > 1:
            selection.fallbacks[city] = [ranked[1]]
        pool.extend(ranked[2:])

    target = max(MIN_STOPS, min(len(entities), MAX_STOPS))
    if len(selection.primaries) < target:
        needed = target - len(selection.primaries)
        selection.padding = sorted(pool, key=_rank_key)[:needed]
    return selection


# ---------------------------------------------------------------------------
# Derived fields
# ---------------------------------------------------------------------------

def _hint_minutes(hint: str) -> Optional[int]:
    match = _HINT_RE.search(hint or "")
    if not match:
        return None
    low = float(match.group(1))
    # ranges ("1-2 hours") use the midpoint
    amount = (low + float(match.group(2))) / 2 if match.group(2) else low
    unit = match.group(3).lower()
    minutes = amount * 60 if unit.startswith("h") else amount
    return int(round(minutes)) if minutes > 0 else None


def estimate_duration(entity: CanonicalEntity) -> int:
    for filt in entity.filters:
        minutes = _hint_minutes(filt.duration_hint)
        if minutes:
            return minutes
    haystack = " ".join([entity.category] + [f.category for f in entity.filters]).lower()
    for words, minutes in _DURATION_RULES:
        if any(word in haystack for word in words):
            return minutes
    return _DEFAULT_DURATION


def _slot_time(filters: list[Filter]) -> time:
    for filt in filters:
        slot = (filt.time_of_day or "").strip().lower()
        for name, at in _SLOT_TIMES.items():
            if name in slot:
                return at
    return _DEFAULT_SLOT


def _leg_date(entity: CanonicalEntity, intent: Intent):
    if 0 <= entity.leg_index < len(intent.legs):
        arrival = intent.legs[entity.leg_index].arrival
        if arrival is not None:
            return arrival.date()
    return intent.departure.date()


def _summary(entity: CanonicalEntity) -> str:
    wiki = entity.sources.wikipedia
    if wiki is not None and wiki.extract:
        return wiki.extract
    if entity.description:
        return entity.description
    kind = entity.category.split(" • ")[0].lower() if entity.category else "place"
    return f"{entity.name} is a {kind} to visit in {entity.city}."


def _highlights(entity: CanonicalEntity) -> list[str]:
    items: list[str] = []
    business = entity.sources.tripadvisor
    if business is not None and business.ranking:
        items.append(business.ranking)
    wiki = entity.sources.wikipedia
    if wiki is not None and wiki.description:
        items.append(wiki.description[:1].upper() + wiki.description[1:])
    if entity.price:
        items.append(f"Price level: {entity.price}")
    if entity.weather is not None and entity.weather.describe():
        items.append(f"Current weather: {entity.weather.describe()}")

    seen: set[str] = set()
    unique: list[str] = []
    for item in items:
        folded = item.strip().lower()
        if folded and folded not in seen:
            seen.add(folded)
            unique.append(item.strip())
    return unique


def _alignment(entity: CanonicalEntity) -> str:
    categories: list[str] = []
    modifiers: list[str] = []
    for filt in entity.filters:
        if filt.category and filt.category not in categories:
            categories.append(filt.category)
        for modifier in filt.modifiers:
            if modifier and modifier not in modifiers:
                modifiers.append(modifier)
    if not categories:
        return f"A well-reviewed stop in {entity.city}."
    sentence = f"Matches your interest in {', '.join(categories)}"
    if modifiers:
        sentence += f" ({', '.join(modifiers)})"
    return sentence + "."


def derive_details(entity: CanonicalEntity, intent: Intent) -> CanonicalEntity:
    entity.duration_minutes = estimate_duration(entity)
    entity.arrival = datetime.combine(_leg_date(entity, intent), _slot_time(entity.filters))
    entity.departure = entity.arrival + timedelta(minutes=entity.duration_minutes)
    entity.summary = _summary(entity)
    entity.highlights = _highlights(entity)
    entity.alignment = _alignment(entity)
    return entity


def is_dining(entity: CanonicalEntity) -> bool:
    haystack = " ".join([entity.category] + [f.category for f in entity.filters]).lower()
    return any(word in haystack for word in _DINING_WORDS)


def refine_schedule(intent: Intent, selection: Selection) -> None:
    """Tighten each leg's window to the stops actually selected for it."""
    by_leg: dict[int, list[CanonicalEntity]] = {}
    for entity in selection.selected:
        if entity.arrival is None or entity.departure is None:
            continue
        by_leg.setdefault(entity.leg_index, []).append(entity)

    for index, leg in enumerate(intent.legs):
        stops = by_leg.get(index)
        if not stops:
            continue
        leg.arrival = min(e.arrival for e in stops)
        leg.departure = max(e.departure for e in stops)

    departures = [leg.departure for leg in intent.legs if leg.departure is not None]
    if departures:
        intent.window_end = max(departures)
