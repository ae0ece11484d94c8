"""
Grounded Trip Planner (litellm + live place data)

One generation request runs these steps in order:

  1. Intent normalisation      → parse departure, geocode start + cities
  2. Preference expansion      → 1 LLM call  (free text → per-city filters)
  3. Data acquisition          → parallel live lookups, no LLM
  4. Resolution + selection    → dedupe, quality floor, score, pick stops
  5. Narrative synthesis       → 1 LLM call  (grounded context only)
  6. Grounding merge           → bind narrative stops to verified entities

The LLM never supplies facts: step 5 only sees what steps 3-4 verified, and
step 6 overwrites every entity-authoritative field with live data.

Generation is wrapped in the itinerary cache, a single-flight lock per request
signature and the shared rate limiter.
"""

from __future__ import annotations

import copy
import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import litellm
from dateutil import parser as date_parser
from pydantic import BaseModel, Field, ValidationError

from settings import get_llm_model, get_llm_timeout, require_llm_credentials
from TripRequest import TripRequest
from trip_models import (
    Candidate, CityLeg, Filter, Intent, Itinerary, PreferencePlan, Selection,
)

try:
    from .GeocodeAgent import GeocodeError, geocode
    from .PlaceAgent import fetch_place_data
    from .grounding import insufficient_data_itinerary, merge_grounding
    from .resilience import (
        RetryExhausted, SingleFlight, SlidingWindowRateLimiter, TTLCache,
        TransientError, cache_signature, generation_limiter, itinerary_cache,
        retry_call, single_flight,
    )
    from .selection import (
        derive_details, refine_schedule, resolve_entities, select_entities,
    )
except ImportError:
    from GeocodeAgent import GeocodeError, geocode  # type: ignore
    from PlaceAgent import fetch_place_data  # type: ignore
    from grounding import insufficient_data_itinerary, merge_grounding  # type: ignore
    from resilience import (  # type: ignore
        RetryExhausted, SingleFlight, SlidingWindowRateLimiter, TTLCache,
        TransientError, cache_signature, generation_limiter, itinerary_cache,
        retry_call, single_flight,
    )
    from selection import (  # type: ignore
        derive_details, refine_schedule, resolve_entities, select_entities,
    )

logger = logging.getLogger(__name__)

# Silence litellm's own verbose logging
litellm.suppress_debug_info = True
# Drop params unsupported by the active model (e.g. response_format)
litellm.drop_params = True

MAX_WORKERS = 6
MAX_QUERIES_PER_FILTER = 3
MAX_FILTERS_PER_CITY = 4
LEG_HOURS = 6


# ---------------------------------------------------------------------------
# LLM plumbing
# ---------------------------------------------------------------------------

def _llm_name() -> str:
    """Return the litellm model string (provider/model format)."""
    return get_llm_model()


def _is_transient_llm(exc: BaseException) -> bool:
    return isinstance(exc, (
        TransientError,
        litellm.Timeout,
        litellm.RateLimitError,
        litellm.APIConnectionError,
        litellm.InternalServerError,
        litellm.ServiceUnavailableError,
    ))


def _llm_call(system_prompt: str, user_prompt: str, temperature: float = 0.7) -> str:
    """Make a single litellm.completion() call and return the text content.

    Timeouts and 5xx-class failures are retried with backoff; anything else
    (bad request, auth) surfaces immediately.
    """
    def _complete() -> str:
        response = litellm.completion(
            model=_llm_name(),
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            response_format={"type": "json_object"},
            timeout=get_llm_timeout(),
        )
        return response.choices[0].message.content or ""

    return retry_call(_complete, is_transient=_is_transient_llm, label="LLM completion")


def _safe_json_parse(text: str) -> Any:
    """Extract and parse JSON from an LLM response that may include markdown fences."""
    cleaned = (text or "").strip()
    if "```json" in cleaned:
        cleaned = cleaned.split("```json", 1)[1].split("```", 1)[0]
    elif "```" in cleaned:
        cleaned = cleaned.split("```", 1)[1].split("```", 1)[0]
    cleaned = cleaned.strip()
    if not cleaned.startswith(("{", "[")) and "{" in cleaned:
        cleaned = cleaned[cleaned.index("{"):cleaned.rindex("}") + 1]
    return json.loads(cleaned)


# ---------------------------------------------------------------------------
# Step 1: Intent normalisation (no LLM)
# ---------------------------------------------------------------------------

def _parse_departure(text: str, now: datetime) -> datetime:
    text = (text or "").strip()
    if text:
        try:
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            parsed = date_parser.parse(text, default=midnight)
            return parsed.replace(tzinfo=None)
        except (ValueError, OverflowError) as exc:
            logger.warning("Unparseable departure %r, using current time: %s", text, exc)
    else:
        logger.warning("No departure given, using current time")
    return now.replace(second=0, microsecond=0)


def _safe_geocode(text: str):
    try:
        return geocode(text)
    except GeocodeError as exc:
        logger.warning("Geocode failed stage=intent location=%r: %s", text, exc)
        return None


def normalize_intent(request: TripRequest, now: Optional[datetime] = None) -> Intent:
    """Parse and geocode the request; build a placeholder one-day-per-city schedule."""
    now = now or datetime.now()
    departure = _parse_departure(request.departure_datetime, now)
    start = request.start_location.strip()

    legs: list[CityLeg] = []
    cursor = departure
    for city in request.get_cities():
        legs.append(CityLeg(
            name=city,
            coordinates=_safe_geocode(city),
            arrival=cursor,
            departure=cursor + timedelta(hours=LEG_HOURS),
        ))
        cursor += timedelta(days=1)

    return Intent(
        start_location=start,
        start_coordinates=_safe_geocode(start),
        departure=departure,
        legs=legs,
        window_start=departure,
        window_end=legs[-1].departure if legs else departure,
        preferences=request.preferences.strip(),
    )


# ---------------------------------------------------------------------------
# Step 2: Preference expansion (1 LLM call)
# ---------------------------------------------------------------------------

class FilterReply(BaseModel):
    category: str = Field(min_length=1)
    keywords: List[str] = []
    time_of_day: str = ""
    duration_hint: str = ""
    modifiers: List[str] = []


class OverallReply(BaseModel):
    pace: str
    budget: str
    notes: str


class CityFiltersReply(BaseModel):
    city: str
    filters: List[FilterReply]


class PreferenceReply(BaseModel):
    overall: OverallReply = Field(alias="global")
    cities: List[CityFiltersReply]


_EXPANDER_SYSTEM = """\
You turn a traveller's free-text preferences into search filters for a place \
lookup service. You never name facts about places; you only describe what to \
look for. Always respond with valid JSON only."""


def default_filters() -> list[Filter]:
    return [
        Filter(category="historic landmark", time_of_day="morning"),
        Filter(category="museum", time_of_day="afternoon"),
        Filter(category="local dining", time_of_day="evening"),
    ]


def default_preference_plan(intent: Intent) -> PreferencePlan:
    return PreferencePlan(
        pace="moderate",
        budget="moderate",
        notes=intent.preferences,
        cities={city: default_filters() for city in intent.city_names()},
    )


def _match_city(name: str, cities: list[str]) -> Optional[str]:
    folded = name.strip().lower()
    for city in cities:
        if city.lower() == folded:
            return city
    for city in cities:
        if city.split(",")[0].strip().lower() == folded.split(",")[0].strip():
            return city
    return None


def _plan_from_payload(payload: dict, intent: Intent) -> PreferencePlan:
    cities = intent.city_names()
    overall = payload["global"]
    plan = PreferencePlan(
        pace=overall["pace"].strip() or "moderate",
        budget=overall["budget"].strip() or "moderate",
        notes=overall["notes"].strip() or intent.preferences,
    )
    for entry in payload["cities"]:
        city = _match_city(entry["city"], cities)
        if city is None:
            logger.info("Ignoring filters for unknown city %r", entry["city"])
            continue
        filters = [Filter.from_dict(f) for f in entry["filters"]][:MAX_FILTERS_PER_CITY]
        if filters and city not in plan.cities:
            plan.cities[city] = filters
    for city in cities:
        plan.cities.setdefault(city, default_filters())
    return plan


def expand_preferences(intent: Intent) -> PreferencePlan:
    """Translate free-text preferences into per-city filters.

    Never raises: any failure yields ``default_preference_plan``.
    """
    prompt = f"""Trip cities (in order): {json.dumps(intent.city_names())}
Traveller preferences: {intent.preferences or "none given"}

For each city return 2-4 filters. A filter has:
  category      short place type, e.g. "historic landmark", "museum", "local dining"
  keywords      search terms for that place type (may be empty)
  time_of_day   morning | afternoon | evening | night
  duration_hint e.g. "90 minutes", "2 hours" (may be empty)
  modifiers     qualifiers from the preferences, e.g. "family friendly", "free"

Return a single JSON object:
{{
  "global": {{"pace": "relaxed|moderate|packed", "budget": "low|moderate|high", "notes": "..."}},
  "cities": [{{"city": "<city exactly as given>", "filters": [ ... ]}}]
}}

Return ONLY valid JSON."""

    try:
        raw = _llm_call(_EXPANDER_SYSTEM, prompt, temperature=0.3)
        payload = _safe_json_parse(raw)
        payload = PreferenceReply.model_validate(payload).model_dump(by_alias=True)
        return _plan_from_payload(payload, intent)
    except Exception as exc:
        logger.warning("Preference expansion failed, using default filters: %s", exc)
        return default_preference_plan(intent)


# ---------------------------------------------------------------------------
# Step 3: Data acquisition (parallel, no LLM)
# ---------------------------------------------------------------------------

def _query_candidates(filt: Filter) -> list[str]:
    queries: list[str] = []
    seen: set[str] = set()
    for query in list(filt.keywords) + [filt.category]:
        query = (query or "").strip()
        if query and query.lower() not in seen:
            seen.add(query.lower())
            queries.append(query)
    return queries[:MAX_QUERIES_PER_FILTER]


def _city_context(leg: CityLeg) -> Dict[str, Any]:
    parts = [p.strip() for p in leg.name.split(",") if p.strip()]
    context: Dict[str, Any] = {
        "city": parts[0] if parts else leg.name,
        "region": parts[1] if len(parts) > 1 else "",
        "country": parts[2] if len(parts) > 2 else "",
    }
    if leg.coordinates is not None:
        context["latitude"] = leg.coordinates.lat
        context["longitude"] = leg.coordinates.lon
    return context


def acquire_candidates(intent: Intent, plan: PreferencePlan) -> list[Candidate]:
    """Fan out live lookups over (city × filter × query); results keep job order."""
    jobs: list[tuple[int, CityLeg, Filter, str, Dict[str, Any]]] = []
    for leg_index, leg in enumerate(intent.legs):
        context = _city_context(leg)
        for filt in plan.filters_for(leg.name):
            for query in _query_candidates(filt):
                jobs.append((leg_index, leg, filt, query, context))

    results: dict[int, Candidate] = {}
    if not jobs:
        return []

    with ThreadPoolExecutor(max_workers=MAX_WORKERS) as pool:
        futures = {
            pool.submit(fetch_place_data, query, context): position
            for position, (_, _, _, query, context) in enumerate(jobs)
        }
        for future in as_completed(futures):
            position = futures[future]
            leg_index, leg, filt, query, _ = jobs[position]
            try:
                record = future.result()
            except Exception as exc:
                logger.warning("Acquisition failed stage=acquire query=%r city=%r: %s",
                               query, leg.name, exc)
                continue
            results[position] = Candidate(
                city=leg.name, filter=filt, query=query,
                record=record, leg_index=leg_index,
            )

    return [results[position] for position in sorted(results)]


# ---------------------------------------------------------------------------
# Step 5: Narrative synthesis (1 LLM call)
# ---------------------------------------------------------------------------

class StopReply(BaseModel):
    entity_id: str
    title: str
    description: str
    highlight: str
    fun_fact: str
    challenge: str
    food_pick: str


class NarrativeReply(BaseModel):
    route_overview: str
    total_travel_time: str
    summary: str
    tips: str
    stops: List[StopReply]


_SYNTH_SYSTEM = """\
You are a travel writer working strictly from verified data. Use ONLY the \
places, addresses, ratings, prices and facts in the supplied context. Never \
invent places, opening hours, prices or history that the context does not \
contain. Every stop MUST use an entity_id copied exactly from the context. \
Always respond with valid JSON only."""


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value is not None else ""


def _entity_context(entity) -> dict:
    return {
        "entity_id": entity.entity_id,
        "name": entity.name,
        "city": entity.city,
        "category": entity.category,
        "address": entity.contact.address,
        "rating": entity.rating,
        "price": entity.price,
        "summary": entity.summary,
        "highlights": entity.highlights,
        "alignment": entity.alignment,
        "duration_minutes": entity.duration_minutes,
        "arrival": _fmt(entity.arrival),
        "departure": _fmt(entity.departure),
        "weather": entity.weather.describe() if entity.weather else "",
    }


def _grounded_context(intent: Intent, plan: PreferencePlan, selection: Selection) -> dict:
    return {
        "trip": {
            "start_location": intent.start_location,
            "departure": _fmt(intent.departure),
            "window_start": _fmt(intent.window_start),
            "window_end": _fmt(intent.window_end),
            "preferences": intent.preferences,
            "pace": plan.pace,
            "budget": plan.budget,
            "notes": plan.notes,
        },
        "schedule": [
            {"city": leg.name, "arrival": _fmt(leg.arrival), "departure": _fmt(leg.departure)}
            for leg in intent.legs
        ],
        "selected": [_entity_context(e) for e in selection.selected],
        "fallbacks": [_entity_context(e) for e in selection.all_fallbacks()],
    }


def synthesize_narrative(intent: Intent, plan: PreferencePlan,
                         selection: Selection) -> Optional[dict]:
    """Ask the model for narrative text over the verified selection.

    Returns None when the reply cannot be parsed or fails the schema, or the
    provider rejects the request.  Exhausted transient retries propagate.
    """
    context = _grounded_context(intent, plan, selection)
    prompt = f"""GROUNDED CONTEXT (the only facts you may use):
{json.dumps(context, indent=2, default=str)}

Write the itinerary in visiting order, one stop per selected entity. Use a \
fallback entity only to replace a selected one that does not fit.

Return a single JSON object:
{{
  "route_overview": "1-2 sentences on the route between cities",
  "total_travel_time": "e.g. '2 days, about 9 hours of activities'",
  "summary": "2-3 sentence overview",
  "tips": "practical tips drawn from the context",
  "stops": [
    {{"entity_id": "<id from context>", "title": "<entity name>", "description": "...",
      "highlight": "...", "fun_fact": "...", "challenge": "...", "food_pick": "..."}}
  ]
}}

Return ONLY valid JSON."""

    try:
        raw = _llm_call(_SYNTH_SYSTEM, prompt, temperature=0.6)
    except RetryExhausted:
        raise
    except Exception as exc:
        logger.warning("Narrative LLM call rejected: %s", exc)
        return None

    try:
        narrative = _safe_json_parse(raw)
        narrative = NarrativeReply.model_validate(narrative).model_dump()
    except (ValueError, ValidationError) as exc:
        logger.warning("Narrative failed validation: %s", exc)
        return None
    return narrative


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def _run_pipeline(request: TripRequest) -> Itinerary:
    intent = normalize_intent(request)
    plan = expand_preferences(intent)
    candidates = acquire_candidates(intent, plan)
    entities = resolve_entities(candidates)
    selection = select_entities(entities, intent.city_names())
    logger.info("Selected %d primaries, %d padding, %d fallbacks from %d candidates",
                len(selection.primaries), len(selection.padding),
                len(selection.all_fallbacks()), len(candidates))

    if selection.is_empty():
        return insufficient_data_itinerary(
            intent, "No verified places passed the quality checks for this trip.",
        )

    for entity in selection.selected + selection.all_fallbacks():
        derive_details(entity, intent)
    refine_schedule(intent, selection)

    narrative = synthesize_narrative(intent, plan, selection)
    if narrative is None:
        return insufficient_data_itinerary(
            intent, "The generated itinerary could not be verified against live data.",
        )
    return merge_grounding(narrative, selection, intent)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class TripPlanner:
    """High-level wrapper around the grounding pipeline.

    The cache, single-flight registry and rate limiter default to the
    process-wide shared stores; pass your own to isolate an instance.
    """

    def __init__(
        self,
        cache: TTLCache | None = None,
        flight: SingleFlight | None = None,
        limiter: SlidingWindowRateLimiter | None = None,
    ):
        self.cache = cache if cache is not None else itinerary_cache
        self.flight = flight if flight is not None else single_flight
        self.limiter = limiter if limiter is not None else generation_limiter

    def generate_itinerary(self, request: TripRequest | Dict[str, Any]) -> Dict[str, Any]:
        """Run (or serve from cache) the full pipeline for *request*.

        Raises ValueError, ConfigurationError, RateLimitExceeded or
        RetryExhausted; otherwise always returns a complete itinerary dict.
        """
        if not isinstance(request, TripRequest):
            request = TripRequest.from_payload(request)
        request.validate()
        require_llm_credentials()

        signature = cache_signature("generate_itinerary", request.signature_payload())
        cached = self.cache.get(signature)
        if cached is not None:
            logger.info("Itinerary cache hit %s", signature[:12])
            return copy.deepcopy(cached)

        with self.flight.hold(signature):
            cached = self.cache.get(signature)
            if cached is not None:
                return copy.deepcopy(cached)
            self.limiter.acquire()
            itinerary = _run_pipeline(request)
            payload = itinerary.to_dict()
            if itinerary.status == "ok":
                self.cache.set(signature, copy.deepcopy(payload))
            return payload

    @staticmethod
    def live_lookup(query: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Standalone place lookup (cached like any acquisition call)."""
        return fetch_place_data(query, context).to_dict()


planning_agent = TripPlanner()
