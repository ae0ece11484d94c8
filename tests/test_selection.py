"""
Unit tests for agents/selection.py

Tests cover:
- entity_key precedence (url → name slug → hash)
- resolve_entities() dedupe, enrichment, quality floor, id assignment
- score_entity() weights
- select_entities() primaries / fallbacks / padding
- derive_details() duration, slot times, summary, highlights
- refine_schedule()
"""
from datetime import datetime, timedelta

import pytest

import selection as sel
from trip_models import (
    Candidate, CanonicalEntity, Contact, EncyclopediaSummary,
    Filter, GeoPoint, PlaceRecord, PlaceSources, Weather,
)


def _record(name, url="", rating=None, coords=True, matched=True, **kwargs):
    return PlaceRecord(
        query=name, matched=matched, name=name, source_url=url, rating=rating,
        coordinates=GeoPoint(lat=32.0, lon=-81.0) if coords else None,
        **kwargs,
    )


def _candidate(record, city="Savannah, GA", category="historic landmark", leg_index=0, **filter_kwargs):
    return Candidate(city=city, filter=Filter(category=category, **filter_kwargs),
                     query=record.query, record=record, leg_index=leg_index)


def _entity(entity_id, city="Savannah, GA", score=1.0, name=None, **kwargs):
    return CanonicalEntity(entity_id=entity_id, key=entity_id, city=city, leg_index=0,
                           name=name or entity_id, score=score, **kwargs)


# ---------------------------------------------------------------------------
# entity_key
# ---------------------------------------------------------------------------

class TestEntityKey:
    def test_prefers_lowercased_url(self):
        record = _record("Forsyth Park", url="https://TripAdvisor.com/Forsyth")
        assert sel.entity_key("Savannah, GA", record) == "https://tripadvisor.com/forsyth"

    def test_name_slug_without_url(self):
        assert sel.entity_key("Savannah, GA", _record("Forsyth Park")) == "savannah-ga:forsyth-park"

    def test_hash_when_name_has_no_slug(self):
        key = sel.entity_key("Savannah, GA", _record("東京タワー"))
        assert key.startswith("savannah-ga:")
        assert len(key.split(":", 1)[1]) == 40

    def test_stable_across_calls(self):
        record = _record("Forsyth Park")
        assert sel.entity_key("Savannah", record) == sel.entity_key("Savannah", record)


# ---------------------------------------------------------------------------
# resolve_entities
# ---------------------------------------------------------------------------

class TestResolveEntities:
    def test_repeats_fold_and_accumulate_filters(self):
        first = _record("Forsyth Park", rating=None)
        second = _record("Forsyth Park", rating=4.5, price="Free",
                         contact=Contact(phone="555"))
        entities = sel.resolve_entities([
            _candidate(first, category="park"),
            _candidate(second, category="family friendly"),
        ])
        assert len(entities) == 1
        entity = entities[0]
        assert entity.rating == 4.5
        assert entity.price == "Free"
        assert entity.contact.phone == "555"
        assert [f.category for f in entity.filters] == ["park", "family friendly"]

    def test_drops_without_coordinates(self):
        entities = sel.resolve_entities([_candidate(_record("Ghost Tour", coords=False))])
        assert entities == []

    def test_drops_low_rating_but_keeps_unrated(self):
        entities = sel.resolve_entities([
            _candidate(_record("Bad Diner", rating=2.4)),
            _candidate(_record("Borderline", rating=2.5)),
            _candidate(_record("Unrated Square")),
        ])
        assert [e.name for e in entities] == ["Borderline", "Unrated Square"]

    def test_no_emitted_entity_violates_quality_floor(self):
        records = [
            _record(f"Place {i}", rating=r, coords=c)
            for i, (r, c) in enumerate([(1.0, True), (4.0, False), (None, True), (3.0, True), (2.49, True)])
        ]
        for entity in sel.resolve_entities([_candidate(r) for r in records]):
            assert entity.coordinates is not None
            assert entity.rating is None or entity.rating >= 2.5

    def test_unmatched_lookups_are_skipped(self):
        assert sel.resolve_entities([_candidate(_record("museum", matched=False))]) == []

    def test_ids_per_city_in_first_seen_order(self):
        entities = sel.resolve_entities([
            _candidate(_record("Forsyth Park")),
            _candidate(_record("Rainbow Row"), city="Charleston, SC", leg_index=1),
            _candidate(_record("Mercer House")),
        ])
        assert [e.entity_id for e in entities] == ["savannah-ga-1", "charleston-sc-1", "savannah-ga-2"]

    def test_scores_are_assigned(self):
        entities = sel.resolve_entities([_candidate(_record("Forsyth Park", rating=4.0))])
        assert entities[0].score == pytest.approx(1.5 + 4.0 + 1.2)


# ---------------------------------------------------------------------------
# score_entity
# ---------------------------------------------------------------------------

class TestScoreEntity:
    def test_unrated_baseline(self):
        assert sel.score_entity(_entity("a")) == 1.0

    def test_rating_capped_at_five(self):
        assert sel.score_entity(_entity("a", rating=7.0)) == pytest.approx(6.5)

    def test_all_bonuses(self):
        entity = _entity(
            "a", rating=4.0, price="$$",
            filters=[Filter(category="museum"), Filter(category="history")],
            sources=PlaceSources(wikipedia=EncyclopediaSummary(title="X")),
            weather=Weather(temperature=70.0),
        )
        assert sel.score_entity(entity) == pytest.approx(5.5 + 2.4 + 0.4 + 0.7 + 0.3)


# ---------------------------------------------------------------------------
# select_entities
# ---------------------------------------------------------------------------

class TestSelectEntities:
    def test_savannah_primary_and_fallback(self):
        low = _entity("savannah-ga-1", score=3.9)
        high = _entity("savannah-ga-2", score=6.2)
        selection = sel.select_entities([low, high], ["Savannah, GA"])
        assert selection.primaries == [high]
        assert selection.fallbacks["Savannah, GA"] == [low]

    def test_one_primary_per_city(self):
        cities = ["Savannah, GA", "Charleston, SC", "Atlanta, GA"]
        entities = []
        for city in cities:
            slug = sel.slugify(city)
            entities += [_entity(f"{slug}-1", city=city, score=5.0),
                         _entity(f"{slug}-2", city=city, score=4.0)]
        selection = sel.select_entities(entities, cities)
        assert [e.city for e in selection.primaries] == cities
        assert len(selection.primaries) == 3

    def test_empty_city_gets_no_primary(self):
        selection = sel.select_entities([_entity("savannah-ga-1")], ["Savannah, GA", "Nowhere"])
        assert len(selection.primaries) == 1
        assert "Nowhere" not in selection.fallbacks

    def test_ties_broken_by_entity_id(self):
        a = _entity("savannah-ga-2", score=5.0)
        b = _entity("savannah-ga-1", score=5.0)
        assert sel.select_entities([a, b]).primaries == [b]

    def test_padding_fills_to_target(self):
        entities = [_entity(f"savannah-ga-{i}", score=10 - i) for i in range(1, 8)]
        selection = sel.select_entities(entities, ["Savannah, GA"])
        # 7 entities → target 6: 1 primary + 5 padding, runner-up held as fallback
        assert len(selection.selected) == 6
        assert selection.fallbacks["Savannah, GA"][0].entity_id == "savannah-ga-2"
        assert [e.entity_id for e in selection.padding] == [f"savannah-ga-{i}" for i in range(3, 8)]

    def test_no_padding_when_primaries_reach_target(self):
        cities = [f"City {i}" for i in range(4)]
        entities = [_entity(f"city-{i}-1", city=c) for i, c in enumerate(cities)]
        selection = sel.select_entities(entities, cities)
        assert selection.padding == []

    def test_empty_input(self):
        selection = sel.select_entities([], ["Savannah, GA"])
        assert selection.is_empty()


# ---------------------------------------------------------------------------
# derive_details / refine_schedule
# ---------------------------------------------------------------------------

class TestDeriveDetails:
    @pytest.mark.parametrize("category,expected", [
        ("Museum", 120),
        ("Walking tour", 150),
        ("Seafood restaurant", 90),
        ("Gardens and parks", 110),
        ("Monument", 90),
    ])
    def test_duration_heuristic(self, intent, category, expected):
        entity = sel.derive_details(_entity("a", category=category), intent)
        assert entity.duration_minutes == expected

    def test_numeric_hint_overrides(self, intent):
        entity = _entity("a", category="Museum",
                         filters=[Filter(category="museum", duration_hint="1.5 hours")])
        assert sel.derive_details(entity, intent).duration_minutes == 90

    def test_minute_hint(self, intent):
        entity = _entity("a", filters=[Filter(category="park", duration_hint="45 minutes")])
        assert sel.derive_details(entity, intent).duration_minutes == 45

    @pytest.mark.parametrize("hint,expected", [
        ("1-2 hours", 90),
        ("2 to 3 hrs", 150),
        ("45-60 min", 52),
        ("1–2 h", 90),
    ])
    def test_range_hint_uses_midpoint(self, intent, hint, expected):
        entity = _entity("a", filters=[Filter(category="park", duration_hint=hint)])
        assert sel.derive_details(entity, intent).duration_minutes == expected

    def test_hint_without_unit_falls_back_to_category(self, intent):
        entity = _entity("a", category="Museum",
                         filters=[Filter(category="museum", duration_hint="about 2")])
        derived = sel.derive_details(entity, intent)
        assert derived.duration_minutes == 120
        assert derived.departure - derived.arrival == timedelta(minutes=120)

    @pytest.mark.parametrize("slot,hour", [
        ("morning", 9), ("evening", 18), ("late night", 20), ("afternoon", 13), ("", 13),
    ])
    def test_slot_times(self, intent, slot, hour):
        entity = _entity("a", filters=[Filter(category="x", time_of_day=slot)])
        derived = sel.derive_details(entity, intent)
        assert derived.arrival == datetime(2026, 5, 1, hour, 0)
        assert derived.departure == datetime(2026, 5, 1, hour + 1, 30)

    def test_summary_and_highlights(self, intent, place_record, landmark_filter):
        entity = sel.resolve_entities([Candidate(
            city="Savannah, GA", filter=landmark_filter, query="Forsyth Park", record=place_record,
        )])[0]
        sel.derive_details(entity, intent)
        assert entity.summary == "Forsyth Park is a large city park in Savannah, Georgia."
        assert entity.highlights == [
            "#2 of 150 things to do in Savannah",
            "Park in Savannah, Georgia",
            "Price level: Free",
            "Current weather: Clear sky, 78°F",
        ]
        assert entity.alignment == "Matches your interest in historic landmark."

    def test_generic_summary(self, intent):
        entity = sel.derive_details(_entity("a", name="Old Fort", category="Fort • Historic"), intent)
        assert entity.summary == "Old Fort is a fort to visit in Savannah, GA."

    def test_alignment_lists_modifiers(self, intent):
        entity = _entity("a", filters=[
            Filter(category="museum", modifiers=["family friendly"]),
            Filter(category="history", modifiers=["family friendly", "free"]),
        ])
        assert sel.derive_details(entity, intent).alignment == (
            "Matches your interest in museum, history (family friendly, free)."
        )


class TestRefineSchedule:
    def test_leg_window_tracks_selected_stops(self, intent):
        morning = _entity("a", filters=[Filter(category="museum", time_of_day="morning")])
        evening = _entity("b", filters=[Filter(category="dining", time_of_day="evening")])
        for e in (morning, evening):
            sel.derive_details(e, intent)
        selection = sel.Selection(primaries=[morning], padding=[evening])
        sel.refine_schedule(intent, selection)
        leg = intent.legs[0]
        assert leg.arrival == datetime(2026, 5, 1, 9, 0)
        assert leg.departure == datetime(2026, 5, 1, 19, 30)
        assert intent.window_end == datetime(2026, 5, 1, 19, 30)
