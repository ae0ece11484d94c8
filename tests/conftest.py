import sys
import os
import pytest
from datetime import datetime

# Project root: needed for settings, trip_models, TripRequest
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
# agents/ subdir: imported directly so PlaceAgent, selection, planning_agent
# can be imported by name in tests without going through the package.
_agents_dir = os.path.join(_root, "agents")
for _p in (_root, _agents_dir):
    if _p not in sys.path:
        sys.path.insert(0, _p)

import resilience
from TripRequest import TripRequest
from trip_models import (
    BusinessSource, CityLeg, Contact, EncyclopediaSummary, Filter, GeoPoint,
    Intent, PlaceRecord, PlaceSources, Weather,
)


@pytest.fixture(autouse=True)
def _fresh_shared_stores():
    """Shared caches and the rate limiter are process-wide; isolate each test."""
    for store in (resilience.itinerary_cache, resilience.place_cache, resilience.geocode_cache):
        store.clear()
    resilience.generation_limiter.reset()
    yield
    for store in (resilience.itinerary_cache, resilience.place_cache, resilience.geocode_cache):
        store.clear()
    resilience.generation_limiter.reset()


@pytest.fixture
def trip_request():
    return TripRequest(
        start_location="Atlanta, GA",
        departure_datetime="2026-05-01 08:00",
        cities=["Savannah, GA"],
        preferences="history and seafood, family friendly",
    )


@pytest.fixture
def multi_city_request():
    return TripRequest(
        start_location="Atlanta, GA",
        departure_datetime="2026-05-01 08:00",
        cities=["Savannah, GA", "Charleston, SC"],
        preferences="architecture",
    )


@pytest.fixture
def intent():
    departure = datetime(2026, 5, 1, 8, 0)
    return Intent(
        start_location="Atlanta, GA",
        start_coordinates=GeoPoint(lat=33.749, lon=-84.388, display_name="Atlanta"),
        departure=departure,
        legs=[
            CityLeg(
                name="Savannah, GA",
                coordinates=GeoPoint(lat=32.0809, lon=-81.0912, display_name="Savannah"),
                arrival=departure,
                departure=datetime(2026, 5, 1, 14, 0),
            ),
        ],
        window_start=departure,
        window_end=datetime(2026, 5, 1, 14, 0),
        preferences="history and seafood, family friendly",
    )


@pytest.fixture
def place_record():
    """A fully-populated lookup result for a Savannah landmark."""
    return PlaceRecord(
        query="Forsyth Park",
        matched=True,
        name="Forsyth Park",
        category="Gardens and parks • Historic",
        description="A 30-acre city park in the historic district.",
        contact=Contact(address="Gaston St & Drayton St, Savannah, GA", hours="Open 24 hours"),
        coordinates=GeoPoint(lat=32.0674, lon=-81.0952, display_name="Forsyth Park"),
        rating=4.5,
        price="Free",
        source_url="https://www.tripadvisor.com/Attraction_Review-forsyth_park",
        last_checked="2026-05-01T08:00:00+00:00",
        sources=PlaceSources(
            tripadvisor=BusinessSource(
                id="104556", url="https://www.tripadvisor.com/Attraction_Review-forsyth_park",
                name="Forsyth Park", rating=4.5, review_count=12000,
                ranking="#2 of 150 things to do in Savannah",
            ),
            wikipedia=EncyclopediaSummary(
                title="Forsyth Park",
                description="park in Savannah, Georgia",
                extract="Forsyth Park is a large city park in Savannah, Georgia.",
                url="https://en.wikipedia.org/wiki/Forsyth_Park",
            ),
        ),
        weather=Weather(temperature=78.4, conditions="Clear sky"),
    )


@pytest.fixture
def landmark_filter():
    return Filter(category="historic landmark", time_of_day="morning")
