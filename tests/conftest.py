import os
import sys

# Configure before any project module reads config.
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['JWT_SECRET_KEY'] = 'test-secret'
os.environ['REDIS_URL'] = ''
os.environ.setdefault('ANTHROPIC_API_KEY', 'test-key')

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import threading  # noqa: E402

import pytest  # noqa: E402

from schemas import DayItem, DayPlan, DaySummary, LatLng, RouteSummary, Waypoint  # noqa: E402

DELHI = (28.6139, 77.2090)
AGRA = (27.1767, 78.0081)
VARANASI = (25.3176, 82.9739)
SHILLONG = (25.5788, 91.8933)


def make_waypoint(wp_id, role='intermediate', coords=None, name=None):
    lat, lng = coords or (0.0, 0.0)
    return Waypoint(id=wp_id, name=name or wp_id.title(), lat=lat, lng=lng, role=role)


def make_day(day_id, item_ids, distance=0.0, duration=0.0, cost=0.0, date=None):
    return DayPlan(
        id=day_id,
        date=date,
        items=[DayItem(id=i, kind='note', title=i) for i in item_ids],
        summary=DaySummary(distance_km=distance, duration_min=duration, estimated_cost=cost),
    )


@pytest.fixture
def delhi_shillong():
    return [
        make_waypoint('start', 'start', DELHI, 'Delhi'),
        make_waypoint('end', 'end', SHILLONG, 'Shillong'),
    ]


@pytest.fixture
def four_stop_route():
    return [
        make_waypoint('start', 'start', DELHI, 'Delhi'),
        make_waypoint('wp-agra', 'intermediate', AGRA, 'Agra'),
        make_waypoint('wp-varanasi', 'intermediate', VARANASI, 'Varanasi'),
        make_waypoint('end', 'end', SHILLONG, 'Shillong'),
    ]


@pytest.fixture
def route_1800():
    return RouteSummary(
        total_distance_km=1800,
        total_duration_min=2200,
        coordinates=[LatLng(lat=DELHI[0], lng=DELHI[1]), LatLng(lat=SHILLONG[0], lng=SHILLONG[1])],
    )


class FakeRepository:
    """In-memory stand-in for ItineraryRepository that records every call."""

    def __init__(self, next_id=41):
        self.next_id = next_id
        self.created = []
        self.updated = []
        self.fail_with = None
        self.on_call = None
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _enter(self):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.on_call is not None:
            self.on_call()

    def _exit(self):
        with self._lock:
            self.active -= 1

    def create(self, itinerary):
        self._enter()
        try:
            if self.fail_with:
                raise self.fail_with
            self.created.append(itinerary)
            return self.next_id
        finally:
            self._exit()

    def update(self, itinerary):
        self._enter()
        try:
            if self.fail_with:
                raise self.fail_with
            self.updated.append(itinerary)
        finally:
            self._exit()


@pytest.fixture
def fake_repo():
    return FakeRepository()


@pytest.fixture
def db_tables():
    """Fresh schema on the shared in-memory SQLite engine."""
    from database import engine
    from models import Base
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
