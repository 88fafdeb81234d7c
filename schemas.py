"""
schemas.py — Pydantic v2 models for the TripWeave planner.

Two groups live here:
  * the planning domain (Waypoint, RouteSummary, DayItem, DayPlan, Itinerary)
    which the planner store mutates and the repository persists as JSON
  * request bodies for the routers, which validate user input before any
    provider call is attempted

Validation errors automatically return HTTP 422 with structured detail.
"""

import re
from datetime import date, datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


# ── Shared validator helpers ──────────────────────────────────────────────────

def _collapse(v: str | None) -> str | None:
    """Collapse all whitespace (tabs, newlines, multiple spaces) to a single
    space, strip ends. Returns None if the result is empty."""
    if v is None:
        return None
    s = re.sub(r'\s+', ' ', str(v)).strip()
    return s or None


def _slugify(v: str | None) -> str | None:
    """Lower-case URL slug: runs of anything but a-z and 0-9 become one hyphen."""
    v = _collapse(v)
    if not v:
        return None
    s = re.sub(r'[^a-z0-9]+', '-', v.lower()).strip('-')
    return s or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


WaypointRole = Literal['start', 'end', 'intermediate']
DayItemKind  = Literal['drive-leg', 'point-of-interest', 'lodging', 'note', 'photo-op']


# ── Geography ─────────────────────────────────────────────────────────────────

class LatLng(BaseModel):
    lat: float
    lng: float


class Waypoint(BaseModel):
    id:       str
    name:     str        = ''
    lat:      float      = 0.0
    lng:      float      = 0.0
    address:  str | None = None
    place_id: str | None = None
    role:     WaypointRole = 'intermediate'

    @property
    def is_resolved(self) -> bool:
        # (0, 0) is the "not yet geocoded" sentinel
        return not (self.lat == 0 and self.lng == 0)

    @property
    def position(self) -> LatLng:
        return LatLng(lat=self.lat, lng=self.lng)


class RouteSummary(BaseModel):
    """Directions-provider output for one ordered waypoint sequence.

    ``polyline`` and ``steps`` are passed through untouched for rendering and
    export. ``coordinates`` records the exact sequence the route was computed
    for, so a later waypoint edit can be detected as making it stale.
    """
    total_distance_km:  float | None = Field(default=None, ge=0)
    total_duration_min: float | None = Field(default=None, ge=0)
    polyline:           str | None   = None
    steps:              list[dict]   = Field(default_factory=list)
    coordinates:        list[LatLng] = Field(default_factory=list)


# ── Day plans ─────────────────────────────────────────────────────────────────

class DayItem(BaseModel):
    id:           str
    kind:         DayItemKind
    title:        str          = ''
    details:      str | None   = None
    time:         str | None   = None
    cost:         str | None   = None
    lat:          float | None = None
    lng:          float | None = None
    distance_km:  float | None = None
    duration_min: float | None = None


class DaySummary(BaseModel):
    distance_km:    float = 0.0
    duration_min:   float = 0.0
    estimated_cost: float = 0.0


class DayPlan(BaseModel):
    id:      str
    date:    str | None    = None      # ISO YYYY-MM-DD
    items:   list[DayItem] = Field(default_factory=list)
    summary: DaySummary    = Field(default_factory=DaySummary)


# ── Itinerary aggregate ───────────────────────────────────────────────────────

class TripDetails(BaseModel):
    start_date:       date | None  = None
    end_date:         date | None  = None
    travelers:        int          = Field(default=1, ge=1, le=50)
    budget:           float | None = Field(default=None, ge=0)
    vehicle_type:     str | None   = Field(default=None, max_length=50)
    fuel_type:        str | None   = Field(default=None, max_length=50)
    mileage_km_per_l: float | None = Field(default=None, gt=0)
    fuel_price:       float | None = Field(default=None, ge=0)

    @model_validator(mode='after')
    def end_not_before_start(self) -> 'TripDetails':
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError('End date cannot be before the start date')
        return self


class Itinerary(BaseModel):
    id:            int | None          = None
    title:         str                 = 'New Trip'
    waypoints:     list[Waypoint]      = Field(default_factory=list)
    days:          list[DayPlan]       = Field(default_factory=list)
    route_summary: RouteSummary | None = None
    details:       TripDetails         = Field(default_factory=TripDetails)
    is_public:     bool                = False
    share_slug:    str | None          = None
    created_at:    datetime            = Field(default_factory=_utcnow)
    updated_at:    datetime            = Field(default_factory=_utcnow)


# ── Provider results ──────────────────────────────────────────────────────────

class GeocodeResult(BaseModel):
    lat:               float
    lng:               float
    formatted_address: str
    place_id:          str | None = None


class EstimatedSavings(BaseModel):
    distance_percent: float | None = None
    time_percent:     float | None = None


class OptimizationResult(BaseModel):
    order:             list[int]
    reasoning:         str                     = ''
    estimated_savings: EstimatedSavings | None = None


class NearbyPoi(BaseModel):
    id:       str
    name:     str
    category: Literal['fuel', 'food']
    lat:      float
    lng:      float
    rating:   float | None = None
    address:  str | None   = None
    is_open:  bool | None  = None


class ActivitySlot(BaseModel):
    activity: str          = ''
    time:     str | None   = None
    cost:     float | None = None


class Accommodation(BaseModel):
    suggestion:     str          = ''
    estimated_cost: float | None = None


class GeneratedDay(BaseModel):
    day_number:    int
    date:          str | None           = None
    location:      str                  = ''
    morning:       ActivitySlot         = Field(default_factory=ActivitySlot)
    afternoon:     ActivitySlot         = Field(default_factory=ActivitySlot)
    evening:       ActivitySlot         = Field(default_factory=ActivitySlot)
    accommodation: Accommodation | None = None
    daily_total:   float | None         = None
    notes:         str | None           = None


class GeneratedItinerary(BaseModel):
    days:                 list[GeneratedDay]
    total_estimated_cost: float     = 0.0
    tips:                 list[str] = Field(default_factory=list)


class BudgetCategory(BaseModel):
    total: float      = 0.0
    notes: str | None = None


class BudgetBreakdown(BaseModel):
    categories:           dict[str, BudgetCategory] = Field(default_factory=dict)
    total_estimated_cost: float                     = 0.0
    savings_tips:         list[str]                 = Field(default_factory=list)


class DestinationRecommendation(BaseModel):
    name:                   str
    location:               str
    state:                  str | None  = None
    description:            str
    best_for:               list[str]   = Field(default_factory=list)
    estimated_cost_per_day: float | None = None
    best_time_to_visit:     str | None  = None
    why_recommended:        str
    match_score:            float       = Field(..., ge=0, le=100)
    highlights:             list[str]   = Field(default_factory=list)


class DestinationRecommendations(BaseModel):
    recommendations: list[DestinationRecommendation]
    overall_tips:    list[str] = Field(default_factory=list)


# ── Auth ──────────────────────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    email:    str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)

    @field_validator('email', mode='before')
    @classmethod
    def normalise_email(cls, v: str) -> str:
        return str(v).strip().lower()


# ── Itinerary persistence ─────────────────────────────────────────────────────

class ItineraryCreate(BaseModel):
    title:         str | None          = Field(default=None, max_length=255)
    waypoints:     list[Waypoint]      = Field(default_factory=list)
    days:          list[DayPlan]       = Field(default_factory=list)
    route_summary: RouteSummary | None = None
    details:       TripDetails         = Field(default_factory=TripDetails)
    is_public:     bool                = False
    share_slug:    str | None          = Field(default=None, max_length=120)

    @field_validator('title', mode='before')
    @classmethod
    def collapse_title(cls, v: str | None) -> str | None:
        return _collapse(v)

    @field_validator('share_slug', mode='before')
    @classmethod
    def normalise_slug(cls, v: str | None) -> str | None:
        return _slugify(v)


class ItineraryUpdate(BaseModel):
    """All fields optional — supports partial update semantics."""
    title:         str | None          = Field(default=None, max_length=255)
    waypoints:     list[Waypoint] | None = None
    days:          list[DayPlan] | None  = None
    route_summary: RouteSummary | None = None
    details:       TripDetails | None  = None
    is_public:     bool | None         = None
    share_slug:    str | None          = Field(default=None, max_length=120)

    @field_validator('title', mode='before')
    @classmethod
    def collapse_title(cls, v: str | None) -> str | None:
        return _collapse(v)

    @field_validator('share_slug', mode='before')
    @classmethod
    def normalise_slug(cls, v: str | None) -> str | None:
        return _slugify(v)


# ── Planner requests ──────────────────────────────────────────────────────────

class TitleUpdate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)

    @field_validator('title', mode='before')
    @classmethod
    def collapse_title(cls, v: str) -> str:
        return _collapse(v) or ''


class WaypointAdd(BaseModel):
    name:    str        = Field(default='', max_length=255)
    lat:     float      = Field(default=0.0, ge=-90, le=90)
    lng:     float      = Field(default=0.0, ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)


class WaypointMove(BaseModel):
    from_index: int = Field(..., ge=0)
    to_index:   int = Field(..., ge=0)


class WaypointLocation(BaseModel):
    lat:      float      = Field(..., ge=-90, le=90)
    lng:      float      = Field(..., ge=-180, le=180)
    address:  str | None = Field(default=None, max_length=500)
    place_id: str | None = Field(default=None, max_length=255)
    name:     str | None = Field(default=None, max_length=255)


class GeocodeRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=255)

    @field_validator('query', mode='before')
    @classmethod
    def collapse_query(cls, v: str) -> str:
        return _collapse(v) or ''


class OptimizePreferences(BaseModel):
    priority:      Literal['distance', 'time', 'scenic'] = 'distance'
    avoid_tolls:   bool = False
    avoid_highways: bool = False


class ItemAdd(BaseModel):
    kind: DayItemKind


class ItemUpdate(BaseModel):
    """Free-text partial update; only fields actually sent are merged."""
    title:        str | None   = None
    details:      str | None   = None
    time:         str | None   = None
    cost:         str | None   = None
    lat:          float | None = None
    lng:          float | None = None
    distance_km:  float | None = None
    duration_min: float | None = None


class ItemMove(BaseModel):
    source_day_id: str
    source_index:  int = Field(..., ge=0)
    dest_day_id:   str
    dest_index:    int = Field(..., ge=0)


class ShareSettings(BaseModel):
    is_public:  bool
    share_slug: str | None = Field(default=None, max_length=120)

    @field_validator('share_slug', mode='before')
    @classmethod
    def normalise_slug(cls, v: str | None) -> str | None:
        return _slugify(v)


class GenerateItineraryRequest(BaseModel):
    waypoints: list[Waypoint] = Field(..., min_length=2)
    details:   TripDetails    = Field(default_factory=TripDetails)


class BudgetRequest(BaseModel):
    waypoints:   list[Waypoint] = Field(..., min_length=1)
    details:     TripDetails    = Field(default_factory=TripDetails)
    distance_km: float | None   = Field(default=None, ge=0)


class DestinationPreferences(BaseModel):
    travel_style: str | None   = Field(default=None, max_length=100)
    budget:       float | None = Field(default=None, ge=0)
    travelers:    int          = Field(default=1, ge=1, le=50)
    season:       str | None   = Field(default=None, max_length=50)
    duration:     int | None   = Field(default=None, ge=1, le=90)
    interests:    list[str]    = Field(default_factory=list, max_length=20)
    vehicle_type: str | None   = Field(default=None, max_length=50)

    @field_validator('interests')
    @classmethod
    def drop_blank_interests(cls, v: list[str]) -> list[str]:
        return [s for s in (_collapse(i) for i in v) if s]


class NearbyPoisRequest(BaseModel):
    coordinates: list[LatLng] = Field(..., min_length=1, max_length=25)
    fuel:        bool = False
    food:        bool = False

    @model_validator(mode='after')
    def at_least_one_category(self) -> 'NearbyPoisRequest':
        if not (self.fuel or self.food):
            raise ValueError('At least one of fuel or food must be enabled')
        return self
