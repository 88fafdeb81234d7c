"""
day_planner.py — Day-by-day plan derivation and editing.

derive_days() turns a located waypoint list plus a directions summary into an
initial sequence of DayPlans using a fixed daily driving budget. The editor
functions below it (add/update/remove/move items, split/merge days) are the
operations behind the day-by-day board, including drag-and-drop.

All functions are pure: they take a list of DayPlans and return a new list,
never mutating their input. Unknown day or item ids are silent no-ops. Day
summaries are a cached aggregate; editing items never recomputes them.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, timedelta

import config
from schemas import (
    DayItem, DayItemKind, DayPlan, DaySummary, GeneratedItinerary, RouteSummary, Waypoint,
)
from waypoints import route_order

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cost model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CostModel:
    """Deterministic per-day cost estimate: one night of lodging plus fuel."""
    lodging:          float = config.LODGING_COST_ESTIMATE
    lodging_range:    str   = config.LODGING_COST_RANGE
    mileage_km_per_l: float = config.DEFAULT_MILEAGE_KM_PER_L
    fuel_price:       float = config.DEFAULT_FUEL_PRICE

    def day_cost(self, distance_km: float) -> float:
        fuel = 0.0
        if self.mileage_km_per_l > 0:
            fuel = distance_km / self.mileage_km_per_l * self.fuel_price
        return round(self.lodging + fuel, 2)


DEFAULT_COST_MODEL = CostModel()


def format_duration(minutes: float) -> str:
    minutes = max(0.0, minutes)
    return f'{int(minutes // 60)}h {int(minutes % 60)}m'


# ---------------------------------------------------------------------------
# Deriver
# ---------------------------------------------------------------------------

def derive_days(
    waypoints: list[Waypoint],
    route_summary: RouteSummary | None,
    *,
    daily_distance_km: float = config.DAILY_DISTANCE_KM,
    start_date: date | None = None,
    cost_model: CostModel = DEFAULT_COST_MODEL,
) -> list[DayPlan]:
    """Split a route into days of at most ``daily_distance_km`` driving.

    Degenerate input (fewer than two located waypoints, no route distance, a
    non-positive budget) yields an empty list. The last day takes the
    remainder so day distances always sum to the route total.
    """
    stops = route_order(waypoints)
    if len(stops) < 2:
        logger.debug('derive_days: %d located waypoint(s), nothing to plan', len(stops))
        return []
    if route_summary is None or not route_summary.total_distance_km:
        return []
    if daily_distance_km <= 0:
        return []

    total_distance = route_summary.total_distance_km
    total_duration = route_summary.total_duration_min or 0.0
    num_days = max(1, math.ceil(total_distance / daily_distance_km))
    first_date = start_date or date.today()

    days: list[DayPlan] = []
    for i in range(num_days):
        if i == num_days - 1:
            day_distance = total_distance - i * daily_distance_km
        else:
            day_distance = daily_distance_km
        day_duration = day_distance / total_distance * total_duration

        items: list[DayItem] = []
        origin = stops[i] if i < len(stops) else stops[-1]
        destination = stops[i + 1] if i + 1 < len(stops) else None

        if destination is not None:
            items.append(DayItem(
                id=f'leg-{i}',
                kind='drive-leg',
                title=f"{origin.name or 'Start'} to {destination.name or 'Next Stop'}",
                details=f'Drive {day_distance:.0f} km',
                time=format_duration(day_duration),
                lat=destination.lat,
                lng=destination.lng,
                distance_km=day_distance,
                duration_min=day_duration,
            ))

        arrival = destination or stops[-1]
        items.append(DayItem(
            id=f'arrival-{i}',
            kind='point-of-interest',
            title=f"Explore {arrival.name or 'Destination'}",
            details='Visit local attractions and landmarks',
            time='2-3 hours',
            lat=arrival.lat,
            lng=arrival.lng,
        ))
        items.append(DayItem(
            id=f'lodging-{i}',
            kind='lodging',
            title='Find accommodation',
            details='Hotel or guesthouse',
            cost=cost_model.lodging_range,
        ))

        days.append(DayPlan(
            id=f'day-{i}',
            date=(first_date + timedelta(days=i)).isoformat(),
            items=items,
            summary=DaySummary(
                distance_km=day_distance,
                duration_min=day_duration,
                estimated_cost=cost_model.day_cost(day_distance),
            ),
        ))

    logger.info('Derived %d day(s) for a %.0f km route', len(days), total_distance)
    return days


# ---------------------------------------------------------------------------
# Editor helpers
# ---------------------------------------------------------------------------

def _copy_days(days: list[DayPlan]) -> list[DayPlan]:
    return [day.model_copy(deep=True) for day in days]


def _index_of(days: list[DayPlan], day_id: str) -> int:
    for idx, day in enumerate(days):
        if day.id == day_id:
            return idx
    return -1


def _next_date(iso_date: str | None) -> str | None:
    if not iso_date:
        return None
    try:
        return (date.fromisoformat(iso_date) + timedelta(days=1)).isoformat()
    except ValueError:
        logger.warning('Cannot advance unparseable day date %r', iso_date)
        return None


def total_items(days: list[DayPlan]) -> int:
    return sum(len(day.items) for day in days)


def find_day(days: list[DayPlan], day_id: str) -> DayPlan | None:
    idx = _index_of(days, day_id)
    return days[idx] if idx >= 0 else None


# ---------------------------------------------------------------------------
# Item operations
# ---------------------------------------------------------------------------

def add_item(days: list[DayPlan], day_id: str, kind: DayItemKind) -> tuple[list[DayPlan], str | None]:
    """Append an empty item; returns the new days and the new item id."""
    result = _copy_days(days)
    idx = _index_of(result, day_id)
    if idx < 0:
        return result, None
    item = DayItem(id=f'{kind}-{uuid.uuid4().hex[:12]}', kind=kind, title='', details='', time='')
    result[idx].items.append(item)
    return result, item.id


def update_item(days: list[DayPlan], day_id: str, item_id: str, **fields) -> list[DayPlan]:
    result = _copy_days(days)
    day = find_day(result, day_id)
    if day is None:
        return result
    fields.pop('id', None)
    for pos, item in enumerate(day.items):
        if item.id == item_id:
            day.items[pos] = item.model_copy(update=fields)
            break
    return result


def remove_item(days: list[DayPlan], day_id: str, item_id: str) -> list[DayPlan]:
    result = _copy_days(days)
    day = find_day(result, day_id)
    if day is not None:
        day.items = [item for item in day.items if item.id != item_id]
    return result


def move_item(
    days: list[DayPlan],
    source_day_id: str,
    source_index: int,
    dest_day_id: str,
    dest_index: int,
) -> list[DayPlan]:
    """Move one item, within a day or across days (the drag-and-drop primitive)."""
    result = _copy_days(days)
    source = find_day(result, source_day_id)
    dest = find_day(result, dest_day_id)
    if source is None or dest is None:
        return result
    if not 0 <= source_index < len(source.items):
        return result

    moved = source.items.pop(source_index)
    dest_index = max(0, min(dest_index, len(dest.items)))
    dest.items.insert(dest_index, moved)
    return result


# ---------------------------------------------------------------------------
# Day operations
# ---------------------------------------------------------------------------

def split_day(days: list[DayPlan], day_id: str) -> list[DayPlan]:
    """Replace a day with two halves; each half gets half of the cached summary."""
    result = _copy_days(days)
    idx = _index_of(result, day_id)
    if idx < 0:
        return result

    day = result[idx]
    mid = len(day.items) // 2
    half = DaySummary(
        distance_km=day.summary.distance_km / 2,
        duration_min=day.summary.duration_min / 2,
        estimated_cost=day.summary.estimated_cost / 2,
    )
    first = DayPlan(
        id=f'{day.id}-a',
        date=day.date,
        items=day.items[:mid],
        summary=half,
    )
    second = DayPlan(
        id=f'{day.id}-b',
        date=_next_date(day.date),
        items=day.items[mid:],
        summary=half.model_copy(),
    )
    result[idx:idx + 1] = [first, second]
    return result


def merge_with_next(days: list[DayPlan], day_id: str) -> list[DayPlan]:
    """Fold the following day into ``day_id``; no-op for the last day."""
    result = _copy_days(days)
    idx = _index_of(result, day_id)
    if idx < 0 or idx == len(result) - 1:
        return result

    current, following = result[idx], result[idx + 1]
    merged = DayPlan(
        id=current.id,
        date=current.date,
        items=current.items + following.items,
        summary=DaySummary(
            distance_km=current.summary.distance_km + following.summary.distance_km,
            duration_min=current.summary.duration_min + following.summary.duration_min,
            estimated_cost=current.summary.estimated_cost + following.summary.estimated_cost,
        ),
    )
    result[idx:idx + 2] = [merged]
    return result


# ---------------------------------------------------------------------------
# AI-generated plans
# ---------------------------------------------------------------------------

def _format_cost(cost: float | None) -> str | None:
    if cost is None:
        return None
    return f'{cost:,.0f}'


def days_from_generated(generated: GeneratedItinerary) -> list[DayPlan]:
    """Convert an AI-generated itinerary into editable DayPlans.

    Each filled activity slot becomes a point-of-interest item; accommodation
    and notes become lodging and note items. Driving distance and duration are
    not part of the generated plan, so those summary fields stay at zero.
    """
    days: list[DayPlan] = []
    for gen_day in sorted(generated.days, key=lambda d: d.day_number):
        n = gen_day.day_number
        items: list[DayItem] = []
        slot_costs = 0.0
        for slot_name, slot in (('morning', gen_day.morning),
                                ('afternoon', gen_day.afternoon),
                                ('evening', gen_day.evening)):
            if not slot.activity:
                continue
            slot_costs += slot.cost or 0.0
            items.append(DayItem(
                id=f'ai-{n}-{slot_name}',
                kind='point-of-interest',
                title=slot.activity,
                details=gen_day.location or None,
                time=slot.time,
                cost=_format_cost(slot.cost),
            ))
        if gen_day.accommodation and gen_day.accommodation.suggestion:
            slot_costs += gen_day.accommodation.estimated_cost or 0.0
            items.append(DayItem(
                id=f'ai-{n}-lodging',
                kind='lodging',
                title=gen_day.accommodation.suggestion,
                cost=_format_cost(gen_day.accommodation.estimated_cost),
            ))
        if gen_day.notes:
            items.append(DayItem(id=f'ai-{n}-note', kind='note', title='Notes', details=gen_day.notes))

        estimated = gen_day.daily_total if gen_day.daily_total is not None else slot_costs
        days.append(DayPlan(
            id=f'ai-day-{n}',
            date=gen_day.date,
            items=items,
            summary=DaySummary(estimated_cost=estimated),
        ))
    return days
