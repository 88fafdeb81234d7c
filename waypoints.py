"""
waypoints.py — Ordered waypoint list operations.

The effective route order is always: the single 'start' waypoint, the
intermediates in list order, the single 'end' waypoint. Every function here
returns a new list and leaves its input untouched; unknown ids and
out-of-range indices are no-ops rather than errors.
"""

import logging
import uuid

import config
from errors import MalformedResponseError, PlanningValidationError
from schemas import LatLng, RouteSummary, Waypoint

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return f'waypoint-{uuid.uuid4().hex[:12]}'


def _copy(waypoints: list[Waypoint]) -> list[Waypoint]:
    return [wp.model_copy() for wp in waypoints]


def default_waypoints() -> list[Waypoint]:
    """A fresh [start, end] pair, both unresolved."""
    return [
        Waypoint(id='start', role='start'),
        Waypoint(id='end',   role='end'),
    ]


def intermediates(waypoints: list[Waypoint]) -> list[Waypoint]:
    return [wp for wp in waypoints if wp.role == 'intermediate']


def normalise(waypoints: list[Waypoint]) -> list[Waypoint]:
    """Put start first and end last, keeping intermediates in their order.

    Extra start/end waypoints beyond the first of each are demoted to
    intermediates so the list always has exactly one of each role.
    """
    start = end = None
    middle: list[Waypoint] = []
    for wp in _copy(waypoints):
        if wp.role == 'start' and start is None:
            start = wp
        elif wp.role == 'end' and end is None:
            end = wp
        else:
            if wp.role != 'intermediate':
                wp.role = 'intermediate'
            middle.append(wp)
    if start is None:
        start = Waypoint(id='start', role='start')
    if end is None:
        end = Waypoint(id='end', role='end')
    return [start, *middle, end]


def add_intermediate(
    waypoints: list[Waypoint],
    name: str = '',
    lat: float = 0.0,
    lng: float = 0.0,
    address: str | None = None,
    waypoint_id: str | None = None,
) -> list[Waypoint]:
    """Insert a new intermediate stop directly before the end waypoint."""
    limit = config.MAX_INTERMEDIATE_WAYPOINTS
    if len(intermediates(waypoints)) >= limit:
        raise PlanningValidationError(f'A route can have at most {limit} intermediate stops')

    new_wp = Waypoint(
        id=waypoint_id or _new_id(),
        name=name,
        lat=lat,
        lng=lng,
        address=address,
        role='intermediate',
    )
    result = normalise(waypoints)
    result.insert(len(result) - 1, new_wp)
    return result


def remove_waypoint(waypoints: list[Waypoint], waypoint_id: str) -> list[Waypoint]:
    """Remove an intermediate stop. Start and end cannot be removed."""
    return [
        wp for wp in _copy(waypoints)
        if not (wp.id == waypoint_id and wp.role == 'intermediate')
    ]


def move_intermediate(waypoints: list[Waypoint], from_index: int, to_index: int) -> list[Waypoint]:
    """Drag-reorder an intermediate; indices refer to the full list."""
    result = normalise(waypoints)
    last = len(result) - 1
    if from_index == to_index:
        return result
    if not (0 < from_index < last) or not (0 < to_index < last):
        return result
    moved = result.pop(from_index)
    result.insert(to_index, moved)
    return result


def set_location(
    waypoints: list[Waypoint],
    waypoint_id: str,
    lat: float,
    lng: float,
    address: str | None = None,
    place_id: str | None = None,
    name: str | None = None,
) -> list[Waypoint]:
    """Resolve a waypoint from a geocode result or a map pick."""
    result = _copy(waypoints)
    for wp in result:
        if wp.id == waypoint_id:
            wp.lat = lat
            wp.lng = lng
            wp.address = address
            wp.place_id = place_id
            if name is not None:
                wp.name = name
            elif not wp.name and address:
                wp.name = address
            break
    return result


def resolved(waypoints: list[Waypoint]) -> list[Waypoint]:
    return [wp for wp in waypoints if wp.is_resolved]


def route_order(waypoints: list[Waypoint]) -> list[Waypoint]:
    """Resolved waypoints in effective route order (start, stops, end)."""
    ordered = normalise(waypoints)
    return [wp for wp in ordered if wp.is_resolved]


def route_coordinates(waypoints: list[Waypoint]) -> list[LatLng]:
    return [wp.position for wp in route_order(waypoints)]


def validate_for_route(waypoints: list[Waypoint]) -> list[Waypoint]:
    """Return the route order, or raise before any directions call is made."""
    starts = [wp for wp in waypoints if wp.role == 'start']
    ends   = [wp for wp in waypoints if wp.role == 'end']
    if len(starts) != 1 or len(ends) != 1:
        raise PlanningValidationError('A route needs exactly one start and one end point')
    if not starts[0].is_resolved:
        raise PlanningValidationError('Choose a location for the start point')
    if not ends[0].is_resolved:
        raise PlanningValidationError('Choose a location for the end point')
    ordered = route_order(waypoints)
    if len(ordered) < 2:
        raise PlanningValidationError('At least two located waypoints are required')
    return ordered


def route_is_stale(waypoints: list[Waypoint], summary: RouteSummary | None) -> bool:
    """True when ``summary`` was not computed for the current route order."""
    if summary is None:
        return False
    current = [(c.lat, c.lng) for c in route_coordinates(waypoints)]
    computed = [(c.lat, c.lng) for c in summary.coordinates]
    return current != computed


def validate_permutation(permutation: list[int], size: int) -> None:
    """Raise MalformedResponseError unless ``permutation`` reorders range(size)."""
    if not isinstance(permutation, list) or len(permutation) != size:
        raise MalformedResponseError(
            f'Optimised order has {len(permutation) if isinstance(permutation, list) else "no"} '
            f'entries, expected {size}'
        )
    if any(isinstance(i, bool) or not isinstance(i, int) for i in permutation):
        raise MalformedResponseError('Optimised order must contain integer indices only')
    if sorted(permutation) != list(range(size)):
        raise MalformedResponseError('Optimised order is not a reordering of the stops')


def apply_optimized_order(waypoints: list[Waypoint], permutation: list[int]) -> list[Waypoint]:
    """Reorder intermediates so that position k holds old intermediate permutation[k]."""
    ordered = normalise(waypoints)
    stops = ordered[1:-1]
    validate_permutation(permutation, len(stops))
    reordered = [stops[i] for i in permutation]
    logger.info('Applied optimised stop order %s', permutation)
    return [ordered[0], *reordered, ordered[-1]]
