"""
services.py — External collaborators for the planner.

  MapsClient           Google Geocoding / Directions / Places (async httpx)
  RouteOptimizer       AI stop-order optimisation (Anthropic tool call)
  ItineraryGenerator   AI day-by-day itinerary and budget breakdown

Each client turns provider failures into the errors.py taxonomy so that the
planner store can roll back and routers can map them to HTTP responses. No
client retries; a retry is the caller's decision.
"""

import hashlib
import json
import logging
import time

import anthropic
import httpx
from anthropic import AsyncAnthropic
from pydantic import ValidationError

import config
from errors import (
    LocationNotFound,
    MalformedResponseError,
    RateLimitedError,
    RouteNotFound,
    ServiceError,
)
from redis_client import get_redis
from schemas import (
    BudgetBreakdown,
    DestinationPreferences,
    DestinationRecommendations,
    GeneratedItinerary,
    GeocodeResult,
    LatLng,
    NearbyPoi,
    OptimizationResult,
    OptimizePreferences,
    RouteSummary,
    TripDetails,
    Waypoint,
)
from waypoints import validate_permutation

logger = logging.getLogger(__name__)

MAPS_BASE_URL = 'https://maps.googleapis.com/maps/api'

NEARBY_RADIUS_M      = 10_000
NEARBY_PER_POINT     = 3
NEARBY_MAX_RESULTS   = 8
NEARBY_TYPES         = {'fuel': 'gas_station', 'food': 'restaurant'}

# ---------------------------------------------------------------------------
# Cache helpers (Redis + in-memory fallback)
# ---------------------------------------------------------------------------

_cache: dict = {}


def _cache_key(*args) -> str:
    raw = json.dumps(args, sort_keys=True)
    return hashlib.md5(raw.encode()).hexdigest()


def _get_cached(key: str):
    r = get_redis()
    if r is not None:
        try:
            raw = r.get(f'cache:{key}')
            if raw is not None:
                return json.loads(raw)
        except Exception as exc:
            logger.warning('Redis cache GET error: %s', exc)
        return None
    entry = _cache.get(key)
    if entry and (time.time() - entry[0]) < config.CACHE_TTL_SECONDS:
        return entry[1]
    return None


def _set_cached(key: str, value) -> None:
    r = get_redis()
    if r is not None:
        try:
            r.setex(f'cache:{key}', config.CACHE_TTL_SECONDS, json.dumps(value))
        except Exception as exc:
            logger.warning('Redis cache SET error: %s', exc)
        return
    _cache[key] = (time.time(), value)


def clear_cache() -> None:
    _cache.clear()


# ---------------------------------------------------------------------------
# Google Maps
# ---------------------------------------------------------------------------

def _raise_for_maps_status(status: str, message: str | None, what: str) -> None:
    if status == 'OK':
        return
    if status in ('ZERO_RESULTS', 'NOT_FOUND'):
        if what == 'route':
            raise RouteNotFound('No route found between these waypoints')
        raise LocationNotFound(f'No {what} found')
    if status == 'OVER_QUERY_LIMIT':
        raise RateLimitedError('Maps quota exceeded. Please try again later.')
    if status == 'INVALID_REQUEST':
        raise ServiceError(message or f'Invalid {what} request')
    raise ServiceError(message or f'Maps {what} request failed ({status})')


class MapsClient:
    """Thin async wrapper over the Google Maps web services."""

    def __init__(self, http_client: httpx.AsyncClient, api_key: str | None = None,
                 base_url: str = MAPS_BASE_URL):
        self._http = http_client
        self._api_key = config.GOOGLE_MAPS_API_KEY if api_key is None else api_key
        self._base_url = base_url.rstrip('/')

    async def _get(self, path: str, params: dict, what: str) -> dict:
        if not self._api_key:
            raise ServiceError('Google Maps API key not configured')
        try:
            resp = await self._http.get(
                f'{self._base_url}/{path}',
                params={**params, 'key': self._api_key},
                timeout=config.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            logger.warning('Maps %s request failed: %s', what, exc)
            raise ServiceError(f'Could not reach the maps service: {exc}') from exc

        if resp.status_code == 429:
            raise RateLimitedError('Maps quota exceeded. Please try again later.')
        if resp.status_code >= 400:
            logger.warning('Maps %s HTTP %d: %s', what, resp.status_code, resp.text[:200])
            raise ServiceError(f'Maps {what} request failed (HTTP {resp.status_code})')
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedResponseError(f'Maps {what} response was not JSON') from exc

    async def geocode(self, query: str) -> GeocodeResult | None:
        """Resolve free text to a location; None when nothing matches."""
        query = query.strip()
        if not query:
            return None

        key = _cache_key('geocode', query.lower())
        cached = _get_cached(key)
        if cached is not None:
            logger.info('Geocode: cache hit for %r', query[:60])
            return GeocodeResult(**cached)

        data = await self._get('geocode/json', {'address': query}, 'location')
        status = data.get('status', 'UNKNOWN_ERROR')
        if status == 'ZERO_RESULTS':
            logger.info('Geocode: no result for %r', query[:60])
            return None
        _raise_for_maps_status(status, data.get('error_message'), 'location')

        results = data.get('results') or []
        if not results:
            return None
        try:
            first = results[0]
            loc = first['geometry']['location']
            result = GeocodeResult(
                lat=float(loc['lat']),
                lng=float(loc['lng']),
                formatted_address=first.get('formatted_address', query),
                place_id=first.get('place_id'),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedResponseError('Geocode result is missing coordinates') from exc

        _set_cached(key, result.model_dump())
        logger.info('Geocode: %r → (%.5f, %.5f)', query[:60], result.lat, result.lng)
        return result

    async def compute_route(self, coordinates: list[LatLng]) -> RouteSummary:
        """Directions for an ordered coordinate list (first = origin, last = destination)."""
        if len(coordinates) < 2:
            raise ServiceError('Invalid route request: at least two points are required')

        def fmt(c: LatLng) -> str:
            return f'{c.lat},{c.lng}'

        params = {
            'origin':      fmt(coordinates[0]),
            'destination': fmt(coordinates[-1]),
        }
        if len(coordinates) > 2:
            params['waypoints'] = '|'.join(fmt(c) for c in coordinates[1:-1])

        data = await self._get('directions/json', params, 'route')
        _raise_for_maps_status(data.get('status', 'UNKNOWN_ERROR'), data.get('error_message'), 'route')

        routes = data.get('routes') or []
        if not routes:
            raise RouteNotFound('No route found between these waypoints')
        route = routes[0]
        legs = route.get('legs') or []
        if not legs:
            raise MalformedResponseError('Directions response has no legs')

        try:
            metres = sum(leg['distance']['value'] for leg in legs)
            seconds = sum(leg['duration']['value'] for leg in legs)
        except (KeyError, TypeError) as exc:
            raise MalformedResponseError('Directions legs are missing distance or duration') from exc

        summary = RouteSummary(
            total_distance_km=metres / 1000,
            total_duration_min=seconds / 60,
            polyline=(route.get('overview_polyline') or {}).get('points'),
            steps=[step for leg in legs for step in (leg.get('steps') or [])],
            coordinates=list(coordinates),
        )
        logger.info('Route: %d point(s) → %.1f km / %.0f min',
                    len(coordinates), summary.total_distance_km, summary.total_duration_min)
        return summary

    async def nearby_pois(self, coordinates: list[LatLng], categories: list[str]) -> list[NearbyPoi]:
        """Fuel / food stops near each route point, de-duplicated, best effort."""
        found: list[NearbyPoi] = []
        seen: set[str] = set()
        for coord in coordinates:
            for category in categories:
                place_type = NEARBY_TYPES.get(category)
                if place_type is None:
                    continue
                try:
                    data = await self._get(
                        'place/nearbysearch/json',
                        {'location': f'{coord.lat},{coord.lng}',
                         'radius': NEARBY_RADIUS_M, 'type': place_type},
                        'place',
                    )
                except ServiceError as exc:
                    logger.warning('Nearby %s search failed at (%s, %s): %s',
                                   category, coord.lat, coord.lng, exc)
                    continue
                for place in (data.get('results') or [])[:NEARBY_PER_POINT]:
                    place_id = place.get('place_id')
                    if not place_id or place_id in seen:
                        continue
                    loc = (place.get('geometry') or {}).get('location') or {}
                    if 'lat' not in loc or 'lng' not in loc:
                        continue
                    seen.add(place_id)
                    found.append(NearbyPoi(
                        id=place_id,
                        name=place.get('name', ''),
                        category=category,
                        lat=loc['lat'],
                        lng=loc['lng'],
                        rating=place.get('rating'),
                        address=place.get('vicinity'),
                        is_open=(place.get('opening_hours') or {}).get('open_now'),
                    ))
        return found[:NEARBY_MAX_RESULTS]


# ---------------------------------------------------------------------------
# AI gateway
# ---------------------------------------------------------------------------

OPTIMIZE_TOOL = {
    'name': 'optimize_route',
    'description': 'Return the optimised order of the intermediate stops',
    'input_schema': {
        'type': 'object',
        'properties': {
            'optimized_indices': {
                'type': 'array',
                'items': {'type': 'integer'},
                'description': 'Intermediate stop indices (0-based) in visiting order',
            },
            'reasoning': {
                'type': 'string',
                'description': 'Brief explanation of the optimisation strategy',
            },
            'estimated_savings': {
                'type': 'object',
                'properties': {
                    'distance_percent': {'type': 'number'},
                    'time_percent':     {'type': 'number'},
                },
            },
        },
        'required': ['optimized_indices', 'reasoning'],
    },
}

_SLOT_SCHEMA = {
    'type': 'object',
    'properties': {
        'activity': {'type': 'string'},
        'time':     {'type': 'string'},
        'cost':     {'type': 'number'},
    },
}

ITINERARY_TOOL = {
    'name': 'create_itinerary',
    'description': 'Generate a detailed day-by-day travel itinerary',
    'input_schema': {
        'type': 'object',
        'properties': {
            'days': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'day_number': {'type': 'integer'},
                        'date':       {'type': 'string'},
                        'location':   {'type': 'string'},
                        'morning':    _SLOT_SCHEMA,
                        'afternoon':  _SLOT_SCHEMA,
                        'evening':    _SLOT_SCHEMA,
                        'accommodation': {
                            'type': 'object',
                            'properties': {
                                'suggestion':     {'type': 'string'},
                                'estimated_cost': {'type': 'number'},
                            },
                        },
                        'daily_total': {'type': 'number'},
                        'notes':       {'type': 'string'},
                    },
                    'required': ['day_number', 'date', 'location', 'morning', 'afternoon', 'evening'],
                },
            },
            'total_estimated_cost': {'type': 'number'},
            'tips': {'type': 'array', 'items': {'type': 'string'}},
        },
        'required': ['days', 'total_estimated_cost'],
    },
}

BUDGET_TOOL = {
    'name': 'create_budget_breakdown',
    'description': 'Generate a travel budget breakdown by category',
    'input_schema': {
        'type': 'object',
        'properties': {
            'categories': {
                'type': 'object',
                'description': 'Keys: accommodation, food, fuel, activities, miscellaneous',
                'additionalProperties': {
                    'type': 'object',
                    'properties': {
                        'total': {'type': 'number'},
                        'notes': {'type': 'string'},
                    },
                    'required': ['total'],
                },
            },
            'total_estimated_cost': {'type': 'number'},
            'savings_tips': {'type': 'array', 'items': {'type': 'string'}},
        },
        'required': ['categories', 'total_estimated_cost'],
    },
}

RECOMMEND_TOOL = {
    'name': 'recommend_destinations',
    'description': 'Return personalised road-trip destination recommendations',
    'input_schema': {
        'type': 'object',
        'properties': {
            'recommendations': {
                'type': 'array',
                'items': {
                    'type': 'object',
                    'properties': {
                        'name': {'type': 'string'},
                        'location': {'type': 'string'},
                        'state': {'type': 'string'},
                        'description': {'type': 'string'},
                        'best_for': {'type': 'array', 'items': {'type': 'string'}},
                        'estimated_cost_per_day': {'type': 'number'},
                        'best_time_to_visit': {'type': 'string'},
                        'why_recommended': {'type': 'string'},
                        'match_score': {'type': 'number', 'description': '0-100 fit with the preferences'},
                        'highlights': {'type': 'array', 'items': {'type': 'string'}},
                    },
                    'required': ['name', 'location', 'description', 'why_recommended', 'match_score'],
                },
            },
            'overall_tips': {'type': 'array', 'items': {'type': 'string'}},
        },
        'required': ['recommendations'],
    },
}


def _trip_lines(details: TripDetails) -> str:
    return '\n'.join([
        f'- Dates: {details.start_date or "flexible"} to {details.end_date or "flexible"}',
        f'- Budget: {details.budget if details.budget is not None else "Not specified"}',
        f'- Travelers: {details.travelers} people',
        f'- Vehicle: {details.vehicle_type or "Not specified"}',
        f'- Fuel type: {details.fuel_type or "Not specified"}',
    ])


class _ToolCaller:
    """Shared plumbing: one forced tool call, errors mapped to the taxonomy."""

    def __init__(self, client: AsyncAnthropic | None = None, model: str | None = None):
        self._client = client or AsyncAnthropic()
        self._model = model or config.PLANNER_MODEL

    async def _call_tool(self, tool: dict, system: str, prompt: str, max_tokens: int) -> dict:
        try:
            message = await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                system=system,
                messages=[{'role': 'user', 'content': prompt}],
                tools=[tool],
                tool_choice={'type': 'tool', 'name': tool['name']},
            )
        except anthropic.RateLimitError as exc:
            logger.warning('AI gateway rate limited (%s): %s', tool['name'], exc)
            raise RateLimitedError('Rate limit exceeded. Please try again later.') from exc
        except anthropic.APIError as exc:
            logger.warning('AI gateway error (%s): %s', tool['name'], exc)
            raise ServiceError(f'AI service error: {exc}') from exc

        for block in message.content:
            if getattr(block, 'type', None) == 'tool_use' and getattr(block, 'name', None) == tool['name']:
                if isinstance(block.input, dict):
                    return block.input
        raise MalformedResponseError('Invalid AI response format')


class RouteOptimizer(_ToolCaller):

    async def optimize(
        self,
        start: Waypoint,
        end: Waypoint,
        stops: list[Waypoint],
        preferences: OptimizePreferences | None = None,
    ) -> OptimizationResult:
        """Ask for a better visiting order of ``stops``; the permutation is validated."""
        preferences = preferences or OptimizePreferences()
        stop_lines = '\n'.join(
            f'{idx}. {wp.name or wp.address or "Stop"} ({wp.lat}, {wp.lng})'
            for idx, wp in enumerate(stops)
        )
        system = (
            'You are a route optimisation expert. Reorder the intermediate stops to create '
            'the most efficient road trip, considering total distance, logical geographic '
            'progression, fuel efficiency and time. Answer only through the optimize_route tool.'
        )
        prompt = (
            f'START: {start.name} ({start.lat}, {start.lng})\n\n'
            f'INTERMEDIATE STOPS (0-based):\n{stop_lines}\n\n'
            f'END: {end.name} ({end.lat}, {end.lng})\n\n'
            f'Preferences: {preferences.model_dump_json()}\n\n'
            'Return every intermediate index exactly once, in the optimised visiting order.'
        )
        data = await self._call_tool(OPTIMIZE_TOOL, system, prompt, max_tokens=1024)

        order = data.get('optimized_indices')
        validate_permutation(order, len(stops))
        try:
            result = OptimizationResult(
                order=order,
                reasoning=data.get('reasoning') or '',
                estimated_savings=data.get('estimated_savings'),
            )
        except ValidationError as exc:
            raise MalformedResponseError('Optimisation result has an unexpected shape') from exc
        logger.info('Route optimiser proposed order %s for %d stop(s)', result.order, len(stops))
        return result


class ItineraryGenerator(_ToolCaller):

    async def generate(self, waypoints: list[Waypoint], details: TripDetails) -> GeneratedItinerary:
        destinations = '\n'.join(
            f'{idx + 1}. {wp.name}' + (f' ({wp.address})' if wp.address else '')
            for idx, wp in enumerate(waypoints)
        )
        system = (
            'You are an expert road-trip planner. Create day-by-day itineraries that are '
            'realistically paced and budget-conscious, account for driving time between '
            'stops, and give timing and estimated costs for every activity.'
        )
        prompt = (
            f'Create a detailed itinerary for this trip.\n\nDESTINATIONS:\n{destinations}\n\n'
            f'TRIP DETAILS:\n{_trip_lines(details)}\n\n'
            'Plan morning, afternoon and evening activities for each day, with accommodation.'
        )
        data = await self._call_tool(ITINERARY_TOOL, system, prompt, max_tokens=6000)
        try:
            result = GeneratedItinerary.model_validate(data)
        except ValidationError as exc:
            raise MalformedResponseError('Generated itinerary has an unexpected shape') from exc
        logger.info('AI itinerary: %d day(s), total %.0f', len(result.days), result.total_estimated_cost)
        return result

    async def budget_breakdown(
        self,
        waypoints: list[Waypoint],
        details: TripDetails,
        distance_km: float | None = None,
    ) -> BudgetBreakdown:
        destinations = '\n'.join(f'{idx + 1}. {wp.name}' for idx, wp in enumerate(waypoints))
        system = (
            'You are a travel budgeting specialist for road trips. Give realistic cost '
            'estimates for accommodation, food, fuel, activities and miscellaneous spend.'
        )
        prompt = (
            f'Create a budget breakdown for this trip.\n\nDESTINATIONS:\n{destinations}\n\n'
            f'TRIP DETAILS:\n{_trip_lines(details)}\n'
            f'- Estimated distance: {f"{distance_km:.0f} km" if distance_km else "Unknown"}\n'
            f'- Vehicle mileage: {details.mileage_km_per_l or config.DEFAULT_MILEAGE_KM_PER_L} km/l\n'
        )
        data = await self._call_tool(BUDGET_TOOL, system, prompt, max_tokens=2048)
        try:
            return BudgetBreakdown.model_validate(data)
        except ValidationError as exc:
            raise MalformedResponseError('Budget breakdown has an unexpected shape') from exc

    async def recommend_destinations(self, preferences: DestinationPreferences) -> DestinationRecommendations:
        system = (
            'You are a travel expert specialising in road-trip destinations. Recommend '
            'places that suit the traveller, with realistic costs and the best season to go.'
        )
        prompt = (
            'Recommend 5-8 road-trip destinations for these preferences:\n'
            f'- Travel style: {preferences.travel_style or "Any"}\n'
            f'- Budget: {preferences.budget if preferences.budget is not None else "Flexible"}\n'
            f'- Travelers: {preferences.travelers} people\n'
            f'- Season: {preferences.season or "Any"}\n'
            f'- Duration: {f"{preferences.duration} days" if preferences.duration else "Flexible"}\n'
            f'- Interests: {", ".join(preferences.interests) or "General sightseeing"}\n'
            f'- Vehicle: {preferences.vehicle_type or "Not specified"}\n\n'
            'Score each destination 0-100 for how well it matches.'
        )
        data = await self._call_tool(RECOMMEND_TOOL, system, prompt, max_tokens=4096)
        try:
            result = DestinationRecommendations.model_validate(data)
        except ValidationError as exc:
            raise MalformedResponseError('Destination recommendations have an unexpected shape') from exc
        result.recommendations.sort(key=lambda r: r.match_score, reverse=True)
        logger.info('AI recommended %d destination(s)', len(result.recommendations))
        return result


# ---------------------------------------------------------------------------
# Shared clients & FastAPI dependency providers
# ---------------------------------------------------------------------------

_http_client: httpx.AsyncClient | None = None
_anthropic_client: AsyncAnthropic | None = None


async def open_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(
            timeout=config.HTTP_TIMEOUT_SECONDS,
            headers={'User-Agent': 'TripWeavePlanner/1.0'},
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def _anthropic() -> AsyncAnthropic:
    global _anthropic_client
    if _anthropic_client is None:
        if not config.ANTHROPIC_API_KEY:
            raise ServiceError('AI service is not configured')
        try:
            _anthropic_client = AsyncAnthropic(api_key=config.ANTHROPIC_API_KEY)
        except anthropic.AnthropicError as exc:
            raise ServiceError('AI service is not configured') from exc
    return _anthropic_client


async def get_maps_client() -> MapsClient:
    return MapsClient(await open_http_client())


def get_optimizer() -> RouteOptimizer:
    return RouteOptimizer(_anthropic())


def get_generator() -> ItineraryGenerator:
    return ItineraryGenerator(_anthropic())
