"""
planner.py — Interactive planning router (FastAPI)

Each user gets one ItineraryStore, which holds their "current itinerary" between
requests. Every route here is a thin adapter over one store operation; the
response is always the store state (itinerary plus dirty/saving/stale flags),
with any operation result alongside it.

  GET    /planner/state
  POST   /planner/new                          POST /planner/load/{itinerary_id}
  PUT    /planner/title                        PUT  /planner/details
  POST   /planner/waypoints                    DELETE /planner/waypoints/{waypoint_id}
  POST   /planner/waypoints/move               PUT  /planner/waypoints/{waypoint_id}/location
  POST   /planner/waypoints/{waypoint_id}/geocode
  POST   /planner/route                        DELETE /planner/route
  POST   /planner/optimize                     POST /planner/generate
  POST   /planner/days/regenerate
  POST   /planner/days/{day_id}/items          PATCH/DELETE /planner/days/{day_id}/items/{item_id}
  POST   /planner/items/move
  POST   /planner/days/{day_id}/split          POST /planner/days/{day_id}/merge
  PUT    /planner/share                        POST /planner/save
"""

import logging

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

import config
import waypoints as wp_ops
from auth import enforce_rate_limit, get_current_user
from database import get_session_factory
from errors import PlanningValidationError
from export import share_url
from itinerary_store import ItineraryStore
from models import User
from repository import ItineraryRepository
from schemas import (
    GeocodeRequest,
    ItemAdd,
    ItemMove,
    ItemUpdate,
    OptimizePreferences,
    ShareSettings,
    TitleUpdate,
    TripDetails,
    WaypointAdd,
    WaypointLocation,
    WaypointMove,
)
from services import ItineraryGenerator, MapsClient, RouteOptimizer, get_generator, get_maps_client, get_optimizer

logger = logging.getLogger(__name__)

planner_router = APIRouter(prefix='/planner', tags=['planner'])

# ── Per-user store registry ───────────────────────────────────────────────────
# In-process only: a store (and its pending auto-save) lives in the worker that
# created it. Unsaved work is lost on restart.

_stores: dict[int, ItineraryStore] = {}


async def get_planner_store(
    session_factory: sessionmaker = Depends(get_session_factory),
    current_user: User = Depends(get_current_user),
) -> ItineraryStore:
    store = _stores.get(current_user.id)
    if store is None:
        store = ItineraryStore(
            ItineraryRepository(session_factory, current_user.id),
            autosave_delay=config.AUTOSAVE_DELAY_SECONDS,
        )
        store.create_new()
        _stores[current_user.id] = store
        logger.info('Planner store opened for user %d', current_user.id)
    return store


async def flush_stores() -> None:
    """Let pending auto-saves finish (called at shutdown)."""
    for store in list(_stores.values()):
        if store.autosaver is not None:
            await store.autosaver.wait_idle()


def reset_stores() -> None:
    for store in _stores.values():
        if store.autosaver is not None:
            store.autosaver.cancel()
    _stores.clear()


def _state(store: ItineraryStore, **extra) -> dict:
    body = store.state()
    body['share_url'] = share_url(store.current) if store.current else None
    body.update(extra)
    return body


# ── Lifecycle ─────────────────────────────────────────────────────────────────

@planner_router.get('/state')
async def planner_state(store: ItineraryStore = Depends(get_planner_store)):
    return _state(store)


@planner_router.post('/new')
async def planner_new(store: ItineraryStore = Depends(get_planner_store)):
    store.create_new()
    return _state(store)


@planner_router.post('/load/{itinerary_id}')
async def planner_load(
    itinerary_id: int,
    session_factory: sessionmaker = Depends(get_session_factory),
    current_user: User = Depends(get_current_user),
    store: ItineraryStore = Depends(get_planner_store),
):
    repo = ItineraryRepository(session_factory, current_user.id)
    itinerary = await run_in_threadpool(repo.get, itinerary_id)
    store.load(itinerary)
    return _state(store)


@planner_router.post('/save')
async def planner_save(store: ItineraryStore = Depends(get_planner_store)):
    await store.save()
    return _state(store)


# ── Metadata ──────────────────────────────────────────────────────────────────

@planner_router.put('/title')
async def planner_title(body: TitleUpdate, store: ItineraryStore = Depends(get_planner_store)):
    store.update_title(body.title)
    return _state(store)


@planner_router.put('/details')
async def planner_details(body: TripDetails, store: ItineraryStore = Depends(get_planner_store)):
    store.update_details(body)
    return _state(store)


@planner_router.put('/share')
async def planner_share(body: ShareSettings, store: ItineraryStore = Depends(get_planner_store)):
    store.update_share_settings(body.is_public, body.share_slug)
    return _state(store)


# ── Waypoints ─────────────────────────────────────────────────────────────────

@planner_router.post('/waypoints', status_code=201)
async def planner_add_waypoint(body: WaypointAdd, store: ItineraryStore = Depends(get_planner_store)):
    waypoint_id = store.add_waypoint(name=body.name, lat=body.lat, lng=body.lng, address=body.address)
    return _state(store, waypoint_id=waypoint_id)


@planner_router.delete('/waypoints/{waypoint_id}')
async def planner_remove_waypoint(waypoint_id: str, store: ItineraryStore = Depends(get_planner_store)):
    store.remove_waypoint(waypoint_id)
    return _state(store)


@planner_router.post('/waypoints/move')
async def planner_move_waypoint(body: WaypointMove, store: ItineraryStore = Depends(get_planner_store)):
    store.move_waypoint(body.from_index, body.to_index)
    return _state(store)


@planner_router.put('/waypoints/{waypoint_id}/location')
async def planner_set_location(
    waypoint_id: str,
    body: WaypointLocation,
    store: ItineraryStore = Depends(get_planner_store),
):
    store.set_waypoint_location(
        waypoint_id, body.lat, body.lng,
        address=body.address, place_id=body.place_id, name=body.name,
    )
    return _state(store)


@planner_router.post('/waypoints/{waypoint_id}/geocode')
async def planner_geocode(
    waypoint_id: str,
    body: GeocodeRequest,
    store: ItineraryStore = Depends(get_planner_store),
    maps: MapsClient = Depends(get_maps_client),
    current_user: User = Depends(get_current_user),
):
    enforce_rate_limit(current_user, 'maps')
    waypoint = await store.geocode_waypoint(maps, waypoint_id, body.query)
    return _state(store, waypoint=waypoint.model_dump(mode='json') if waypoint else None,
                  discarded=waypoint is None)


# ── Route ─────────────────────────────────────────────────────────────────────

@planner_router.post('/route')
async def planner_compute_route(
    store: ItineraryStore = Depends(get_planner_store),
    maps: MapsClient = Depends(get_maps_client),
    current_user: User = Depends(get_current_user),
):
    enforce_rate_limit(current_user, 'maps')
    summary = await store.compute_route(maps)
    return _state(store, discarded=summary is None)


@planner_router.delete('/route')
async def planner_clear_route(store: ItineraryStore = Depends(get_planner_store)):
    store.clear_route()
    return _state(store)


@planner_router.post('/optimize')
async def planner_optimize(
    preferences: OptimizePreferences | None = Body(default=None),
    store: ItineraryStore = Depends(get_planner_store),
    optimizer: RouteOptimizer = Depends(get_optimizer),
    current_user: User = Depends(get_current_user),
):
    enforce_rate_limit(current_user, 'optimize')
    result = await store.optimize_order(optimizer, preferences)
    return _state(store, optimization=result.model_dump(mode='json'))


@planner_router.post('/generate')
async def planner_generate(
    store: ItineraryStore = Depends(get_planner_store),
    generator: ItineraryGenerator = Depends(get_generator),
    current_user: User = Depends(get_current_user),
):
    """Replace the day plans with an AI-written itinerary for the current stops."""
    enforce_rate_limit(current_user, 'ai')
    itinerary = store.current
    stops = wp_ops.route_order(itinerary.waypoints)
    if len(stops) < 2:
        raise PlanningValidationError('Locate at least two waypoints before generating an itinerary')
    generated = await generator.generate(stops, itinerary.details)
    store.apply_generated(generated)
    return _state(store, total_estimated_cost=generated.total_estimated_cost, tips=generated.tips)


# ── Day editor ────────────────────────────────────────────────────────────────

@planner_router.post('/days/regenerate')
async def planner_regenerate_days(store: ItineraryStore = Depends(get_planner_store)):
    store.regenerate_days()
    return _state(store)


@planner_router.post('/days/{day_id}/items', status_code=201)
async def planner_add_item(day_id: str, body: ItemAdd, store: ItineraryStore = Depends(get_planner_store)):
    item_id = store.add_item(day_id, body.kind)
    return _state(store, item_id=item_id)


@planner_router.patch('/days/{day_id}/items/{item_id}')
async def planner_update_item(
    day_id: str,
    item_id: str,
    body: ItemUpdate,
    store: ItineraryStore = Depends(get_planner_store),
):
    fields = {name: getattr(body, name) for name in body.model_fields_set}
    store.update_item(day_id, item_id, **fields)
    return _state(store)


@planner_router.delete('/days/{day_id}/items/{item_id}')
async def planner_remove_item(day_id: str, item_id: str, store: ItineraryStore = Depends(get_planner_store)):
    store.remove_item(day_id, item_id)
    return _state(store)


@planner_router.post('/items/move')
async def planner_move_item(body: ItemMove, store: ItineraryStore = Depends(get_planner_store)):
    store.move_item(body.source_day_id, body.source_index, body.dest_day_id, body.dest_index)
    return _state(store)


@planner_router.post('/days/{day_id}/split')
async def planner_split_day(day_id: str, store: ItineraryStore = Depends(get_planner_store)):
    store.split_day(day_id)
    return _state(store)


@planner_router.post('/days/{day_id}/merge')
async def planner_merge_days(day_id: str, store: ItineraryStore = Depends(get_planner_store)):
    store.merge_days(day_id)
    return _state(store)
