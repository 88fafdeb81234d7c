#!/usr/bin/env python3
"""
TripWeave Planner — Backend API (FastAPI, async)

- Route, waypoint and day-plan editing through a per-user ItineraryStore (planner.py)
- Saved itineraries, PDF export and public share links (itineraries.py)
- httpx.AsyncClient for Google Maps, AsyncAnthropic for AI generation (services.py)
- Depends(get_current_user) on every non-public route
- run_in_threadpool wraps synchronous SQLAlchemy / bcrypt calls
"""

import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

import config
from auth import auth_router, enforce_rate_limit, get_current_user, set_auth_cookie
from database import init_db
from errors import PlanningError
from itineraries import itineraries_router, shared_router
from models import User
from planner import flush_stores, planner_router
from redis_client import get_redis
from schemas import BudgetRequest, DestinationPreferences, GenerateItineraryRequest, NearbyPoisRequest
from services import (
    ItineraryGenerator,
    MapsClient,
    close_http_client,
    get_generator,
    get_maps_client,
    open_http_client,
)

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(title='TripWeave Planner API', docs_url=None, redoc_url=None)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


# ── Security headers ──────────────────────────────────────────────────────────
@app.middleware('http')
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options']        = 'DENY'
    response.headers['Referrer-Policy']        = 'strict-origin-when-cross-origin'
    response.headers['Permissions-Policy']     = 'microphone=(), camera=()'
    if config.IS_PRODUCTION:
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    return response


# ── Sliding JWT cookie ────────────────────────────────────────────────────────
@app.middleware('http')
async def slide_auth_cookie(request: Request, call_next):
    """Re-issue the auth cookie with a fresh TTL after each authenticated request."""
    response = await call_next(request)
    token = getattr(request.state, 'slide_token', None)
    if token:
        set_auth_cookie(response, token)
    return response


# ── Errors → { "error": "..." } ───────────────────────────────────────────────
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={'error': exc.detail},
                        headers=getattr(exc, 'headers', None))


@app.exception_handler(PlanningError)
async def planning_error_handler(request: Request, exc: PlanningError):
    if exc.status_code >= 500:
        logger.warning('%s on %s %s: %s', type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={'error': exc.message})


# ── Router registration ───────────────────────────────────────────────────────
app.include_router(auth_router)
app.include_router(itineraries_router)
app.include_router(shared_router)
app.include_router(planner_router)

# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------

@app.on_event('startup')
async def startup():
    await open_http_client()
    await run_in_threadpool(init_db)

    if get_redis() is not None:
        logger.info('Redis connected (geocode cache and rate limiters shared)')
    else:
        logger.warning('Redis unavailable; using in-memory fallbacks (set REDIS_URL to enable)')


@app.on_event('shutdown')
async def shutdown():
    await flush_stores()
    await close_http_client()


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get('/health')
async def health():
    return {'status': 'ok', 'message': f'TripWeave planner is running on {config.PLANNER_MODEL}'}


@app.post('/ai/itinerary')
async def ai_itinerary(
    body: GenerateItineraryRequest,
    current_user: User = Depends(get_current_user),
    generator: ItineraryGenerator = Depends(get_generator),
):
    """Stateless AI itinerary for any waypoint list (the planner uses /planner/generate)."""
    enforce_rate_limit(current_user, 'ai')
    generated = await generator.generate(body.waypoints, body.details)
    return {'itinerary': generated.model_dump(mode='json')}


@app.post('/ai/budget')
async def ai_budget(
    body: BudgetRequest,
    current_user: User = Depends(get_current_user),
    generator: ItineraryGenerator = Depends(get_generator),
):
    enforce_rate_limit(current_user, 'ai')
    breakdown = await generator.budget_breakdown(body.waypoints, body.details, body.distance_km)
    return {'budget': breakdown.model_dump(mode='json')}


@app.post('/ai/recommend')
async def ai_recommend(
    body: DestinationPreferences,
    current_user: User = Depends(get_current_user),
    generator: ItineraryGenerator = Depends(get_generator),
):
    enforce_rate_limit(current_user, 'ai')
    result = await generator.recommend_destinations(body)
    return {'recommendations': result.model_dump(mode='json')}


@app.post('/pois/nearby')
async def pois_nearby(
    body: NearbyPoisRequest,
    current_user: User = Depends(get_current_user),
    maps: MapsClient = Depends(get_maps_client),
):
    """Fuel and food stops along a route, best effort."""
    enforce_rate_limit(current_user, 'maps')
    categories = [name for name, wanted in (('fuel', body.fuel), ('food', body.food)) if wanted]
    pois = await maps.nearby_pois(body.coordinates, categories)
    return {'pois': [poi.model_dump(mode='json') for poi in pois]}


if __name__ == '__main__':
    import uvicorn
    uvicorn.run('app:app', host='0.0.0.0', port=8000, reload=not config.IS_PRODUCTION)
