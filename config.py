"""
config.py — Environment-driven settings for the TripWeave planner API.

Every tunable lives here so that routers, the planner store and the service
clients read one set of values. Values come from the process environment; a
.env file next to this module is loaded first for local development.
"""

import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, '').strip().lower()
    if not raw:
        return default
    return raw in ('1', 'true', 'yes', 'on')


# ── Runtime ───────────────────────────────────────────────────────────────────
APP_ENV          = os.getenv('APP_ENV', 'development')
IS_PRODUCTION    = APP_ENV == 'production'
PUBLIC_BASE_URL  = os.getenv('PUBLIC_BASE_URL', 'http://localhost:8000').rstrip('/')
JWT_SECRET_KEY   = os.getenv('JWT_SECRET_KEY', 'dev-only-change-me')

# ── External providers ────────────────────────────────────────────────────────
GOOGLE_MAPS_API_KEY  = os.getenv('GOOGLE_MAPS_API_KEY', '')
ANTHROPIC_API_KEY    = os.getenv('ANTHROPIC_API_KEY', '').strip()
PLANNER_MODEL        = os.getenv('PLANNER_MODEL', 'claude-haiku-4-5-20251001')
HTTP_TIMEOUT_SECONDS = _env_float('HTTP_TIMEOUT_SECONDS', 10.0)
CACHE_TTL_SECONDS    = _env_int('CACHE_TTL_SECONDS', 86400)

# ── Planning ──────────────────────────────────────────────────────────────────
DAILY_DISTANCE_KM          = _env_float('DAILY_DISTANCE_KM', 400.0)
MAX_INTERMEDIATE_WAYPOINTS = _env_int('MAX_INTERMEDIATE_WAYPOINTS', 10)
AUTOSAVE_DELAY_SECONDS     = _env_float('AUTOSAVE_DELAY_SECONDS', 3.0)
PRESERVE_DAY_EDITS         = _env_bool('PRESERVE_DAY_EDITS', False)

# Cost model used for the derived day summaries (local currency units).
LODGING_COST_ESTIMATE     = _env_float('LODGING_COST_ESTIMATE', 3000.0)
LODGING_COST_RANGE        = os.getenv('LODGING_COST_RANGE', '₹2,000 - ₹4,000')
DEFAULT_MILEAGE_KM_PER_L  = _env_float('DEFAULT_MILEAGE_KM_PER_L', 15.0)
DEFAULT_FUEL_PRICE        = _env_float('DEFAULT_FUEL_PRICE', 110.0)

# ── Storage & HTTP ────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///tripweave.db')
REDIS_URL    = os.getenv('REDIS_URL', '').strip()
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv('CORS_ORIGINS', 'http://localhost:5173,http://127.0.0.1:5173').split(',')
    if o.strip()
]
