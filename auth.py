"""
auth.py — Authentication router for the planner API (FastAPI)

Provides:
  - JWT helpers (encode / decode)
  - get_current_user dependency (attach to any route that needs a logged-in user)
  - Login and per-user rate limiters (Redis sliding window, in-memory fallback)
  - Routes: POST /auth/login, POST /auth/logout, GET /auth/me

JWT lives in an httpOnly cookie called 'tw_token'.
Token TTL: 8 hours, sliding (re-issued by the middleware in app.py after every
authenticated request, via request.state.slide_token).
"""

import logging
import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import config
from database import get_db
from models import User
from redis_client import get_redis
from schemas import LoginRequest

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix='/auth', tags=['auth'])

# ── Constants ────────────────────────────────────────────────────────────────

COOKIE_NAME   = 'tw_token'
TOKEN_TTL_H   = 8          # hours
BCRYPT_ROUNDS = 12

# ── Login rate limiting ───────────────────────────────────────────────────────
# Failed attempts per IP in a sliding window.
# Redis path:  sorted set  ratelimit:login:{ip}  (score = member = timestamp)
# Fallback:    in-memory dict per worker.
LOGIN_MAX_ATTEMPTS   = 10
LOGIN_WINDOW_SECONDS = 300

_login_attempts: dict = defaultdict(list)
_login_lock = threading.Lock()


def _check_login_rate_limit(ip: str) -> bool:
    """Return True if the request should be allowed, False if the IP is locked out."""
    now = time.time()
    r = get_redis()

    if r is not None:
        try:
            key = f'ratelimit:login:{ip}'
            pipe = r.pipeline()
            pipe.zremrangebyscore(key, '-inf', now - LOGIN_WINDOW_SECONDS)
            pipe.zcard(key)
            pipe.expire(key, LOGIN_WINDOW_SECONDS)
            _, count, _ = pipe.execute()
            return count < LOGIN_MAX_ATTEMPTS
        except Exception as exc:
            logger.warning('Redis login rate-limit check error: %s; falling back', exc)

    with _login_lock:
        _login_attempts[ip] = [t for t in _login_attempts[ip] if now - t < LOGIN_WINDOW_SECONDS]
        return len(_login_attempts[ip]) < LOGIN_MAX_ATTEMPTS


def _record_login_failure(ip: str) -> None:
    now = time.time()
    r = get_redis()

    if r is not None:
        try:
            key = f'ratelimit:login:{ip}'
            pipe = r.pipeline()
            pipe.zadd(key, {str(now): now})
            pipe.expire(key, LOGIN_WINDOW_SECONDS)
            pipe.execute()
            return
        except Exception as exc:
            logger.warning('Redis login failure record error: %s; falling back', exc)

    with _login_lock:
        _login_attempts[ip].append(now)


# ── Per-user rate limiting for provider-backed endpoints ─────────────────────
# Keyed by (user_id, endpoint) so AI generation and route optimisation have
# independent budgets.

RATE_LIMIT_RULES: dict[str, tuple[int, int]] = {
    # endpoint_key -> (max_requests, window_seconds)
    'ai':       (20, 600),
    'optimize': (30, 600),
    'maps':     (120, 600),
}

_user_requests: dict = defaultdict(list)
_user_rate_lock = threading.Lock()


def check_user_rate_limit(user_id: int, endpoint: str) -> tuple[bool, int]:
    """
    Check whether user_id is within their limit for the endpoint key.

    Returns (allowed, retry_after_seconds). An allowed request is recorded.
    """
    rule = RATE_LIMIT_RULES.get(endpoint)
    if rule is None:
        return True, 0

    max_requests, window = rule
    now = time.time()
    r = get_redis()

    if r is not None:
        try:
            rkey = f'ratelimit:user:{user_id}:{endpoint}'
            pipe = r.pipeline()
            pipe.zremrangebyscore(rkey, '-inf', now - window)
            pipe.zrange(rkey, 0, -1, withscores=True)
            pipe.expire(rkey, window)
            _, entries, _ = pipe.execute()

            if len(entries) >= max_requests:
                oldest_score = min(score for _, score in entries)
                return False, int(window - (now - oldest_score)) + 1

            r.zadd(rkey, {str(now): now})
            r.expire(rkey, window)
            return True, 0
        except Exception as exc:
            logger.warning('Redis user rate-limit error: %s; falling back', exc)

    mem_key = (user_id, endpoint)
    with _user_rate_lock:
        _user_requests[mem_key] = [t for t in _user_requests[mem_key] if now - t < window]
        if len(_user_requests[mem_key]) >= max_requests:
            oldest = min(_user_requests[mem_key])
            return False, int(window - (now - oldest)) + 1
        _user_requests[mem_key].append(now)
        return True, 0


def enforce_rate_limit(user: User, endpoint: str) -> None:
    allowed, retry_after = check_user_rate_limit(user.id, endpoint)
    if not allowed:
        logger.warning('Rate limit hit: user=%d endpoint=%s', user.id, endpoint)
        raise HTTPException(
            status_code=429,
            detail=f'Too many requests. Try again in {retry_after} seconds.',
            headers={'Retry-After': str(retry_after)},
        )


# ── Password & JWT helpers ───────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode('utf-8')


def _check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError as exc:
        logger.warning('bcrypt check error: %s', exc)
        return False


def _encode_token(user_id: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        'sub': str(user_id),   # PyJWT 2.x requires sub to be a string
        'iat': now,
        'exp': now + timedelta(hours=TOKEN_TTL_H),
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm='HS256')


def _decode_token(token: str) -> dict:
    """Raise jwt.PyJWTError if invalid or expired."""
    return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=['HS256'])


def set_auth_cookie(response, token: str) -> None:
    response.set_cookie(
        COOKIE_NAME, token,
        httponly=True,
        samesite='lax',
        secure=config.IS_PRODUCTION,
        max_age=TOKEN_TTL_H * 3600,
        path='/',
    )


# ── Dependency ───────────────────────────────────────────────────────────────

async def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Validate the JWT cookie and return the active User.

    State-changing requests must carry X-Requested-With: XMLHttpRequest, which
    a cross-site page cannot attach. A fresh token is left on request.state
    for the sliding-cookie middleware.
    """
    if request.method in ('POST', 'PUT', 'DELETE', 'PATCH'):
        if request.headers.get('X-Requested-With') != 'XMLHttpRequest':
            raise HTTPException(status_code=403, detail='Forbidden: missing required request header')

    token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail='Authentication required')

    try:
        payload = _decode_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='Session expired, please log in again')
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail='Invalid token, please log in again')

    user = await run_in_threadpool(db.get, User, int(payload['sub']))
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail='Account not found or disabled')

    request.state.slide_token = _encode_token(user.id)
    return user


# ── Routes ───────────────────────────────────────────────────────────────────

@auth_router.post('/login')
async def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    """POST /auth/login — { email, password } → sets httpOnly cookie."""
    client_ip = request.client.host if request.client else '0.0.0.0'
    if not _check_login_rate_limit(client_ip):
        logger.warning('Login rate limit exceeded for IP %s', client_ip)
        raise HTTPException(status_code=429, detail='Too many login attempts. Please wait and try again.')

    email = body.email.strip().lower()

    def _authenticate():
        user = db.query(User).filter_by(email=email).first()
        if not user or not user.is_active or not _check_password(body.password, user.password_hash):
            return None
        user.last_login_at = datetime.now(timezone.utc)
        db.commit()
        return user

    user = await run_in_threadpool(_authenticate)
    if user is None:
        # Generic message; don't reveal whether the email exists
        _record_login_failure(client_ip)
        raise HTTPException(status_code=401, detail='Invalid email or password')

    response = JSONResponse({'status': 'ok', 'user': user.to_dict()})
    set_auth_cookie(response, _encode_token(user.id))
    logger.info('Login: user_id=%d', user.id)
    return response


@auth_router.post('/logout')
async def logout():
    """POST /auth/logout — clears the auth cookie."""
    response = JSONResponse({'status': 'ok'})
    response.delete_cookie(COOKIE_NAME, path='/')
    return response


@auth_router.get('/me')
async def me(current_user: User = Depends(get_current_user)):
    """GET /auth/me — returns the current user's profile."""
    return {'user': current_user.to_dict()}
