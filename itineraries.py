"""
itineraries.py — Saved-itinerary router (FastAPI)

Routes (authenticated):
  GET    /itineraries                 — list the user's itineraries (no plan payload)
  POST   /itineraries                 — create an itinerary
  GET    /itineraries/{id}            — full itinerary
  PUT    /itineraries/{id}            — partial update
  DELETE /itineraries/{id}            — soft-delete (also revokes the share link)
  GET    /itineraries/{id}/export.pdf — PDF document

Public:
  GET    /shared/{slug}               — read-only view of a public itinerary
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

import waypoints as wp_ops
from auth import get_current_user
from database import get_db, get_session_factory
from export import ExportOptions, generate_share_slug, itinerary_to_pdf, share_url
from models import User
from repository import ItineraryRepository, get_shared
from schemas import Itinerary, ItineraryCreate, ItineraryUpdate

logger = logging.getLogger(__name__)

itineraries_router = APIRouter(prefix='/itineraries', tags=['itineraries'])
shared_router = APIRouter(prefix='/shared', tags=['shared'])


# ── Helpers ───────────────────────────────────────────────────────────────────

def _repository(
    session_factory: sessionmaker = Depends(get_session_factory),
    current_user: User = Depends(get_current_user),
) -> ItineraryRepository:
    return ItineraryRepository(session_factory, current_user.id)


def _present(itinerary: Itinerary) -> dict:
    body = itinerary.model_dump(mode='json')
    body['share_url'] = share_url(itinerary)
    body['route_is_stale'] = wp_ops.route_is_stale(itinerary.waypoints, itinerary.route_summary)
    return body


def _settle_sharing(itinerary: Itinerary) -> None:
    if not itinerary.is_public:
        itinerary.share_slug = None
    elif not itinerary.share_slug:
        itinerary.share_slug = generate_share_slug(itinerary.title)


# ── Routes ────────────────────────────────────────────────────────────────────

@itineraries_router.get('')
async def list_itineraries(repo: ItineraryRepository = Depends(_repository)):
    """GET /itineraries — newest first."""
    items = await run_in_threadpool(repo.list_summaries)
    return {'itineraries': items}


@itineraries_router.post('', status_code=201)
async def create_itinerary(body: ItineraryCreate, repo: ItineraryRepository = Depends(_repository)):
    itinerary = Itinerary(
        title=body.title or 'New Trip',
        waypoints=wp_ops.normalise(body.waypoints) if body.waypoints else wp_ops.default_waypoints(),
        days=body.days,
        route_summary=body.route_summary,
        details=body.details,
        is_public=body.is_public,
        share_slug=body.share_slug,
    )
    _settle_sharing(itinerary)
    itinerary.id = await run_in_threadpool(repo.create, itinerary)
    logger.info('Itinerary created: id=%d %r by user %d', itinerary.id, itinerary.title, repo.owner_id)
    return {'itinerary': _present(itinerary)}


@itineraries_router.get('/{itinerary_id}')
async def get_itinerary(itinerary_id: int, repo: ItineraryRepository = Depends(_repository)):
    itinerary = await run_in_threadpool(repo.get, itinerary_id)
    return {'itinerary': _present(itinerary)}


@itineraries_router.put('/{itinerary_id}')
async def update_itinerary(
    itinerary_id: int,
    body: ItineraryUpdate,
    repo: ItineraryRepository = Depends(_repository),
):
    """PUT /itineraries/{id} — only the fields present in the body change."""
    def _update():
        itinerary = repo.get(itinerary_id)
        sent = body.model_fields_set

        if 'title' in sent and body.title:
            itinerary.title = body.title
        if 'waypoints' in sent and body.waypoints is not None:
            itinerary.waypoints = wp_ops.normalise(body.waypoints)
        if 'days' in sent and body.days is not None:
            itinerary.days = body.days
        if 'route_summary' in sent:
            itinerary.route_summary = body.route_summary
        if 'details' in sent and body.details is not None:
            itinerary.details = body.details
        if 'is_public' in sent and body.is_public is not None:
            itinerary.is_public = body.is_public
        if 'share_slug' in sent:
            itinerary.share_slug = body.share_slug

        _settle_sharing(itinerary)
        repo.update(itinerary)
        return itinerary

    itinerary = await run_in_threadpool(_update)
    logger.info('Itinerary updated: id=%d by user %d', itinerary_id, repo.owner_id)
    return {'itinerary': _present(itinerary)}


@itineraries_router.delete('/{itinerary_id}')
async def delete_itinerary(itinerary_id: int, repo: ItineraryRepository = Depends(_repository)):
    await run_in_threadpool(repo.delete, itinerary_id)
    return {'status': 'ok', 'message': f'Itinerary #{itinerary_id} deleted'}


@itineraries_router.get('/{itinerary_id}/export.pdf')
async def export_itinerary_pdf(
    itinerary_id: int,
    cover: bool = Query(default=True),
    summaries: bool = Query(default=True),
    directions: bool = Query(default=False),
    share_link: bool = Query(default=True),
    repo: ItineraryRepository = Depends(_repository),
):
    itinerary = await run_in_threadpool(repo.get, itinerary_id)
    options = ExportOptions(
        include_cover_page=cover,
        include_day_summaries=summaries,
        include_turn_by_turn=directions,
        include_share_link=share_link,
    )
    pdf_bytes = await run_in_threadpool(itinerary_to_pdf, itinerary, options)
    filename = generate_share_slug(itinerary.title).rsplit('-', 1)[0] or 'itinerary'
    return Response(
        content=pdf_bytes,
        media_type='application/pdf',
        headers={'Content-Disposition': f'attachment; filename="{filename}.pdf"'},
    )


@shared_router.get('/{slug}')
async def get_shared_itinerary(slug: str, db: Session = Depends(get_db)):
    """GET /shared/{slug} — no authentication; 404 unless the itinerary is public."""
    itinerary = await run_in_threadpool(get_shared, db, slug)
    body = _present(itinerary)
    body.pop('id', None)
    return {'itinerary': body}
