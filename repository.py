"""
repository.py — Persistence adapter between the Itinerary aggregate and the
itineraries table.

ItineraryRepository is what ItineraryStore.save() calls (through
run_in_threadpool); it is also used directly by the /itineraries router.
Each call opens and closes its own session, since auto-saves fire outside
any request.
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from errors import ItineraryNotFound, ShareSlugTakenError
from models import ItineraryRecord
from schemas import Itinerary

logger = logging.getLogger(__name__)


def record_to_itinerary(record: ItineraryRecord) -> Itinerary:
    data = record.to_dict()
    return Itinerary.model_validate({
        'id':            record.id,
        'title':         record.title,
        'waypoints':     data['waypoints'],
        'days':          data['days'],
        'route_summary': data['route_summary'],
        'details':       data['details'] or {},
        'is_public':     record.is_public,
        'share_slug':    record.share_slug,
        'created_at':    record.created_at,
        'updated_at':    record.updated_at,
    })


def _apply(record: ItineraryRecord, itinerary: Itinerary) -> None:
    """Copy every persisted field of the aggregate onto the row."""
    record.title         = itinerary.title or 'New Trip'
    record.waypoints     = json.dumps([wp.model_dump(mode='json') for wp in itinerary.waypoints])
    record.days          = json.dumps([day.model_dump(mode='json') for day in itinerary.days])
    record.route_summary = (json.dumps(itinerary.route_summary.model_dump(mode='json'))
                            if itinerary.route_summary else None)
    record.details       = json.dumps(itinerary.details.model_dump(mode='json'))
    record.is_public     = itinerary.is_public
    record.share_slug    = itinerary.share_slug if itinerary.is_public else None
    record.updated_at    = datetime.now(timezone.utc)


def _slug_owner(session: Session, slug: str | None, exclude_id: int | None = None) -> int | None:
    if not slug:
        return None
    q = session.query(ItineraryRecord.id).filter(ItineraryRecord.share_slug == slug)
    if exclude_id is not None:
        q = q.filter(ItineraryRecord.id != exclude_id)
    row = q.first()
    return row[0] if row else None


def get_shared(session: Session, slug: str) -> Itinerary:
    """Public lookup by share slug; private or deleted itineraries are invisible."""
    record = (
        session.query(ItineraryRecord)
        .filter_by(share_slug=slug, is_public=True, is_deleted=False)
        .first()
    )
    if record is None:
        raise ItineraryNotFound('Shared itinerary not found')
    return record_to_itinerary(record)


class ItineraryRepository:

    def __init__(self, session_factory: sessionmaker, owner_id: int):
        self._session_factory = session_factory
        self.owner_id = owner_id

    def _record_or_raise(self, session: Session, itinerary_id: int) -> ItineraryRecord:
        record = session.get(ItineraryRecord, itinerary_id)
        if record is None or record.is_deleted or record.owner_id != self.owner_id:
            raise ItineraryNotFound('Itinerary not found')
        return record

    def _commit(self, session: Session, slug: str | None) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.warning('Itinerary save rejected by the database: %s', exc.orig)
            raise ShareSlugTakenError(f'The share link "{slug}" is already in use') from exc

    def create(self, itinerary: Itinerary) -> int:
        with self._session_factory() as session:
            if itinerary.is_public and _slug_owner(session, itinerary.share_slug) is not None:
                raise ShareSlugTakenError(f'The share link "{itinerary.share_slug}" is already in use')
            record = ItineraryRecord(owner_id=self.owner_id, created_at=itinerary.created_at)
            _apply(record, itinerary)
            session.add(record)
            self._commit(session, itinerary.share_slug)
            session.refresh(record)
            return record.id

    def update(self, itinerary: Itinerary) -> None:
        if itinerary.id is None:
            raise ItineraryNotFound('Itinerary has not been saved yet')
        with self._session_factory() as session:
            record = self._record_or_raise(session, itinerary.id)
            if itinerary.is_public and _slug_owner(session, itinerary.share_slug, itinerary.id) is not None:
                raise ShareSlugTakenError(f'The share link "{itinerary.share_slug}" is already in use')
            _apply(record, itinerary)
            self._commit(session, itinerary.share_slug)

    def get(self, itinerary_id: int) -> Itinerary:
        with self._session_factory() as session:
            return record_to_itinerary(self._record_or_raise(session, itinerary_id))

    def list_summaries(self) -> list[dict]:
        """Summaries (no plan payload) of the owner's itineraries, newest first."""
        with self._session_factory() as session:
            records = (
                session.query(ItineraryRecord)
                .filter_by(owner_id=self.owner_id, is_deleted=False)
                .order_by(ItineraryRecord.updated_at.desc())
                .all()
            )
            return [r.to_dict(include_plan=False) for r in records]

    def delete(self, itinerary_id: int) -> None:
        """Soft-delete; the share link stops resolving and its slug is released."""
        with self._session_factory() as session:
            record = self._record_or_raise(session, itinerary_id)
            record.is_deleted = True
            record.is_public = False
            record.share_slug = None
            record.updated_at = datetime.now(timezone.utc)
            session.commit()
        logger.info('Itinerary soft-deleted: id=%d by user %d', itinerary_id, self.owner_id)
