"""
SQLAlchemy ORM models for the TripWeave planner.

Two models:
  User            — planner accounts (created via manage.py, no self-registration)
  ItineraryRecord — one saved itinerary; the aggregate's nested parts
                    (waypoints, days, route summary, trip details) are stored as
                    JSON text so an itinerary round-trips in a single row

Default database: SQLite (tripweave.db).
Production: set DATABASE_URL to a PostgreSQL connection string.
"""

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, String, Text,
)
from sqlalchemy.orm import declarative_base, relationship


def _utcnow():
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


Base = declarative_base()


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------

class User(Base):
    __tablename__ = 'users'

    id            = Column(Integer, primary_key=True)
    email         = Column(String(255), unique=True, nullable=False, index=True)
    full_name     = Column(String(255), nullable=False)
    password_hash = Column(String(255), nullable=False)
    is_active     = Column(Boolean, nullable=False, default=True)
    created_at    = Column(DateTime, nullable=False, default=_utcnow)
    last_login_at = Column(DateTime, nullable=True)

    itineraries = relationship('ItineraryRecord', backref='owner', lazy='dynamic')

    def to_dict(self):
        return {
            'id':            self.id,
            'email':         self.email,
            'full_name':     self.full_name,
            'is_active':     self.is_active,
            'created_at':    self.created_at.isoformat() if self.created_at else None,
            'last_login_at': self.last_login_at.isoformat() if self.last_login_at else None,
        }

    def __repr__(self):
        return f'<User {self.email}>'


# ---------------------------------------------------------------------------
# ItineraryRecord
# ---------------------------------------------------------------------------

class ItineraryRecord(Base):
    __tablename__ = 'itineraries'

    id         = Column(Integer, primary_key=True)
    owner_id   = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    title      = Column(String(255), nullable=False, default='New Trip')

    # ── Aggregate parts (JSON) ───────────────────────────────────────────────
    waypoints     = Column(Text, nullable=False, default='[]')
    days          = Column(Text, nullable=False, default='[]')
    route_summary = Column(Text, nullable=True)
    details       = Column(Text, nullable=True)

    # ── Sharing ──────────────────────────────────────────────────────────────
    is_public  = Column(Boolean, nullable=False, default=False)
    share_slug = Column(String(120), unique=True, nullable=True, index=True)

    is_deleted = Column(Boolean, nullable=False, default=False)   # soft-delete
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    def to_dict(self, include_plan=True):
        d = {
            'id':         self.id,
            'owner_id':   self.owner_id,
            'title':      self.title,
            'is_public':  self.is_public,
            'share_slug': self.share_slug,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_plan:
            d.update({
                'waypoints':     json.loads(self.waypoints) if self.waypoints else [],
                'days':          json.loads(self.days)      if self.days      else [],
                'route_summary': json.loads(self.route_summary) if self.route_summary else None,
                'details':       json.loads(self.details)       if self.details       else None,
            })
        return d

    def __repr__(self):
        return f'<ItineraryRecord #{self.id} {self.title!r}>'
