"""
itinerary_store.py — The application-state container for one open itinerary.

ItineraryStore owns the "current itinerary" for a single user: every waypoint,
route and day-plan change goes through it, marks the aggregate dirty and
schedules a debounced auto-save. Calls to external providers (directions,
geocoding, optimisation) happen at its async boundary methods, which validate
first, await the provider, then either apply the result or roll back.

Lifecycle:
    create_new()  → unsaved (no id)
    save()        → saved (id adopted on first create)
    any mutation  → dirty → auto-save (debounced) or save() → saved
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from starlette.concurrency import run_in_threadpool

import config
import day_planner
import waypoints as wp_ops
from errors import LocationNotFound, PlanningValidationError, ServiceError
from export import generate_share_slug
from schemas import (
    DayItemKind,
    DayPlan,
    GeneratedItinerary,
    Itinerary,
    OptimizationResult,
    OptimizePreferences,
    RouteSummary,
    TripDetails,
    Waypoint,
)

logger = logging.getLogger(__name__)


class DayRegenerationPolicy(str, Enum):
    """What a new route summary does to existing day plans."""
    REPLACE = 'replace'                 # always re-derive, discarding manual edits
    PRESERVE_EDITS = 'preserve_edits'   # keep manually edited days until regenerate_days()


class ItineraryRepository(Protocol):
    def create(self, itinerary: Itinerary) -> int: ...

    def update(self, itinerary: Itinerary) -> None: ...


class ItineraryStore:

    def __init__(
        self,
        repository: ItineraryRepository,
        *,
        daily_distance_km: float = config.DAILY_DISTANCE_KM,
        regeneration_policy: DayRegenerationPolicy | None = None,
        autosave_delay: float | None = config.AUTOSAVE_DELAY_SECONDS,
        cost_model: day_planner.CostModel = day_planner.DEFAULT_COST_MODEL,
    ):
        if daily_distance_km <= 0:
            raise PlanningValidationError('Daily driving distance must be positive')
        if regeneration_policy is None:
            regeneration_policy = (DayRegenerationPolicy.PRESERVE_EDITS if config.PRESERVE_DAY_EDITS
                                   else DayRegenerationPolicy.REPLACE)
        self._repository = repository
        self.daily_distance_km = daily_distance_km
        self.regeneration_policy = regeneration_policy
        self.cost_model = cost_model

        self.current: Itinerary | None = None
        self.dirty = False
        self.is_saving = False
        self.days_edited = False
        self._revision = 0
        self._save_lock: asyncio.Lock | None = None
        self._pending_geocode: dict[str, str] = {}
        self.autosaver = AutoSaver(self, autosave_delay) if autosave_delay is not None else None

    # ── State helpers ─────────────────────────────────────────────────────────

    def _require(self) -> Itinerary:
        if self.current is None:
            raise PlanningValidationError('No itinerary is open')
        return self.current

    def _touch(self) -> None:
        itinerary = self._require()
        itinerary.updated_at = datetime.now(timezone.utc)
        self._revision += 1
        self.dirty = True
        if self.autosaver is not None:
            self.autosaver.schedule()

    @property
    def route_is_stale(self) -> bool:
        if self.current is None:
            return False
        return wp_ops.route_is_stale(self.current.waypoints, self.current.route_summary)

    @property
    def autosave_eligible(self) -> bool:
        """Auto-save only after a first manual save, and only for a usable route."""
        if self.current is None or self.current.id is None:
            return False
        return len(wp_ops.resolved(self.current.waypoints)) >= 2

    def state(self) -> dict:
        return {
            'itinerary':      self.current.model_dump(mode='json') if self.current else None,
            'dirty':          self.dirty,
            'is_saving':      self.is_saving,
            'days_edited':    self.days_edited,
            'route_is_stale': self.route_is_stale,
        }

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def create_new(self) -> Itinerary:
        if self.autosaver is not None:
            self.autosaver.cancel()
        self.current = Itinerary(title='New Trip', waypoints=wp_ops.default_waypoints())
        self.dirty = False
        self.days_edited = False
        self._pending_geocode.clear()
        return self.current

    def load(self, itinerary: Itinerary) -> Itinerary:
        if self.autosaver is not None:
            self.autosaver.cancel()
        self.current = itinerary.model_copy(deep=True)
        self.current.waypoints = wp_ops.normalise(self.current.waypoints)
        self.dirty = False
        self.days_edited = False
        self._pending_geocode.clear()
        return self.current

    async def save(self) -> Itinerary:
        """Create on first save, update afterwards. Failures leave the store dirty."""
        itinerary = self._require()
        if self._save_lock is None:
            self._save_lock = asyncio.Lock()

        async with self._save_lock:
            self.is_saving = True
            revision = self._revision
            snapshot = itinerary.model_copy(deep=True)
            saved = False
            try:
                if snapshot.id is None:
                    new_id = await run_in_threadpool(self._repository.create, snapshot)
                    itinerary.id = new_id
                    logger.info('Itinerary created: id=%d %r', new_id, snapshot.title)
                else:
                    await run_in_threadpool(self._repository.update, snapshot)
                    logger.info('Itinerary saved: id=%d', snapshot.id)
                self.dirty = self._revision != revision
                saved = True
            finally:
                self.is_saving = False
                if self.autosaver is not None:
                    self.autosaver.save_finished(saved)
        return itinerary

    # ── Metadata ──────────────────────────────────────────────────────────────

    def update_title(self, title: str) -> None:
        self._require().title = title
        self._touch()

    def update_details(self, details: TripDetails) -> None:
        self._require().details = details
        self._touch()

    def update_share_settings(self, is_public: bool, share_slug: str | None = None) -> None:
        """Local only; the new flags reach the database through save()."""
        itinerary = self._require()
        itinerary.is_public = is_public
        if is_public:
            itinerary.share_slug = share_slug or itinerary.share_slug or generate_share_slug(itinerary.title)
        else:
            itinerary.share_slug = None
        self._touch()

    # ── Waypoints ─────────────────────────────────────────────────────────────

    def update_waypoints(self, waypoints: list[Waypoint]) -> None:
        self._require().waypoints = wp_ops.normalise(waypoints)
        self._touch()

    def add_waypoint(self, name: str = '', lat: float = 0.0, lng: float = 0.0,
                     address: str | None = None) -> str:
        itinerary = self._require()
        before = {wp.id for wp in itinerary.waypoints}
        updated = wp_ops.add_intermediate(itinerary.waypoints, name=name, lat=lat, lng=lng, address=address)
        itinerary.waypoints = updated
        self._touch()
        return next(wp.id for wp in updated if wp.id not in before)

    def remove_waypoint(self, waypoint_id: str) -> None:
        itinerary = self._require()
        itinerary.waypoints = wp_ops.remove_waypoint(itinerary.waypoints, waypoint_id)
        self._pending_geocode.pop(waypoint_id, None)
        self._touch()

    def move_waypoint(self, from_index: int, to_index: int) -> None:
        itinerary = self._require()
        itinerary.waypoints = wp_ops.move_intermediate(itinerary.waypoints, from_index, to_index)
        self._touch()

    def set_waypoint_location(self, waypoint_id: str, lat: float, lng: float,
                              address: str | None = None, place_id: str | None = None,
                              name: str | None = None) -> None:
        itinerary = self._require()
        itinerary.waypoints = wp_ops.set_location(
            itinerary.waypoints, waypoint_id, lat, lng,
            address=address, place_id=place_id, name=name,
        )
        self._touch()

    # ── Route & day derivation ────────────────────────────────────────────────

    def apply_route_summary(self, summary: RouteSummary) -> None:
        itinerary = self._require()
        itinerary.route_summary = summary
        keep_days = (
            self.regeneration_policy is DayRegenerationPolicy.PRESERVE_EDITS
            and self.days_edited
            and itinerary.days
        )
        if keep_days:
            logger.info('Route changed; keeping %d manually edited day(s)', len(itinerary.days))
        else:
            itinerary.days = self._derive(itinerary)
            self.days_edited = False
        self._touch()

    def regenerate_days(self) -> list[DayPlan]:
        itinerary = self._require()
        itinerary.days = self._derive(itinerary)
        self.days_edited = False
        self._touch()
        return itinerary.days

    def _derive(self, itinerary: Itinerary) -> list[DayPlan]:
        return day_planner.derive_days(
            itinerary.waypoints,
            itinerary.route_summary,
            daily_distance_km=self.daily_distance_km,
            start_date=itinerary.details.start_date,
            cost_model=self.cost_model,
        )

    def clear_route(self) -> None:
        self._require().route_summary = None
        self._touch()

    def set_days(self, days: list[DayPlan]) -> None:
        self._require().days = [day.model_copy(deep=True) for day in days]
        self.days_edited = True
        self._touch()

    def apply_generated(self, generated: GeneratedItinerary) -> list[DayPlan]:
        days = day_planner.days_from_generated(generated)
        self.set_days(days)
        return days

    # ── Day editor ────────────────────────────────────────────────────────────

    def _edit_days(self, days: list[DayPlan]) -> None:
        itinerary = self._require()
        if days == itinerary.days:
            return
        itinerary.days = days
        self.days_edited = True
        self._touch()

    def add_item(self, day_id: str, kind: DayItemKind) -> str | None:
        itinerary = self._require()
        days, item_id = day_planner.add_item(itinerary.days, day_id, kind)
        if item_id is not None:
            self._edit_days(days)
        return item_id

    def update_item(self, day_id: str, item_id: str, **fields) -> None:
        self._edit_days(day_planner.update_item(self._require().days, day_id, item_id, **fields))

    def remove_item(self, day_id: str, item_id: str) -> None:
        self._edit_days(day_planner.remove_item(self._require().days, day_id, item_id))

    def move_item(self, source_day_id: str, source_index: int, dest_day_id: str, dest_index: int) -> None:
        self._edit_days(day_planner.move_item(
            self._require().days, source_day_id, source_index, dest_day_id, dest_index,
        ))

    def split_day(self, day_id: str) -> None:
        self._edit_days(day_planner.split_day(self._require().days, day_id))

    def merge_days(self, day_id: str) -> None:
        self._edit_days(day_planner.merge_with_next(self._require().days, day_id))

    # ── External-call boundaries ──────────────────────────────────────────────

    async def compute_route(self, maps) -> RouteSummary | None:
        """Fetch directions for the current stops and re-derive the days.

        Returns None when the waypoints changed while the request was in flight
        (the response is stale and is dropped). A provider failure clears the
        route summary rather than leaving the old one in place.
        """
        itinerary = self._require()
        ordered = wp_ops.validate_for_route(itinerary.waypoints)
        requested = [wp.position for wp in ordered]
        try:
            summary = await maps.compute_route(requested)
        except ServiceError:
            itinerary.route_summary = None
            self._touch()
            raise

        if wp_ops.route_coordinates(itinerary.waypoints) != requested:
            logger.info('Discarding stale route response for itinerary %s', itinerary.id)
            return None
        self.apply_route_summary(summary)
        return summary

    async def geocode_waypoint(self, maps, waypoint_id: str, query: str) -> Waypoint | None:
        """Resolve a waypoint from search text, ignoring superseded responses."""
        itinerary = self._require()
        if not any(wp.id == waypoint_id for wp in itinerary.waypoints):
            raise PlanningValidationError('Unknown waypoint')
        query = query.strip()
        if not query:
            raise PlanningValidationError('Enter a place to search for')

        self._pending_geocode[waypoint_id] = query
        try:
            result = await maps.geocode(query)
        finally:
            superseded = self._pending_geocode.get(waypoint_id) != query
            if not superseded:
                self._pending_geocode.pop(waypoint_id, None)

        if superseded:
            logger.info('Discarding superseded geocode result for %r', query[:60])
            return None
        if result is None:
            raise LocationNotFound(f'No location found for "{query}"')

        self.set_waypoint_location(
            waypoint_id, result.lat, result.lng,
            address=result.formatted_address, place_id=result.place_id, name=query,
        )
        return next(wp for wp in self.current.waypoints if wp.id == waypoint_id)

    async def optimize_order(self, optimizer, preferences: OptimizePreferences | None = None) -> OptimizationResult:
        """Reorder intermediates using the optimiser; waypoints stay put on any failure."""
        itinerary = self._require()
        wp_ops.validate_for_route(itinerary.waypoints)
        ordered = wp_ops.normalise(itinerary.waypoints)
        stops = ordered[1:-1]
        if any(not stop.is_resolved for stop in stops):
            raise PlanningValidationError('Locate every stop before optimising the route')
        if len(stops) < 2:
            return OptimizationResult(order=list(range(len(stops))), reasoning='Nothing to reorder')

        result = await optimizer.optimize(ordered[0], ordered[-1], stops, preferences)

        if [wp.id for wp in wp_ops.normalise(itinerary.waypoints)] != [wp.id for wp in ordered]:
            raise PlanningValidationError('Waypoints changed while optimising; please try again')
        # reorder the live list so edits made during the call are kept
        itinerary.waypoints = wp_ops.apply_optimized_order(itinerary.waypoints, result.order)
        self._touch()
        return result


class AutoSaver:
    """Debounced save for an ItineraryStore.

    schedule() (re)starts a timer; when it expires a save starts in its own
    task, so a later schedule() only ever cancels a sleeping timer and never a
    save in flight. A timer that fires during a save records a follow-up,
    which reschedules once that save has finished.
    """

    def __init__(self, store: ItineraryStore, delay: float):
        self._store = store
        self.delay = delay
        self._timer: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._followup = False

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def schedule(self) -> bool:
        if not self._store.autosave_eligible:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug('Auto-save not scheduled: no running event loop')
            return False
        self.cancel()
        self._timer = loop.create_task(self._fire_after_delay())
        return True

    def cancel(self) -> None:
        if self.pending:
            self._timer.cancel()

    async def _fire_after_delay(self) -> None:
        await asyncio.sleep(self.delay)
        if not self._store.dirty:
            return
        if self._store.is_saving:
            self._followup = True
            return
        self._inflight = asyncio.get_running_loop().create_task(self._run_save())

    async def _run_save(self) -> None:
        try:
            await self._store.save()
        except Exception as exc:
            logger.warning('Auto-save failed for itinerary %s: %s',
                           self._store.current.id if self._store.current else None, exc)

    def save_finished(self, saved: bool) -> None:
        """Called by every save, manual or automatic, once it has finished.

        Edits that landed during a successful save, or a timer that fired
        while any save ran, get a fresh debounce. A failed save with no
        follow-up is not retried.
        """
        followup, self._followup = self._followup, False
        if self._store.dirty and (saved or followup):
            self.schedule()

    async def wait_idle(self) -> None:
        """Wait until no timer is pending and no save is running, follow-ups included."""
        while True:
            if self.pending:
                try:
                    await self._timer
                except asyncio.CancelledError:
                    pass
            elif self._inflight is not None and not self._inflight.done():
                await self._inflight
            else:
                return
