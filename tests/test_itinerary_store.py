import asyncio
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import (
    LocationNotFound, MalformedResponseError, PlanningValidationError, RouteNotFound,
    ShareSlugTakenError,
)
from itinerary_store import DayRegenerationPolicy, ItineraryStore
from schemas import (
    GeneratedDay, GeneratedItinerary, GeocodeResult, ActivitySlot, Itinerary,
    OptimizationResult, RouteSummary,
)
from services import RouteOptimizer


class FakeMaps:

    def __init__(self, summary=None, error=None, on_route=None):
        self.summary = summary
        self.error = error
        self.on_route = on_route
        self.route_calls = []
        self.geocode_results = {}
        self.geocode_gates = {}

    async def compute_route(self, coordinates):
        self.route_calls.append(list(coordinates))
        if self.on_route is not None:
            self.on_route()
        if self.error is not None:
            raise self.error
        return self.summary.model_copy(update={'coordinates': list(coordinates)})

    async def geocode(self, query):
        gate = self.geocode_gates.get(query)
        if gate is not None:
            await gate.wait()
        return self.geocode_results.get(query)


def _store(repo, **kwargs):
    kwargs.setdefault('autosave_delay', None)
    kwargs.setdefault('daily_distance_km', 400)
    return ItineraryStore(repo, **kwargs)


def _loaded(repo, waypoints, itinerary_id=None, **kwargs):
    store = _store(repo, **kwargs)
    store.load(Itinerary(id=itinerary_id, waypoints=waypoints))
    return store


class TestLifecycle:

    def test_create_new_gives_clean_default_itinerary(self, fake_repo):
        store = _store(fake_repo)
        itinerary = store.create_new()
        assert itinerary.title == 'New Trip'
        assert [wp.role for wp in itinerary.waypoints] == ['start', 'end']
        assert itinerary.days == [] and itinerary.id is None
        assert not store.dirty

    def test_operations_need_an_open_itinerary(self, fake_repo):
        with pytest.raises(PlanningValidationError):
            _store(fake_repo).update_title('x')

    def test_mutations_mark_dirty(self, fake_repo):
        store = _store(fake_repo)
        store.create_new()
        store.add_waypoint(name='Agra', lat=27.17, lng=78.0)
        assert store.dirty

    def test_first_save_creates_and_adopts_id(self, fake_repo):
        store = _store(fake_repo)
        store.create_new()
        store.update_title('Northeast loop')
        saved = asyncio.run(store.save())

        assert saved.id == 41
        assert fake_repo.created[0].title == 'Northeast loop'
        assert not store.dirty

        store.update_title('Northeast loop v2')
        asyncio.run(store.save())
        assert fake_repo.updated[0].id == 41
        assert len(fake_repo.created) == 1

    def test_failed_save_keeps_dirty_and_propagates(self, fake_repo, delhi_shillong):
        store = _loaded(fake_repo, delhi_shillong, itinerary_id=3)
        store.update_title('x')
        fake_repo.fail_with = ShareSlugTakenError('taken')
        with pytest.raises(ShareSlugTakenError):
            asyncio.run(store.save())
        assert store.dirty
        assert not store.is_saving

    def test_edit_during_save_keeps_dirty(self, fake_repo):
        store = _store(fake_repo)
        store.create_new()
        fake_repo.on_call = lambda: store.update_title('changed mid-save')
        asyncio.run(store.save())
        assert store.dirty
        assert fake_repo.created[0].title == 'New Trip'

    def test_load_does_not_share_state_with_caller(self, fake_repo, delhi_shillong):
        source = Itinerary(id=5, waypoints=delhi_shillong)
        store = _store(fake_repo)
        store.load(source)
        store.update_title('changed')
        assert source.title == 'New Trip'


class TestRoute:

    def test_compute_route_applies_summary_and_derives_days(self, fake_repo, delhi_shillong, route_1800):
        maps = FakeMaps(summary=route_1800)
        store = _loaded(fake_repo, delhi_shillong)
        summary = asyncio.run(store.compute_route(maps))

        assert summary.total_distance_km == 1800
        assert [d.summary.distance_km for d in store.current.days] == [400, 400, 400, 400, 200]
        assert not store.route_is_stale

    def test_validation_happens_before_any_call(self, fake_repo):
        maps = FakeMaps()
        store = _store(fake_repo)
        store.create_new()
        with pytest.raises(PlanningValidationError):
            asyncio.run(store.compute_route(maps))
        assert maps.route_calls == []

    def test_failure_clears_route_summary(self, fake_repo, delhi_shillong, route_1800):
        store = _loaded(fake_repo, delhi_shillong)
        store.apply_route_summary(route_1800)
        maps = FakeMaps(error=RouteNotFound('No route found between these waypoints'))

        with pytest.raises(RouteNotFound):
            asyncio.run(store.compute_route(maps))
        assert store.current.route_summary is None

    def test_response_for_outdated_waypoints_is_discarded(self, fake_repo, delhi_shillong, route_1800):
        store = _loaded(fake_repo, delhi_shillong)
        maps = FakeMaps(summary=route_1800,
                        on_route=lambda: store.set_waypoint_location('end', 26.14, 91.73, name='Guwahati'))
        assert asyncio.run(store.compute_route(maps)) is None
        assert store.current.route_summary is None
        assert store.current.days == []

    def test_waypoint_edit_marks_route_stale(self, fake_repo, delhi_shillong, route_1800):
        store = _loaded(fake_repo, delhi_shillong)
        store.apply_route_summary(route_1800)
        store.add_waypoint(name='Varanasi', lat=25.31, lng=82.97)
        assert store.route_is_stale


class TestRegenerationPolicy:

    def test_replace_discards_manual_edits(self, fake_repo, delhi_shillong, route_1800):
        store = _loaded(fake_repo, delhi_shillong, regeneration_policy=DayRegenerationPolicy.REPLACE)
        store.apply_route_summary(route_1800)
        store.split_day('day-0')
        assert len(store.current.days) == 6

        store.apply_route_summary(route_1800)
        assert len(store.current.days) == 5
        assert not store.days_edited

    def test_preserve_edits_keeps_days_until_regenerated(self, fake_repo, delhi_shillong, route_1800):
        store = _loaded(fake_repo, delhi_shillong,
                        regeneration_policy=DayRegenerationPolicy.PRESERVE_EDITS)
        store.apply_route_summary(route_1800)
        store.split_day('day-0')

        longer = route_1800.model_copy(update={'total_distance_km': 2400})
        store.apply_route_summary(longer)
        assert len(store.current.days) == 6
        assert store.current.route_summary.total_distance_km == 2400

        store.regenerate_days()
        assert len(store.current.days) == 6
        assert [d.id for d in store.current.days][-1] == 'day-5'
        assert not store.days_edited

    def test_editor_calls_that_change_nothing_keep_days_derived(self, fake_repo, delhi_shillong, route_1800):
        store = _loaded(fake_repo, delhi_shillong,
                        regeneration_policy=DayRegenerationPolicy.PRESERVE_EDITS)
        store.apply_route_summary(route_1800)
        asyncio.run(store.save())

        store.remove_item('nope', 'x')
        store.remove_item('day-0', 'missing')
        store.update_item('nope', 'x', title='Ghost')
        store.split_day('nope')
        store.merge_days(store.current.days[-1].id)
        store.move_item('day-0', 99, 'day-1', 0)
        assert not store.dirty
        assert not store.days_edited

        longer = route_1800.model_copy(update={'total_distance_km': 2400})
        store.apply_route_summary(longer)
        assert len(store.current.days) == 6


class TestEditor:

    def test_editor_operations_go_through_the_store(self, fake_repo, delhi_shillong, route_1800):
        store = _loaded(fake_repo, delhi_shillong)
        store.apply_route_summary(route_1800)
        item_id = store.add_item('day-1', 'photo-op')
        store.update_item('day-1', item_id, title='Tea gardens')
        store.move_item('day-1', len(store.current.days[1].items) - 1, 'day-2', 0)
        store.merge_days('day-3')

        days = store.current.days
        assert days[2].items[0].title == 'Tea gardens'
        assert len(days) == 4
        assert days[3].summary.distance_km == 600
        assert store.days_edited and store.dirty

    def test_add_item_to_unknown_day_returns_none(self, fake_repo, delhi_shillong):
        store = _loaded(fake_repo, delhi_shillong)
        assert store.add_item('nope', 'note') is None
        assert not store.dirty

    def test_apply_generated_replaces_days(self, fake_repo, delhi_shillong):
        store = _loaded(fake_repo, delhi_shillong)
        generated = GeneratedItinerary(days=[
            GeneratedDay(day_number=1, morning=ActivitySlot(activity='Qutub Minar', cost=600)),
        ])
        days = store.apply_generated(generated)
        assert [d.id for d in days] == ['ai-day-1']
        assert store.days_edited


class TestSharing:

    def test_making_public_generates_slug_from_title(self, fake_repo, delhi_shillong):
        store = _loaded(fake_repo, delhi_shillong)
        store.update_title('Road to Shillong')
        store.update_share_settings(True)
        slug = store.current.share_slug
        assert store.current.is_public
        assert slug.startswith('road-to-shillong-') and len(slug) == len('road-to-shillong-') + 6

    def test_explicit_slug_is_kept(self, fake_repo, delhi_shillong):
        store = _loaded(fake_repo, delhi_shillong)
        store.update_share_settings(True, 'my-trip')
        assert store.current.share_slug == 'my-trip'

    def test_making_private_clears_slug(self, fake_repo, delhi_shillong):
        store = _loaded(fake_repo, delhi_shillong)
        store.update_share_settings(True, 'my-trip')
        store.update_share_settings(False)
        assert store.current.share_slug is None
        assert not store.current.is_public


class TestGeocode:

    def test_result_resolves_waypoint(self, fake_repo):
        store = _store(fake_repo)
        store.create_new()
        maps = FakeMaps()
        maps.geocode_results['Shillong'] = GeocodeResult(
            lat=25.57, lng=91.89, formatted_address='Shillong, Meghalaya', place_id='p-1')
        wp = asyncio.run(store.geocode_waypoint(maps, 'end', 'Shillong'))
        assert (wp.lat, wp.lng, wp.place_id) == (25.57, 91.89, 'p-1')
        assert wp.address == 'Shillong, Meghalaya'

    def test_not_found_raises(self, fake_repo):
        store = _store(fake_repo)
        store.create_new()
        with pytest.raises(LocationNotFound):
            asyncio.run(store.geocode_waypoint(FakeMaps(), 'end', 'Atlantis'))
        assert not store.current.waypoints[-1].is_resolved

    def test_unknown_waypoint_is_rejected(self, fake_repo):
        store = _store(fake_repo)
        store.create_new()
        with pytest.raises(PlanningValidationError):
            asyncio.run(store.geocode_waypoint(FakeMaps(), 'nope', 'Delhi'))

    def test_superseded_response_is_discarded(self, fake_repo):
        store = _store(fake_repo)
        store.create_new()
        maps = FakeMaps()
        maps.geocode_results['Shilong'] = GeocodeResult(lat=1.0, lng=1.0, formatted_address='Wrong place')
        maps.geocode_results['Shillong'] = GeocodeResult(
            lat=25.57, lng=91.89, formatted_address='Shillong, Meghalaya')

        async def scenario():
            maps.geocode_gates['Shilong'] = asyncio.Event()
            slow = asyncio.create_task(store.geocode_waypoint(maps, 'end', 'Shilong'))
            await asyncio.sleep(0)
            fresh = await store.geocode_waypoint(maps, 'end', 'Shillong')
            maps.geocode_gates['Shilong'].set()
            return await slow, fresh

        stale, fresh = asyncio.run(scenario())
        assert stale is None
        assert fresh.address == 'Shillong, Meghalaya'
        assert store.current.waypoints[-1].lat == 25.57


class TestOptimize:

    def test_valid_order_is_applied(self, fake_repo, four_stop_route):
        store = _loaded(fake_repo, four_stop_route)
        optimizer = MagicMock()
        optimizer.optimize = AsyncMock(return_value=OptimizationResult(order=[1, 0], reasoning='East first'))

        result = asyncio.run(store.optimize_order(optimizer))
        assert result.reasoning == 'East first'
        assert [wp.id for wp in store.current.waypoints] == ['start', 'wp-varanasi', 'wp-agra', 'end']

    def test_single_stop_needs_no_call(self, fake_repo, delhi_shillong):
        store = _loaded(fake_repo, delhi_shillong)
        store.add_waypoint(name='Agra', lat=27.17, lng=78.0)
        optimizer = MagicMock()
        optimizer.optimize = AsyncMock()
        result = asyncio.run(store.optimize_order(optimizer))
        assert result.order == [0]
        optimizer.optimize.assert_not_awaited()

    def test_wrong_length_permutation_leaves_waypoints_unchanged(self, fake_repo, four_stop_route):
        store = _loaded(fake_repo, four_stop_route)
        before = [wp.id for wp in store.current.waypoints]
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[
            SimpleNamespace(type='tool_use', name='optimize_route',
                            input={'optimized_indices': [0], 'reasoning': 'Shorter'}),
        ]))

        with pytest.raises(MalformedResponseError):
            asyncio.run(store.optimize_order(RouteOptimizer(client)))
        assert [wp.id for wp in store.current.waypoints] == before
        assert not store.dirty

    def test_edit_made_while_optimising_is_kept(self, fake_repo, four_stop_route):
        store = _loaded(fake_repo, four_stop_route)

        async def optimize(*args, **kwargs):
            store.set_waypoint_location('wp-agra', 27.5, 78.5)
            return OptimizationResult(order=[1, 0])

        optimizer = MagicMock()
        optimizer.optimize = AsyncMock(side_effect=optimize)

        asyncio.run(store.optimize_order(optimizer))
        assert [wp.id for wp in store.current.waypoints] == ['start', 'wp-varanasi', 'wp-agra', 'end']
        agra = store.current.waypoints[2]
        assert (agra.lat, agra.lng) == (27.5, 78.5)


class TestAutoSaver:

    def test_rapid_edits_collapse_into_one_save(self, fake_repo, delhi_shillong):
        async def scenario():
            store = _loaded(fake_repo, delhi_shillong, itinerary_id=7, autosave_delay=0.05)
            for n in range(5):
                store.update_title(f'Trip {n}')
            assert store.autosaver.pending
            await store.autosaver.wait_idle()
            return store

        store = asyncio.run(scenario())
        assert len(fake_repo.updated) == 1
        assert fake_repo.updated[0].title == 'Trip 4'
        assert not store.dirty

    def test_never_saved_itinerary_is_not_auto_saved(self, fake_repo, delhi_shillong):
        async def scenario():
            store = _loaded(fake_repo, delhi_shillong, autosave_delay=0.01)
            store.update_title('draft')
            assert not store.autosaver.pending
            await asyncio.sleep(0.03)
            return store

        store = asyncio.run(scenario())
        assert fake_repo.created == [] and fake_repo.updated == []
        assert store.dirty

    def test_too_few_located_waypoints_is_not_auto_saved(self, fake_repo):
        async def scenario():
            store = _store(fake_repo, autosave_delay=0.01)
            store.load(Itinerary(id=9))
            store.update_title('still empty')
            return store.autosaver.pending

        assert asyncio.run(scenario()) is False

    def test_edit_during_save_gets_one_follow_up(self, fake_repo, delhi_shillong):
        fake_repo.on_call = lambda: time.sleep(0.15)

        async def scenario():
            store = _loaded(fake_repo, delhi_shillong, itinerary_id=7, autosave_delay=0.02)
            store.update_title('first')
            await asyncio.sleep(0.07)
            assert store.is_saving
            store.update_title('second')
            await store.autosaver.wait_idle()
            return store

        store = asyncio.run(scenario())
        assert [it.title for it in fake_repo.updated] == ['first', 'second']
        assert fake_repo.max_active == 1
        assert not store.dirty

    def test_edit_during_manual_save_is_auto_saved_afterwards(self, fake_repo, delhi_shillong):
        fake_repo.on_call = lambda: time.sleep(0.2)

        async def scenario():
            store = _loaded(fake_repo, delhi_shillong, itinerary_id=7, autosave_delay=0.02)
            save = asyncio.create_task(store.save())
            await asyncio.sleep(0.05)
            assert store.is_saving
            store.update_title('edited mid-save')
            # the debounce timer expires while the manual save still runs
            await asyncio.sleep(0.05)
            await save
            await store.autosaver.wait_idle()
            return store

        store = asyncio.run(scenario())
        assert [it.title for it in fake_repo.updated] == ['New Trip', 'edited mid-save']
        assert fake_repo.max_active == 1
        assert not store.dirty
        assert not store.autosaver.pending

    def test_failure_is_logged_and_not_retried(self, fake_repo, delhi_shillong, caplog):
        fake_repo.fail_with = RuntimeError('database is locked')

        async def scenario():
            store = _loaded(fake_repo, delhi_shillong, itinerary_id=7, autosave_delay=0.01)
            store.update_title('x')
            await store.autosaver.wait_idle()
            return store

        store = asyncio.run(scenario())
        assert store.dirty
        assert not store.autosaver.pending
        assert 'Auto-save failed' in caplog.text
