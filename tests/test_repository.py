import pytest

from database import SessionLocal
from day_planner import derive_days
from errors import ItineraryNotFound, ShareSlugTakenError
from models import User
from repository import ItineraryRepository, get_shared
from schemas import Itinerary


@pytest.fixture
def owners(db_tables):
    with SessionLocal() as session:
        alice = User(email='alice@example.com', full_name='Alice', password_hash='x')
        bob = User(email='bob@example.com', full_name='Bob', password_hash='x')
        session.add_all([alice, bob])
        session.commit()
        return alice.id, bob.id


def _repo(owner_id):
    return ItineraryRepository(SessionLocal, owner_id)


def test_round_trip_keeps_the_whole_aggregate(owners, delhi_shillong, route_1800):
    repo = _repo(owners[0])
    itinerary = Itinerary(title='Northeast', waypoints=delhi_shillong, route_summary=route_1800,
                          days=derive_days(delhi_shillong, route_1800, daily_distance_km=400))
    itinerary_id = repo.create(itinerary)

    loaded = repo.get(itinerary_id)
    assert loaded.id == itinerary_id
    assert loaded.waypoints == itinerary.waypoints
    assert loaded.days == itinerary.days
    assert loaded.route_summary == itinerary.route_summary


def test_other_owners_cannot_read(owners):
    itinerary_id = _repo(owners[0]).create(Itinerary(title='Mine'))
    with pytest.raises(ItineraryNotFound):
        _repo(owners[1]).get(itinerary_id)


def test_update_requires_a_saved_itinerary(owners):
    with pytest.raises(ItineraryNotFound):
        _repo(owners[0]).update(Itinerary())


def test_list_is_newest_first_without_plan(owners):
    repo = _repo(owners[0])
    first = repo.create(Itinerary(title='First'))
    second = repo.create(Itinerary(title='Second'))
    repo.update(repo.get(first).model_copy(update={'title': 'First, edited'}))

    summaries = repo.list_summaries()
    assert [s['id'] for s in summaries] == [first, second]
    assert 'days' not in summaries[0]


def test_share_slug_is_unique_across_owners(owners):
    _repo(owners[0]).create(Itinerary(title='A', is_public=True, share_slug='road-trip'))
    with pytest.raises(ShareSlugTakenError):
        _repo(owners[1]).create(Itinerary(title='B', is_public=True, share_slug='road-trip'))


def test_private_itinerary_stores_no_slug(owners):
    repo = _repo(owners[0])
    itinerary_id = repo.create(Itinerary(title='A', is_public=False, share_slug='hidden'))
    assert repo.get(itinerary_id).share_slug is None


def test_shared_lookup_and_soft_delete(owners):
    repo = _repo(owners[0])
    itinerary_id = repo.create(Itinerary(title='Public', is_public=True, share_slug='public-one'))
    with SessionLocal() as session:
        assert get_shared(session, 'public-one').title == 'Public'

    repo.delete(itinerary_id)

    with SessionLocal() as session:
        with pytest.raises(ItineraryNotFound):
            get_shared(session, 'public-one')
    with pytest.raises(ItineraryNotFound):
        repo.get(itinerary_id)
    assert repo.list_summaries() == []
    # released slug can be claimed again
    _repo(owners[1]).create(Itinerary(title='Reuse', is_public=True, share_slug='public-one'))
