import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

import config
import services
from errors import MalformedResponseError, RateLimitedError, RouteNotFound, ServiceError
from schemas import DestinationPreferences, LatLng, TripDetails, Waypoint
from services import ItineraryGenerator, MapsClient, RouteOptimizer

DELHI = LatLng(lat=28.61, lng=77.21)
AGRA = LatLng(lat=27.18, lng=78.01)
SHILLONG = LatLng(lat=25.58, lng=91.89)


@pytest.fixture(autouse=True)
def empty_cache():
    services.clear_cache()
    yield
    services.clear_cache()


def _maps(handler):
    """MapsClient wired to an httpx.MockTransport; returns (client, seen requests)."""
    seen = []

    def record(request):
        seen.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return MapsClient(http, api_key='test-maps-key'), seen


def _run(coro):
    return asyncio.run(coro)


def _leg(metres, seconds, steps=()):
    return {'distance': {'value': metres}, 'duration': {'value': seconds}, 'steps': list(steps)}


class TestGeocode:

    def test_first_result_is_used(self):
        maps, seen = _maps(lambda req: httpx.Response(200, json={
            'status': 'OK',
            'results': [{
                'geometry': {'location': {'lat': 25.5788, 'lng': 91.8933}},
                'formatted_address': 'Shillong, Meghalaya, India',
                'place_id': 'ChIJ-shillong',
            }],
        }))
        result = _run(maps.geocode('  Shillong '))

        assert (result.lat, result.lng) == (25.5788, 91.8933)
        assert result.place_id == 'ChIJ-shillong'
        assert seen[0].url.params['address'] == 'Shillong'
        assert seen[0].url.params['key'] == 'test-maps-key'

    def test_zero_results_is_none(self):
        maps, _ = _maps(lambda req: httpx.Response(200, json={'status': 'ZERO_RESULTS', 'results': []}))
        assert _run(maps.geocode('Atlantis')) is None

    def test_blank_query_makes_no_request(self):
        maps, seen = _maps(lambda req: httpx.Response(500))
        assert _run(maps.geocode('   ')) is None
        assert seen == []

    def test_repeat_lookup_is_cached(self):
        maps, seen = _maps(lambda req: httpx.Response(200, json={
            'status': 'OK',
            'results': [{'geometry': {'location': {'lat': 1.5, 'lng': 2.5}}, 'formatted_address': 'X'}],
        }))
        _run(maps.geocode('Agra'))
        _run(maps.geocode('agra'))
        assert len(seen) == 1

    def test_result_without_coordinates_is_malformed(self):
        maps, _ = _maps(lambda req: httpx.Response(200, json={'status': 'OK', 'results': [{'geometry': {}}]}))
        with pytest.raises(MalformedResponseError):
            _run(maps.geocode('Agra'))

    def test_missing_api_key(self):
        maps = MapsClient(httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))),
                          api_key='')
        with pytest.raises(ServiceError, match='not configured'):
            _run(maps.geocode('Agra'))


class TestComputeRoute:

    def test_legs_are_summed(self):
        maps, seen = _maps(lambda req: httpx.Response(200, json={
            'status': 'OK',
            'routes': [{
                'overview_polyline': {'points': 'abc123'},
                'legs': [
                    _leg(230_000, 14_400, steps=[{'html_instructions': 'Head <b>south</b>'}]),
                    _leg(1_570_000, 117_600),
                ],
            }],
        }))
        summary = _run(maps.compute_route([DELHI, AGRA, SHILLONG]))

        assert summary.total_distance_km == 1800
        assert summary.total_duration_min == 2200
        assert summary.polyline == 'abc123'
        assert len(summary.steps) == 1
        assert summary.coordinates == [DELHI, AGRA, SHILLONG]
        params = seen[0].url.params
        assert params['origin'] == '28.61,77.21'
        assert params['destination'] == '25.58,91.89'
        assert params['waypoints'] == '27.18,78.01'

    def test_two_points_send_no_waypoints_param(self):
        maps, seen = _maps(lambda req: httpx.Response(200, json={
            'status': 'OK', 'routes': [{'legs': [_leg(1000, 60)]}],
        }))
        _run(maps.compute_route([DELHI, SHILLONG]))
        assert 'waypoints' not in seen[0].url.params

    def test_single_point_is_rejected(self):
        maps, seen = _maps(lambda req: httpx.Response(200))
        with pytest.raises(ServiceError):
            _run(maps.compute_route([DELHI]))
        assert seen == []

    @pytest.mark.parametrize('response, error', [
        (httpx.Response(200, json={'status': 'ZERO_RESULTS'}), RouteNotFound),
        (httpx.Response(200, json={'status': 'NOT_FOUND'}), RouteNotFound),
        (httpx.Response(200, json={'status': 'OVER_QUERY_LIMIT'}), RateLimitedError),
        (httpx.Response(429), RateLimitedError),
        (httpx.Response(500, text='boom'), ServiceError),
        (httpx.Response(200, json={'status': 'REQUEST_DENIED', 'error_message': 'bad key'}), ServiceError),
        (httpx.Response(200, text='<html>not json</html>'), MalformedResponseError),
        (httpx.Response(200, json={'status': 'OK', 'routes': [{'legs': []}]}), MalformedResponseError),
        (httpx.Response(200, json={'status': 'OK', 'routes': [{'legs': [{'distance': {}}]}]}),
         MalformedResponseError),
    ])
    def test_provider_failures_map_to_errors(self, response, error):
        maps, _ = _maps(lambda req: response)
        with pytest.raises(error):
            _run(maps.compute_route([DELHI, SHILLONG]))

    def test_transport_error_is_a_service_error(self):
        def refuse(request):
            raise httpx.ConnectError('connection refused', request=request)

        maps, _ = _maps(refuse)
        with pytest.raises(ServiceError, match='Could not reach'):
            _run(maps.compute_route([DELHI, SHILLONG]))


class TestNearbyPois:

    @staticmethod
    def _place(place_id, name='Stop'):
        return {
            'place_id': place_id, 'name': name, 'vicinity': 'NH 27',
            'geometry': {'location': {'lat': 26.0, 'lng': 90.0}},
            'opening_hours': {'open_now': True}, 'rating': 4.2,
        }

    def test_duplicates_removed_and_total_capped(self):
        def handler(request):
            key = f"{request.url.params['type']}@{request.url.params['location']}"
            places = [self._place(f'{key}-{n}') for n in range(5)]
            return httpx.Response(200, json={'status': 'OK', 'results': places})

        maps, seen = _maps(handler)
        pois = _run(maps.nearby_pois([DELHI, AGRA, SHILLONG], ['fuel', 'food']))

        ids = [poi.id for poi in pois]
        assert len(ids) == len(set(ids)) == services.NEARBY_MAX_RESULTS
        assert len(seen) == 6
        assert pois[0].category == 'fuel' and pois[0].is_open is True

    def test_failed_point_is_skipped(self):
        calls = iter([httpx.Response(500), httpx.Response(200, json={
            'status': 'OK', 'results': [self._place('ok-1')]})])
        maps, _ = _maps(lambda req: next(calls))
        pois = _run(maps.nearby_pois([DELHI, AGRA], ['food']))
        assert [poi.id for poi in pois] == ['ok-1']

    def test_unknown_category_is_ignored(self):
        maps, seen = _maps(lambda req: httpx.Response(200, json={'status': 'OK', 'results': []}))
        assert _run(maps.nearby_pois([DELHI], ['museum'])) == []
        assert seen == []


def _anthropic_client(*blocks):
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=SimpleNamespace(content=list(blocks)))
    return client


def _tool_block(name, payload):
    return SimpleNamespace(type='tool_use', name=name, input=payload)


def _stops():
    return (
        Waypoint(id='start', name='Delhi', lat=28.6, lng=77.2, role='start'),
        Waypoint(id='end', name='Shillong', lat=25.6, lng=91.9, role='end'),
        [
            Waypoint(id='a', name='Varanasi', lat=25.3, lng=83.0),
            Waypoint(id='b', name='Agra', lat=27.2, lng=78.0),
        ],
    )


class TestRouteOptimizer:

    def test_valid_tool_call(self):
        client = _anthropic_client(
            SimpleNamespace(type='text', text='thinking'),
            _tool_block('optimize_route', {
                'optimized_indices': [1, 0], 'reasoning': 'West to east',
                'estimated_savings': {'distance_percent': 12},
            }),
        )
        start, end, stops = _stops()
        result = _run(RouteOptimizer(client, model='test-model').optimize(start, end, stops))

        assert result.order == [1, 0]
        assert result.estimated_savings.distance_percent == 12
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs['model'] == 'test-model'
        assert kwargs['tool_choice'] == {'type': 'tool', 'name': 'optimize_route'}

    @pytest.mark.parametrize('indices', [[0], [0, 0], [0, 2], None])
    def test_bad_permutation_is_malformed(self, indices):
        client = _anthropic_client(_tool_block('optimize_route', {'optimized_indices': indices}))
        start, end, stops = _stops()
        with pytest.raises(MalformedResponseError):
            _run(RouteOptimizer(client).optimize(start, end, stops))

    def test_missing_tool_block_is_malformed(self):
        client = _anthropic_client(SimpleNamespace(type='text', text='Sorry, I cannot help'))
        start, end, stops = _stops()
        with pytest.raises(MalformedResponseError):
            _run(RouteOptimizer(client).optimize(start, end, stops))


class TestItineraryGenerator:

    def test_generated_itinerary_is_validated(self):
        client = _anthropic_client(_tool_block('create_itinerary', {
            'days': [{
                'day_number': 1, 'date': '2026-11-01', 'location': 'Delhi',
                'morning': {'activity': 'Red Fort', 'time': '9:00 AM', 'cost': 600},
                'afternoon': {'activity': 'Chandni Chowk'},
                'evening': {'activity': 'India Gate'},
            }],
            'total_estimated_cost': 600,
            'tips': ['Start early'],
        }))
        start, end, _ = _stops()
        result = _run(ItineraryGenerator(client).generate([start, end], TripDetails(travelers=2)))

        assert result.days[0].morning.activity == 'Red Fort'
        assert result.tips == ['Start early']
        prompt = client.messages.create.await_args.kwargs['messages'][0]['content']
        assert '2 people' in prompt

    def test_wrong_shape_is_malformed(self):
        client = _anthropic_client(_tool_block('create_itinerary', {'days': 'three of them'}))
        start, end, _ = _stops()
        with pytest.raises(MalformedResponseError):
            _run(ItineraryGenerator(client).generate([start, end], TripDetails()))

    def test_budget_breakdown(self):
        client = _anthropic_client(_tool_block('create_budget_breakdown', {
            'categories': {'fuel': {'total': 18000, 'notes': '1800 km at 10 km/l'}},
            'total_estimated_cost': 18000,
        }))
        start, end, _ = _stops()
        result = _run(ItineraryGenerator(client).budget_breakdown([start, end], TripDetails(), 1800))
        assert result.categories['fuel'].total == 18000

    def test_recommendations_are_sorted_by_match_score(self):
        client = _anthropic_client(_tool_block('recommend_destinations', {
            'recommendations': [
                {'name': 'Rishikesh', 'location': 'Rishikesh', 'state': 'Uttarakhand',
                 'description': 'Ganges town', 'why_recommended': 'Rafting', 'match_score': 72},
                {'name': 'Spiti Valley', 'location': 'Kaza', 'state': 'Himachal Pradesh',
                 'description': 'High desert', 'why_recommended': 'Mountain roads',
                 'match_score': 91, 'highlights': ['Key Monastery']},
            ],
            'overall_tips': ['Carry spare fuel'],
        }))
        prefs = DestinationPreferences(travel_style='adventure', season='summer',
                                       duration=10, interests=['  mountain   passes ', ''])
        result = _run(ItineraryGenerator(client).recommend_destinations(prefs))

        assert [r.name for r in result.recommendations] == ['Spiti Valley', 'Rishikesh']
        assert result.overall_tips == ['Carry spare fuel']
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs['tool_choice'] == {'type': 'tool', 'name': 'recommend_destinations'}
        assert 'mountain passes' in kwargs['messages'][0]['content']
        assert '10 days' in kwargs['messages'][0]['content']

    def test_recommendation_missing_required_field_is_malformed(self):
        client = _anthropic_client(_tool_block('recommend_destinations', {
            'recommendations': [{'name': 'Goa', 'match_score': 80}],
        }))
        with pytest.raises(MalformedResponseError):
            _run(ItineraryGenerator(client).recommend_destinations(DestinationPreferences()))


class TestAnthropicClient:

    @pytest.fixture(autouse=True)
    def no_shared_client(self, monkeypatch):
        monkeypatch.setattr(services, '_anthropic_client', None)

    def test_missing_key_is_a_service_error(self, monkeypatch):
        monkeypatch.setattr(config, 'ANTHROPIC_API_KEY', '')
        with pytest.raises(ServiceError, match='not configured'):
            services.get_generator()
        with pytest.raises(ServiceError):
            services.get_optimizer()

    def test_configured_key_is_passed_to_the_sdk(self, monkeypatch):
        monkeypatch.setattr(config, 'ANTHROPIC_API_KEY', 'sk-test')
        generator = services.get_generator()
        assert generator._client.api_key == 'sk-test'
