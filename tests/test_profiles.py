import pytest

from backend import profiles
from backend.errors import NotFoundError, ValidationError
from backend.models import Identity, parse_profile, CollectorProfile, UserProfile

PUNE = (18.5204, 73.8567)


def _identity(store, account_id):
    account = store.fetch_one('accounts', {'id': account_id})
    return Identity(id=account['id'], email=account['email'], role=account['role'])


def test_parse_profile_picks_role_shape():
    user = parse_profile({'role': 'user', 'name': 'Asha', 'pincode': '411001'})
    collector = parse_profile({'role': 'scrapper', 'name': 'Ravi', 'pincode': '411001',
                               'type': 'paper,E-Waste', 'scrap_prices': {'paper': 12}})
    assert isinstance(user, UserProfile)
    assert isinstance(collector, CollectorProfile)
    assert collector.material_types == ['paper', 'eWaste']


@pytest.mark.parametrize('payload', [
    {'role': 'admin', 'name': 'Eve', 'pincode': '411001'},
    {'role': 'user', 'name': '', 'pincode': '411001'},
    {'role': 'user', 'name': 'Asha', 'pincode': '41100'},
    {'role': 'scrapper', 'name': 'Ravi', 'pincode': '411001', 'material_types': ['gold']},
    {'role': 'scrapper', 'name': 'Ravi', 'pincode': '411001', 'scrap_prices': {'paper': -1}},
])
def test_parse_profile_rejects_bad_payloads(payload):
    with pytest.raises(ValidationError):
        parse_profile(payload)


def test_update_user_profile_merges_fields(store, make_user):
    identity = _identity(store, make_user())
    updated = profiles.update_profile(store, identity, {'city': 'Pune', 'phone': '9876543210', 'email': 'x@y.z'})
    assert updated.city == 'Pune'
    assert updated.phone == '9876543210'
    assert updated.name == 'Asha'
    assert updated.email == identity.email


def test_update_profile_validates(store, make_user):
    identity = _identity(store, make_user())
    with pytest.raises(ValidationError):
        profiles.update_profile(store, identity, {'pincode': '12'})


def test_update_collector_profile(store, make_collector):
    identity = _identity(store, make_collector())
    updated = profiles.update_profile(store, identity, {'type': ['glass'], 'scrap_prices': {'glass': 4.5}})
    assert updated.material_types == frozenset({'glass'})
    assert updated.scrap_prices == {'glass': 4.5}
    assert updated.pincode == '411001'


def test_set_availability(store, make_collector):
    collector = make_collector()
    assert profiles.set_availability(store, collector, False).available is False
    assert profiles.get_collector(store, collector).available is False
    with pytest.raises(NotFoundError):
        profiles.set_availability(store, 'ghost', True)


def test_update_location_validates_coordinates(store, make_collector):
    collector = make_collector()
    moved = profiles.update_location(store, collector, *PUNE)
    assert (moved.latitude, moved.longitude) == PUNE
    with pytest.raises(ValidationError):
        profiles.update_location(store, collector, 91, 0)
    with pytest.raises(ValidationError):
        profiles.update_location(store, collector, 'north', 0)


def test_nearby_collectors_sorted_by_distance(store, make_collector):
    near = make_collector(latitude=18.5300, longitude=73.8600)
    farther = make_collector(latitude=18.5204, longitude=73.9040)
    make_collector(latitude=19.0760, longitude=72.8777)
    make_collector(latitude=18.5210, longitude=73.8570, available=False)
    make_collector()

    found = profiles.nearby_collectors(store, *PUNE, radius_km=10)
    assert [c.id for c, _ in found] == [near, farther]
    assert found[0][1] < 2
    assert 4 < found[1][1] < 6
