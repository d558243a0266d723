import threading
from datetime import date, timedelta

import pytest

from backend import pickups, points
from backend.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from backend.models import PickupStatus

from .conftest import PINCODE


def _create(store, user_id, day, **overrides):
    args = dict(weight=10, address='12 MG Road', pincode=PINCODE, pickup_date=day,
                time_slot='morning', material_types=['paper'])
    args.update(overrides)
    return pickups.create_request(store, user_id, **args)


def test_create_rejects_pickups_under_minimum_weight(store, make_user, tomorrow):
    user = make_user()
    with pytest.raises(ValidationError):
        _create(store, user, tomorrow, weight=6.9)
    assert store.select('pickups') == []


def test_create_accepts_minimum_weight(store, make_user, tomorrow):
    pickup, _ = _create(store, make_user(), tomorrow, weight=7)
    assert pickup.status == PickupStatus.REQUESTED
    assert pickup.scrapper_id is None
    assert pickup.weight == 7
    assert pickup.time_slot.key == 'morning'


@pytest.mark.parametrize('overrides', [
    {'pincode': '4110'},
    {'pincode': 'abcdef'},
    {'time_slot': 'midnight'},
    {'material_types': []},
    {'material_types': ['uranium']},
    {'address': '  '},
    {'pickup_date': 'next tuesday'},
    {'pickup_date': '2099-01-01xyz'},
])
def test_create_validates_input(store, make_user, tomorrow, overrides):
    with pytest.raises(ValidationError):
        _create(store, make_user(), tomorrow, **overrides)


def test_create_rejects_past_dates(store, make_user):
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    with pytest.raises(ValidationError):
        _create(store, make_user(), yesterday)


def test_create_accepts_slot_labels_and_comma_joined_types(store, make_user, tomorrow):
    pickup, _ = _create(store, make_user(), tomorrow, time_slot='Evening (4PM - 7PM)',
                        material_types='metal, paper')
    assert pickup.time_slot.key == 'evening'
    assert pickup.to_dict()['type'] == ['paper', 'metal']


def test_pickup_date_must_be_a_whole_date(store, make_user, tomorrow):
    with pytest.raises(ValidationError):
        _create(store, make_user(), tomorrow + 'garbage')
    pickup, _ = _create(store, make_user(), tomorrow + 'T09:30:00')
    assert pickup.date.isoformat() == tomorrow


def test_create_for_unknown_user(store, tomorrow):
    with pytest.raises(NotFoundError):
        _create(store, 'nobody', tomorrow)


def test_candidates_are_available_collectors_in_the_area(store, make_user, make_collector, tomorrow):
    low = make_collector(rating=3.5)
    high = make_collector(rating=4.8)
    make_collector(available=False)
    make_collector(pincode='560001')

    pickup, candidates = _create(store, make_user(), tomorrow)
    assert [c.id for c in candidates] == [high, low]
    # Nobody is assigned until someone accepts
    assert pickups.get_request(store, pickup.id).scrapper_id is None


def test_find_candidates_filters_on_materials(store, make_collector):
    paper = make_collector(materials=['paper'])
    make_collector(materials=['glass'])
    assert [c.id for c in pickups.find_candidates(store, PINCODE, ['paper', 'plastic'])] == [paper]


def test_accept_assigns_collector_and_quotes_price(store, make_pickup, make_collector):
    collector = make_collector(prices={'paper': 12})
    pickup = make_pickup(weight=10)

    accepted = pickups.accept_request(store, pickup.id, collector)
    assert accepted.status == PickupStatus.SCHEDULED
    assert accepted.scrapper_id == collector
    assert accepted.price == 120.0


def test_accept_can_mark_accepted(store, make_pickup, make_collector):
    accepted = pickups.accept_request(store, make_pickup().id, make_collector(), 'Accepted')
    assert accepted.status == PickupStatus.ACCEPTED
    assert accepted.price is None


def test_accept_rejects_non_claim_status(store, make_pickup, make_collector):
    with pytest.raises(ValidationError):
        pickups.accept_request(store, make_pickup().id, make_collector(), PickupStatus.COMPLETED)


def test_accept_twice_conflicts(store, make_pickup, make_collector):
    pickup = make_pickup()
    first = make_collector()
    pickups.accept_request(store, pickup.id, first)
    with pytest.raises(ConflictError):
        pickups.accept_request(store, pickup.id, make_collector())
    assert pickups.get_request(store, pickup.id).scrapper_id == first


def test_accept_unknown_records(store, make_pickup, make_collector):
    with pytest.raises(NotFoundError):
        pickups.accept_request(store, make_pickup().id, 'ghost')
    with pytest.raises(NotFoundError):
        pickups.accept_request(store, 'ghost', make_collector())


def test_concurrent_accepts_have_one_winner(store, make_pickup, make_collector):
    pickup = make_pickup()
    collectors = [make_collector() for _ in range(4)]
    barrier = threading.Barrier(len(collectors))
    results, errors = [], []

    def claim(collector_id):
        barrier.wait()
        try:
            results.append(pickups.accept_request(store, pickup.id, collector_id))
        except ConflictError as e:
            errors.append(e)

    threads = [threading.Thread(target=claim, args=(c,)) for c in collectors]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 1
    assert len(errors) == len(collectors) - 1
    assert pickups.get_request(store, pickup.id).scrapper_id == results[0].scrapper_id


def test_full_lifecycle_awards_points_once(store, make_pickup, make_collector):
    collector = make_collector()
    pickup = make_pickup(weight=12.34)
    pickups.accept_request(store, pickup.id, collector)
    for status in ('En Route', 'Arrived', 'Completed'):
        current = pickups.advance_status(store, pickup.id, status, collector_id=collector)
    assert current.status == PickupStatus.COMPLETED
    assert points.get_balance(store, pickup.user_id) == 123
    assert len(store.select('points', {'pickup_id': pickup.id})) == 1

    with pytest.raises(InvalidTransitionError):
        pickups.advance_status(store, pickup.id, 'Completed', collector_id=collector)
    assert len(store.select('points', {'pickup_id': pickup.id})) == 1


def test_scheduled_pickup_can_complete_directly(store, make_pickup, make_collector):
    collector = make_collector()
    pickup = make_pickup()
    pickups.accept_request(store, pickup.id, collector)
    done = pickups.advance_status(store, pickup.id, PickupStatus.COMPLETED, collector_id=collector)
    assert done.status == PickupStatus.COMPLETED


def test_status_never_moves_backwards(store, make_pickup, make_collector):
    collector = make_collector()
    pickup = make_pickup()
    pickups.accept_request(store, pickup.id, collector)
    pickups.advance_status(store, pickup.id, 'En Route', collector_id=collector)
    with pytest.raises(InvalidTransitionError):
        pickups.advance_status(store, pickup.id, 'Completed', collector_id=collector)
    pickups.advance_status(store, pickup.id, 'Arrived', collector_id=collector)
    with pytest.raises(InvalidTransitionError):
        pickups.advance_status(store, pickup.id, 'En Route', collector_id=collector)


def test_requested_pickup_cannot_skip_to_completed(store, make_pickup):
    pickup = make_pickup()
    with pytest.raises(InvalidTransitionError):
        pickups.advance_status(store, pickup.id, 'Completed')
    with pytest.raises(InvalidTransitionError):
        pickups.advance_status(store, pickup.id, 'Scheduled')


def test_only_assigned_collector_advances(store, make_pickup, make_collector):
    pickup = make_pickup()
    pickups.accept_request(store, pickup.id, make_collector())
    with pytest.raises(ForbiddenError):
        pickups.advance_status(store, pickup.id, 'En Route', collector_id=make_collector())


def test_unknown_status_is_a_validation_error(store, make_pickup):
    with pytest.raises(ValidationError):
        pickups.advance_status(store, make_pickup().id, 'Teleported')


def test_reject_is_idempotent(store, make_pickup):
    pickup = make_pickup()
    rejected = pickups.reject_request(store, pickup.id)
    assert rejected.status == PickupStatus.REJECTED
    assert rejected.scrapper_id is None
    again = pickups.reject_request(store, pickup.id)
    assert again.status == PickupStatus.REJECTED
    assert again.updated_at == rejected.updated_at


def test_rejected_pickup_cannot_be_accepted(store, make_pickup, make_collector):
    pickup = make_pickup()
    pickups.reject_request(store, pickup.id)
    with pytest.raises(ConflictError):
        pickups.accept_request(store, pickup.id, make_collector())


def test_reject_by_collector_loses_to_a_claim_by_another(store, make_pickup, make_collector):
    pickup = make_pickup()
    bystander, winner = make_collector(), make_collector()
    pickups.accept_request(store, pickup.id, winner)
    with pytest.raises(ForbiddenError):
        pickups.reject_request(store, pickup.id, collector_id=bystander)
    current = pickups.get_request(store, pickup.id)
    assert current.status == PickupStatus.SCHEDULED
    assert current.scrapper_id == winner

    rejected = pickups.reject_request(store, pickup.id, collector_id=winner)
    assert rejected.status == PickupStatus.REJECTED
    assert rejected.scrapper_id == winner


def test_unclaimed_pickup_can_be_rejected_by_any_collector(store, make_pickup, make_collector):
    pickup = make_pickup()
    rejected = pickups.reject_request(store, pickup.id, collector_id=make_collector())
    assert rejected.status == PickupStatus.REJECTED
    assert rejected.scrapper_id is None


def test_reject_checks_the_requesting_user(store, make_pickup, make_user):
    owner = make_user()
    pickup = make_pickup(user_id=owner)
    with pytest.raises(ForbiddenError):
        pickups.reject_request(store, pickup.id, user_id=make_user())
    assert pickups.get_request(store, pickup.id).status == PickupStatus.REQUESTED
    assert pickups.reject_request(store, pickup.id, user_id=owner).status == PickupStatus.REJECTED


def test_completed_pickup_cannot_be_rejected(store, make_pickup, make_collector):
    collector = make_collector()
    pickup = make_pickup()
    pickups.accept_request(store, pickup.id, collector)
    pickups.advance_status(store, pickup.id, 'Completed', collector_id=collector)
    with pytest.raises(InvalidTransitionError):
        pickups.reject_request(store, pickup.id)


def test_claimed_status_requires_a_collector_in_storage(store, make_pickup):
    pickup = make_pickup()
    with pytest.raises(ConflictError):
        store.update('pickups', {'status': 'Scheduled'}, {'id': pickup.id})
    assert pickups.get_request(store, pickup.id).status == PickupStatus.REQUESTED


def test_collector_listing_is_oldest_first_and_unclaimed(store, make_pickup, make_collector):
    first = make_pickup()
    second = make_pickup()
    claimed = make_pickup()
    make_pickup(pincode='560001')
    pickups.accept_request(store, claimed.id, make_collector())

    listed = pickups.list_requests_for_collector(store, PINCODE)
    assert [p.id for p in listed] == [first.id, second.id]

    scheduled = pickups.list_requests_for_collector(store, PINCODE, 'Scheduled')
    assert [p.id for p in scheduled] == [claimed.id]


def test_user_listing_is_newest_first(store, make_user, make_pickup):
    user = make_user()
    older = make_pickup(user_id=user)
    newer = make_pickup(user_id=user)
    make_pickup()
    assert [p.id for p in pickups.list_requests_for_user(store, user)] == [newer.id, older.id]


def test_assigned_and_active_pickups(store, make_pickup, make_collector):
    collector = make_collector()
    assert pickups.get_active_pickup(store, collector) is None
    pickup = make_pickup()
    pickups.accept_request(store, pickup.id, collector)
    assert pickups.get_active_pickup(store, collector).id == pickup.id
    pickups.advance_status(store, pickup.id, 'Completed', collector_id=collector)
    assert pickups.list_assigned(store, collector) == []
    assert [p.id for p in pickups.list_assigned(store, collector, 'Completed')] == [pickup.id]


@pytest.mark.parametrize('current,nxt,legal', [
    (PickupStatus.REQUESTED, PickupStatus.SCHEDULED, True),
    (PickupStatus.REQUESTED, PickupStatus.EN_ROUTE, False),
    (PickupStatus.ACCEPTED, PickupStatus.REJECTED, True),
    (PickupStatus.ARRIVED, PickupStatus.REJECTED, False),
    (PickupStatus.COMPLETED, PickupStatus.REQUESTED, False),
    (PickupStatus.REJECTED, PickupStatus.REQUESTED, False),
])
def test_transition_table(current, nxt, legal):
    assert pickups.is_legal_transition(current, nxt) is legal
