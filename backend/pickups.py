"""
Pickup request lifecycle.

    Requested -> Scheduled | Accepted -> [En Route -> Arrived ->] Completed
    Requested -> Rejected
    Accepted  -> Rejected

Every status change is a conditional UPDATE guarded by the status the caller
saw, so two collectors racing for the same request cannot both win.
"""
import logging
import uuid
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from . import points
from .db import Store, now_iso
from .errors import ConflictError, ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    ACTIVE_STATUSES,
    ASSIGNED_STATUSES,
    Collector,
    PickupRequest,
    PickupStatus,
    encode_material_types,
    parse_date,
    parse_material_types,
    parse_pincode,
    parse_weight,
    resolve_time_slot,
)

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[PickupStatus, frozenset] = {
    PickupStatus.REQUESTED: frozenset({PickupStatus.SCHEDULED, PickupStatus.ACCEPTED, PickupStatus.REJECTED}),
    PickupStatus.SCHEDULED: frozenset({PickupStatus.EN_ROUTE, PickupStatus.COMPLETED}),
    PickupStatus.ACCEPTED: frozenset({PickupStatus.EN_ROUTE, PickupStatus.COMPLETED, PickupStatus.REJECTED}),
    PickupStatus.EN_ROUTE: frozenset({PickupStatus.ARRIVED}),
    PickupStatus.ARRIVED: frozenset({PickupStatus.COMPLETED}),
    PickupStatus.COMPLETED: frozenset(),
    PickupStatus.REJECTED: frozenset(),
}

# Entering these requires a collector, so only accept_request may do it
CLAIM_STATUSES = (PickupStatus.SCHEDULED, PickupStatus.ACCEPTED)

StatusFilter = Union[PickupStatus, str, Iterable[Union[PickupStatus, str]], None]


def is_legal_transition(current: PickupStatus, nxt: PickupStatus) -> bool:
    return nxt in TRANSITIONS[current]


def _statuses(status_filter: StatusFilter) -> List[PickupStatus]:
    if status_filter is None:
        return [PickupStatus.REQUESTED]
    if isinstance(status_filter, (PickupStatus, str)):
        return [PickupStatus.parse(status_filter)]
    return [PickupStatus.parse(s) for s in status_filter]


def create_request(
    store: Store,
    requester_id: str,
    weight: Any,
    address: str,
    pincode: Any,
    pickup_date: Any,
    time_slot: Any,
    material_types: Any,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    today: Optional[date] = None,
) -> Tuple[PickupRequest, List[Collector]]:
    """Persist a new request and return it with the collectors eligible to take it.

    Candidates are advisory; nobody is assigned until a collector accepts.
    """
    weight = parse_weight(weight)
    address = str(address or '').strip()
    if not address:
        raise ValidationError("address is required")
    pincode = parse_pincode(pincode)
    scheduled = parse_date(pickup_date)
    if scheduled < (today or date.today()):
        raise ValidationError("date must not be in the past")
    slot = resolve_time_slot(time_slot)
    materials = parse_material_types(material_types)
    if not materials:
        raise ValidationError("at least one material type is required")

    row = {
        'id': str(uuid.uuid4()),
        'user_id': requester_id,
        'scrapper_id': None,
        'weight': weight,
        'address': address,
        'pincode': pincode,
        'date': scheduled.isoformat(),
        'time_slot': slot.key,
        'slot_start': slot.start.strftime('%H:%M:%S'),
        'slot_end': slot.end.strftime('%H:%M:%S'),
        'type': encode_material_types(materials),
        'status': PickupStatus.REQUESTED,
        'price': None,
        'latitude': latitude,
        'longitude': longitude,
        'created_at': now_iso(),
    }
    with store.transaction() as tx:
        if tx.fetch_one('users', {'id': requester_id}) is None:
            raise NotFoundError("user not found")
        saved = tx.insert('pickups', row)
        candidate_rows = tx.select('scrappers', {'available': True, 'pincode': pincode}, order_by=('-rating',))
    pickup = PickupRequest.from_row(saved)
    logger.info("pickup %s requested in %s (%s kg)", pickup.id, pincode, weight)
    return pickup, [Collector.from_row(r) for r in candidate_rows]


def find_candidates(store: Store, pincode: Any, material_types: Any = None) -> List[Collector]:
    """Available collectors in the area, optionally limited to those taking one of the materials."""
    rows = store.select('scrappers', {'available': True, 'pincode': parse_pincode(pincode)}, order_by=('-rating',))
    collectors = [Collector.from_row(r) for r in rows]
    materials = parse_material_types(material_types)
    if materials:
        collectors = [c for c in collectors if c.material_types & materials]
    return collectors


def get_request(store: Store, request_id: str) -> PickupRequest:
    row = store.fetch_one('pickups', {'id': request_id})
    if row is None:
        raise NotFoundError("pickup not found")
    return PickupRequest.from_row(row)


def accept_request(
    store: Store,
    request_id: str,
    collector_id: str,
    status: Union[PickupStatus, str] = PickupStatus.SCHEDULED,
) -> PickupRequest:
    status = PickupStatus.parse(status)
    if status not in CLAIM_STATUSES:
        raise ValidationError("a pickup can only be accepted as Scheduled or Accepted")
    with store.transaction() as tx:
        collector_row = tx.fetch_one('scrappers', {'id': collector_id})
        if collector_row is None:
            raise NotFoundError("scrapper not found")
        current = tx.fetch_one('pickups', {'id': request_id})
        if current is None:
            raise NotFoundError("pickup not found")
        pickup = PickupRequest.from_row(current)
        values: Dict[str, Any] = {'scrapper_id': collector_id, 'status': status}
        quote = Collector.from_row(collector_row).quote(pickup.weight, pickup.material_types)
        if quote is not None:
            values['price'] = quote
        rows = tx.update(
            'pickups',
            values,
            {'id': request_id, 'status': PickupStatus.REQUESTED, 'scrapper_id': None},
        )
        if not rows:
            raise ConflictError(f"pickup is no longer open (status: {pickup.status.value})")
    logger.info("pickup %s accepted by %s", request_id, collector_id)
    return PickupRequest.from_row(rows[0])


def reject_request(
    store: Store,
    request_id: str,
    collector_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> PickupRequest:
    """Reject a request. Rejecting an already rejected request is a no-op.

    ``collector_id`` / ``user_id`` name the acting party; they are checked
    against the row inside the write transaction, and the update is guarded by
    the collector seen there, so a claim that lands first always wins.
    """
    with store.transaction() as tx:
        current = tx.fetch_one('pickups', {'id': request_id})
        if current is None:
            raise NotFoundError("pickup not found")
        if user_id is not None and current['user_id'] != user_id:
            raise ForbiddenError("pickup belongs to another user")
        status = PickupStatus(current['status'])
        if collector_id is not None and status in ASSIGNED_STATUSES and current['scrapper_id'] != collector_id:
            raise ForbiddenError("pickup is assigned to another scrapper")
        if status.is_terminal:
            if status == PickupStatus.REJECTED:
                return PickupRequest.from_row(current)
            raise InvalidTransitionError("a completed pickup cannot be rejected")
        rows = tx.update(
            'pickups',
            {'status': PickupStatus.REJECTED},
            {'id': request_id, 'status': status, 'scrapper_id': current['scrapper_id']},
        )
        if not rows:
            raise ConflictError("pickup changed while rejecting")
    logger.info("pickup %s rejected (was %s)", request_id, status.value)
    return PickupRequest.from_row(rows[0])


def advance_status(
    store: Store,
    request_id: str,
    next_status: Union[PickupStatus, str],
    collector_id: Optional[str] = None,
) -> PickupRequest:
    """Move a pickup one step forward. Completing it awards the requester's points."""
    nxt = PickupStatus.parse(next_status)
    if nxt in CLAIM_STATUSES:
        raise InvalidTransitionError(f"{nxt.value} is reached by accepting the pickup")
    with store.transaction() as tx:
        current = tx.fetch_one('pickups', {'id': request_id})
        if current is None:
            raise NotFoundError("pickup not found")
        status = PickupStatus(current['status'])
        if collector_id is not None and current['scrapper_id'] != collector_id:
            raise ForbiddenError("pickup is not assigned to this scrapper")
        if not is_legal_transition(status, nxt):
            raise InvalidTransitionError(f"cannot move pickup from {status.value} to {nxt.value}")
        rows = tx.update('pickups', {'status': nxt}, {'id': request_id, 'status': status})
        if not rows:
            raise ConflictError("pickup changed while updating status")
        pickup = PickupRequest.from_row(rows[0])
        if nxt == PickupStatus.COMPLETED:
            points.record_award(tx, pickup.user_id, pickup.id, pickup.weight)
    logger.info("pickup %s: %s -> %s", request_id, status.value, nxt.value)
    return pickup


def list_requests_for_collector(store: Store, pincode: Any, status_filter: StatusFilter = None) -> List[PickupRequest]:
    """Requests in an area with the given status(es), oldest first."""
    statuses = _statuses(status_filter)
    where: Dict[str, Any] = {'pincode': parse_pincode(pincode), 'status': statuses}
    if statuses == [PickupStatus.REQUESTED]:
        where['scrapper_id'] = None
    rows = store.select('pickups', where, order_by=('created_at',))
    return [PickupRequest.from_row(r) for r in rows]


def list_requests_for_user(store: Store, user_id: str) -> List[PickupRequest]:
    rows = store.select('pickups', {'user_id': user_id}, order_by=('-created_at',))
    return [PickupRequest.from_row(r) for r in rows]


def list_assigned(store: Store, collector_id: str, status_filter: StatusFilter = ACTIVE_STATUSES) -> List[PickupRequest]:
    rows = store.select(
        'pickups',
        {'scrapper_id': collector_id, 'status': _statuses(status_filter)},
        order_by=('created_at',),
    )
    return [PickupRequest.from_row(r) for r in rows]


def get_active_pickup(store: Store, collector_id: str) -> Optional[PickupRequest]:
    active = list_assigned(store, collector_id, ACTIVE_STATUSES)
    return active[0] if active else None
