import logging
from typing import Any, Dict, List, Tuple, Union

from geopy.distance import geodesic

from .db import NOT_NULL, Store, now_iso
from .errors import NotFoundError, ValidationError
from .models import (
    Collector,
    CollectorProfile,
    Identity,
    UserAccount,
    UserProfile,
    encode_material_types,
    encode_prices,
    parse_profile,
)

logger = logging.getLogger(__name__)


def user_row(account_id: str, email: str, profile: UserProfile) -> Dict[str, Any]:
    return {
        'id': account_id,
        'name': profile.name,
        'email': email,
        'phone': profile.phone,
        'address': profile.address,
        'city': profile.city,
        'pincode': profile.pincode,
        'created_at': now_iso(),
    }


def collector_row(account_id: str, email: str, profile: CollectorProfile) -> Dict[str, Any]:
    return {
        'id': account_id,
        'name': profile.name,
        'email': email,
        'phone': profile.phone,
        'address': profile.address,
        'pincode': profile.pincode,
        'available': profile.available,
        'vehicle_type': profile.vehicle_type,
        'availability_hours': profile.working_hours,
        'scrap_types': encode_material_types(profile.material_types),
        'scrap_prices': encode_prices(profile.scrap_prices),
        'rating': 0,
        'created_at': now_iso(),
    }


def get_collector(store: Store, collector_id: str) -> Collector:
    row = store.fetch_one('scrappers', {'id': collector_id})
    if row is None:
        raise NotFoundError("scrapper not found")
    return Collector.from_row(row)


def get_user(store: Store, user_id: str) -> UserAccount:
    row = store.fetch_one('users', {'id': user_id})
    if row is None:
        raise NotFoundError("user not found")
    return UserAccount(**{k: row.get(k) for k in UserAccount.model_fields})


def get_profile(store: Store, identity: Identity) -> Union[UserAccount, Collector]:
    if identity.role == 'scrapper':
        return get_collector(store, identity.id)
    return get_user(store, identity.id)


def update_profile(store: Store, identity: Identity, payload: Dict[str, Any]) -> Union[UserAccount, Collector]:
    """Apply a partial profile edit; the merged result is validated for the session's role."""
    current = get_profile(store, identity)
    if identity.role == 'scrapper':
        merged: Dict[str, Any] = {
            'name': current.name,
            'phone': current.phone,
            'address': current.address,
            'pincode': current.pincode,
            'vehicle_type': current.vehicle_type,
            'working_hours': current.working_hours,
            'available': current.available,
            'material_types': list(current.material_types),
            'scrap_prices': dict(current.scrap_prices),
        }
    else:
        merged = {
            'name': current.name,
            'phone': current.phone,
            'address': current.address,
            'city': current.city,
            'pincode': current.pincode,
        }
    changes = {k: v for k, v in (payload or {}).items() if k not in ('email', 'id', 'role')}
    if 'type' in changes:
        changes['material_types'] = changes.pop('type')
    merged.update(changes)
    merged['role'] = identity.role
    profile = parse_profile(merged)

    if isinstance(profile, CollectorProfile):
        values = collector_row(identity.id, current.email, profile)
        for key in ('id', 'email', 'rating', 'created_at'):
            values.pop(key)
        store.update('scrappers', values, {'id': identity.id})
    else:
        values = user_row(identity.id, current.email, profile)
        for key in ('id', 'email', 'created_at'):
            values.pop(key)
        store.update('users', values, {'id': identity.id})
    return get_profile(store, identity)


def set_availability(store: Store, collector_id: str, available: bool) -> Collector:
    rows = store.update('scrappers', {'available': bool(available)}, {'id': collector_id})
    if not rows:
        raise NotFoundError("scrapper not found")
    logger.info("scrapper %s availability -> %s", collector_id, bool(available))
    return Collector.from_row(rows[0])


def _coords(latitude: Any, longitude: Any) -> Tuple[float, float]:
    try:
        lat, lng = float(latitude), float(longitude)
    except (TypeError, ValueError):
        raise ValidationError("latitude and longitude must be numbers")
    if not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
        raise ValidationError("coordinates out of range")
    return lat, lng


def update_location(store: Store, collector_id: str, latitude: Any, longitude: Any) -> Collector:
    lat, lng = _coords(latitude, longitude)
    rows = store.update('scrappers', {'latitude': lat, 'longitude': lng}, {'id': collector_id})
    if not rows:
        raise NotFoundError("scrapper not found")
    return Collector.from_row(rows[0])


def nearby_collectors(store: Store, latitude: Any, longitude: Any, radius_km: float = 10.0,
                      limit: int = 20) -> List[Tuple[Collector, float]]:
    """Available collectors with a known position within ``radius_km``, nearest first."""
    origin = _coords(latitude, longitude)
    rows = store.select('scrappers', {'available': True, 'latitude': NOT_NULL, 'longitude': NOT_NULL})
    found = []
    for row in rows:
        collector = Collector.from_row(row)
        distance = geodesic(origin, (collector.latitude, collector.longitude)).km
        if distance <= radius_km:
            found.append((collector, round(distance, 3)))
    found.sort(key=lambda item: item[1])
    return found[:limit]
