"""
Typed records for the pickup marketplace.

Rows come out of SQLite with string-encoded composite fields (comma-joined
material types, slot names, JSON price maps). Decoding and encoding of those
fields lives here and nowhere else; the rest of the code works with sets,
``TimeSlot`` values and enums.
"""
import json
import math
import re
from datetime import date, datetime, time
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

PINCODE_RE = re.compile(r'^\d{6}$')
MIN_PICKUP_WEIGHT_KG = 7

# Canonical spelling of every material the marketplace handles
MATERIAL_TYPES = ('paper', 'plastic', 'metal', 'glass', 'rubber', 'textiles', 'organic', 'eWaste')
_MATERIAL_LOOKUP = {m.lower(): m for m in MATERIAL_TYPES}
_MATERIAL_LOOKUP.update({'e-waste': 'eWaste', 'ewaste': 'eWaste', 'textile': 'textiles'})


class PickupStatus(str, Enum):
    REQUESTED = 'Requested'
    SCHEDULED = 'Scheduled'
    ACCEPTED = 'Accepted'
    EN_ROUTE = 'En Route'
    ARRIVED = 'Arrived'
    COMPLETED = 'Completed'
    REJECTED = 'Rejected'

    @property
    def is_terminal(self) -> bool:
        return self in (PickupStatus.COMPLETED, PickupStatus.REJECTED)

    @classmethod
    def parse(cls, value: Any) -> 'PickupStatus':
        if isinstance(value, cls):
            return value
        text = str(value or '').strip()
        for status in cls:
            if text.lower() in (status.value.lower(), status.name.lower()):
                return status
        raise ValidationError(f"unknown pickup status: {value!r}")


# Statuses in which a collector must be attached to the request
ASSIGNED_STATUSES = frozenset({
    PickupStatus.SCHEDULED,
    PickupStatus.ACCEPTED,
    PickupStatus.EN_ROUTE,
    PickupStatus.ARRIVED,
    PickupStatus.COMPLETED,
})
ACTIVE_STATUSES = (PickupStatus.SCHEDULED, PickupStatus.ACCEPTED, PickupStatus.EN_ROUTE, PickupStatus.ARRIVED)


class ChangeKind(str, Enum):
    INSERT = 'INSERT'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'


class ChangeEvent(BaseModel):
    kind: ChangeKind
    table: str
    row: Dict[str, Any]
    old_row: Optional[Dict[str, Any]] = None


# -----------------------------
# Time slots
# -----------------------------
class TimeSlot(BaseModel):
    key: str
    label: str
    start: time
    end: time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "start": self.start.strftime('%H:%M:%S'),
            "end": self.end.strftime('%H:%M:%S'),
        }


TIME_SLOTS: Dict[str, TimeSlot] = {
    'morning': TimeSlot(key='morning', label='Morning (8AM - 11AM)', start=time(8), end=time(11)),
    'afternoon': TimeSlot(key='afternoon', label='Afternoon (12PM - 3PM)', start=time(12), end=time(15)),
    'evening': TimeSlot(key='evening', label='Evening (4PM - 7PM)', start=time(16), end=time(19)),
}


def resolve_time_slot(value: Any) -> TimeSlot:
    """Resolve a slot key, display label or ``{start, end}`` pair to a named slot."""
    if isinstance(value, TimeSlot):
        return value
    if isinstance(value, dict):
        start, end = str(value.get('start') or ''), str(value.get('end') or '')
        for slot in TIME_SLOTS.values():
            if _same_time(start, slot.start) and _same_time(end, slot.end):
                return slot
        raise ValidationError("time_slot does not match a pickup window")
    text = str(value or '').strip()
    if not text:
        raise ValidationError("time_slot is required")
    slot = TIME_SLOTS.get(text.lower())
    if slot is not None:
        return slot
    for slot in TIME_SLOTS.values():
        if text.lower() == slot.label.lower():
            return slot
    raise ValidationError(f"unknown time slot: {text}")


def _same_time(text: str, expected: time) -> bool:
    try:
        return time.fromisoformat(text.strip()) == expected
    except ValueError:
        return False


# -----------------------------
# Field codecs
# -----------------------------
def parse_material_types(value: Any) -> FrozenSet[str]:
    """Accepts a list or a comma-joined string; unknown materials are rejected."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(',')
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        raise ValidationError("type must be a list of material types")
    materials = set()
    for item in items:
        name = str(item or '').strip()
        if not name:
            continue
        canonical = _MATERIAL_LOOKUP.get(name.lower())
        if canonical is None:
            raise ValidationError(f"unknown material type: {name}")
        materials.add(canonical)
    return frozenset(materials)


def encode_material_types(materials: Iterable[str]) -> str:
    return ','.join(sorted(materials, key=MATERIAL_TYPES.index))


def sorted_materials(materials: Iterable[str]) -> List[str]:
    return sorted(materials, key=MATERIAL_TYPES.index)


def parse_pincode(value: Any) -> str:
    text = str(value if value is not None else '').strip()
    if not PINCODE_RE.match(text):
        raise ValidationError("pincode must be a 6-digit number")
    return text


def parse_weight(value: Any) -> float:
    try:
        weight = float(value)
    except (TypeError, ValueError):
        raise ValidationError("weight must be a number")
    if math.isnan(weight) or math.isinf(weight):
        raise ValidationError("weight must be a number")
    if weight < MIN_PICKUP_WEIGHT_KG:
        raise ValidationError(f"weight must be at least {MIN_PICKUP_WEIGHT_KG} kg")
    return weight


def parse_date(value: Any) -> date:
    """Parse a calendar date; a full ISO timestamp is cut to its date, anything else is refused."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or '').strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        raise ValidationError("date must be formatted as YYYY-MM-DD")


def _decode_prices(raw: Any) -> Dict[str, float]:
    if not raw:
        return {}
    try:
        data = json.loads(raw) if isinstance(raw, str) else dict(raw)
    except (TypeError, ValueError):
        return {}
    prices = {}
    for name, price in data.items():
        canonical = _MATERIAL_LOOKUP.get(str(name).lower())
        if canonical is None:
            continue
        try:
            prices[canonical] = float(price)
        except (TypeError, ValueError):
            continue
    return prices


def encode_prices(prices: Dict[str, float]) -> str:
    return json.dumps({k: float(v) for k, v in prices.items()}, sort_keys=True)


# -----------------------------
# Records
# -----------------------------
class PickupRequest(BaseModel):
    id: str
    user_id: str
    scrapper_id: Optional[str] = None
    weight: float
    address: str
    pincode: str
    date: date
    time_slot: TimeSlot
    material_types: FrozenSet[str]
    status: PickupStatus
    price: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'PickupRequest':
        return cls(
            id=row['id'],
            user_id=row['user_id'],
            scrapper_id=row.get('scrapper_id'),
            weight=float(row['weight']),
            address=row['address'],
            pincode=str(row['pincode']),
            date=date.fromisoformat(row['date']),
            time_slot=TIME_SLOTS[row['time_slot']],
            material_types=parse_material_types(row.get('type')),
            status=PickupStatus(row['status']),
            price=row.get('price'),
            latitude=row.get('latitude'),
            longitude=row.get('longitude'),
            created_at=row['created_at'],
            updated_at=row.get('updated_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "scrapper_id": self.scrapper_id,
            "weight": self.weight,
            "address": self.address,
            "pincode": self.pincode,
            "date": self.date.isoformat(),
            "time_slot": self.time_slot.to_dict(),
            "type": sorted_materials(self.material_types),
            "status": self.status.value,
            "price": self.price,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Collector(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    pincode: str
    available: bool = True
    vehicle_type: Optional[str] = None
    working_hours: Optional[str] = None
    material_types: FrozenSet[str] = frozenset()
    scrap_prices: Dict[str, float] = Field(default_factory=dict)
    rating: float = 0.0
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Collector':
        return cls(
            id=row['id'],
            name=row['name'],
            email=row['email'],
            phone=row.get('phone'),
            address=row.get('address'),
            pincode=str(row['pincode']),
            available=bool(row.get('available')),
            vehicle_type=row.get('vehicle_type'),
            working_hours=row.get('availability_hours'),
            material_types=parse_material_types(row.get('scrap_types')),
            scrap_prices=_decode_prices(row.get('scrap_prices')),
            rating=float(row.get('rating') or 0),
            latitude=row.get('latitude'),
            longitude=row.get('longitude'),
            created_at=row.get('created_at'),
        )

    def quote(self, weight: float, materials: Iterable[str]) -> Optional[float]:
        """Estimated price for ``weight`` kg: per-kg quotes averaged over the quoted materials."""
        quoted = [self.scrap_prices[m] for m in materials if m in self.scrap_prices]
        if not quoted:
            return None
        return round(weight * sum(quoted) / len(quoted), 2)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={'material_types', 'working_hours'})
        data['scrap_types'] = sorted_materials(self.material_types)
        data['availability_hours'] = self.working_hours
        return data


class UserAccount(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    pincode: Optional[str] = None
    created_at: Optional[str] = None


class LedgerEntry(BaseModel):
    id: str
    user_id: str
    points: int
    pickup_id: Optional[str] = None
    redemption_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: str


class Reward(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    points_required: int
    active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Reward':
        return cls(
            id=row['id'],
            name=row['name'],
            description=row.get('description'),
            points_required=int(row['points_required']),
            active=bool(row['active']),
        )


class Redemption(BaseModel):
    id: str
    user_id: str
    reward_id: str
    created_at: str


class Impact(BaseModel):
    trees_saved: int = 0
    co2_reduction: float = 0.0
    energy_saved: float = 0.0

    def __add__(self, other: 'Impact') -> 'Impact':
        return Impact(
            trees_saved=self.trees_saved + other.trees_saved,
            co2_reduction=self.co2_reduction + other.co2_reduction,
            energy_saved=self.energy_saved + other.energy_saved,
        )


class BusinessLocation(BaseModel):
    id: str
    name: str
    address: str
    summary: Optional[str] = None
    latitude: float
    longitude: float
    website_url: Optional[str] = None
    created_at: Optional[str] = None


class Identity(BaseModel):
    id: str
    email: str
    role: Literal['user', 'scrapper']


# -----------------------------
# Role profiles (validated at the API boundary)
# -----------------------------
class _ProfileBase(BaseModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None
    pincode: str

    @field_validator('pincode', mode='before')
    @classmethod
    def _check_pincode(cls, value: Any) -> str:
        text = str(value if value is not None else '').strip()
        if not PINCODE_RE.match(text):
            raise ValueError('pincode must be a 6-digit number')
        return text


class UserProfile(_ProfileBase):
    role: Literal['user'] = 'user'
    city: Optional[str] = None


class CollectorProfile(_ProfileBase):
    role: Literal['scrapper'] = 'scrapper'
    vehicle_type: Optional[str] = None
    working_hours: Optional[str] = None
    available: bool = True
    material_types: List[str] = Field(default_factory=list)
    scrap_prices: Dict[str, float] = Field(default_factory=dict)

    @field_validator('material_types', mode='before')
    @classmethod
    def _check_materials(cls, value: Any) -> List[str]:
        try:
            return sorted_materials(parse_material_types(value))
        except ValidationError as exc:
            raise ValueError(exc.message)

    @field_validator('scrap_prices')
    @classmethod
    def _check_prices(cls, value: Dict[str, float]) -> Dict[str, float]:
        prices = {}
        for name, price in value.items():
            canonical = _MATERIAL_LOOKUP.get(name.lower())
            if canonical is None:
                raise ValueError(f'unknown material type: {name}')
            if price < 0:
                raise ValueError('prices must not be negative')
            prices[canonical] = price
        return prices


Profile = Annotated[Union[UserProfile, CollectorProfile], Field(discriminator='role')]
_profile_adapter = TypeAdapter(Profile)


def parse_profile(payload: Dict[str, Any]) -> Union[UserProfile, CollectorProfile]:
    """Validate a role-tagged profile payload, raising the app's ValidationError."""
    if not isinstance(payload, dict):
        raise ValidationError("profile must be an object")
    data = dict(payload)
    # "type" is accepted as an alias of material_types, as on the pickup form
    if 'type' in data and 'material_types' not in data:
        data['material_types'] = data.pop('type')
    try:
        return _profile_adapter.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(describe_validation_error(exc))


def describe_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = '.'.join(str(p) for p in err.get('loc', ()) if p not in ('user', 'scrapper'))
        msg = err.get('msg', 'invalid value')
        if msg.startswith('Value error, '):
            msg = msg[len('Value error, '):]
        parts.append(f"{loc}: {msg}" if loc else msg)
    return '; '.join(parts) or 'invalid payload'
