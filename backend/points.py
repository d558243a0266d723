"""Points ledger, rewards and recycling impact.

The ledger is append-only: a user's balance is always ``SUM(points)`` over
their entries and is never stored.
"""
import logging
import math
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from .db import Store, Transaction, now_iso
from .errors import InsufficientPointsError, NotFoundError, ValidationError
from .models import Impact, LedgerEntry, PickupRequest, PickupStatus, Redemption, Reward

logger = logging.getLogger(__name__)

POINTS_PER_KG = 10

# Per metric ton of material recycled
IMPACT_FACTORS: Dict[str, Dict[str, float]] = {
    'paper': {'trees_per_ton': 17, 'co2_per_ton': 3000, 'energy_per_ton': 7000},
    'plastic': {'trees_per_ton': 0.7, 'co2_per_ton': 2500, 'energy_per_ton': 6000},
    'metal': {'trees_per_ton': 2.5, 'co2_per_ton': 1500, 'energy_per_ton': 5000},
    'glass': {'trees_per_ton': 1.2, 'co2_per_ton': 300, 'energy_per_ton': 1500},
    'rubber': {'trees_per_ton': 0.3, 'co2_per_ton': 1200, 'energy_per_ton': 4000},
    'textiles': {'trees_per_ton': 2.0, 'co2_per_ton': 2000, 'energy_per_ton': 5500},
    'organic': {'trees_per_ton': 10, 'co2_per_ton': 1500, 'energy_per_ton': 3000},
    'eWaste': {'trees_per_ton': 5, 'co2_per_ton': 5000, 'energy_per_ton': 8000},
}

DEFAULT_REWARDS = (
    ('₹50 off next pickup', 50, 'Discount on your next scheduled pickup.'),
    ('₹100 off next pickup', 100, 'Discount on your next scheduled pickup.'),
    ('Free pickup (up to 20kg)', 200, 'One pickup of up to 20 kg at no charge.'),
)

StoreOrTx = Union[Store, Transaction]


def points_for_weight(weight_kg: float) -> int:
    return math.floor(weight_kg * POINTS_PER_KG)


def record_award(tx: Transaction, user_id: str, pickup_id: Optional[str], weight_kg: Any) -> LedgerEntry:
    """Insert the award entry on an open transaction."""
    try:
        weight = float(weight_kg)
    except (TypeError, ValueError):
        raise ValidationError("weight must be a number")
    if weight < 0 or math.isnan(weight):
        raise ValidationError("weight must not be negative")
    if tx.fetch_one('users', {'id': user_id}) is None:
        raise NotFoundError("user not found")
    if pickup_id is not None and tx.fetch_one('pickups', {'id': pickup_id}) is None:
        raise NotFoundError("pickup not found")
    row = tx.insert('points', {
        'id': str(uuid.uuid4()),
        'user_id': user_id,
        'points': points_for_weight(weight),
        'pickup_id': pickup_id,
        'redemption_id': None,
        'reason': f"Recycled {weight:g} kg",
        'created_at': now_iso(),
    })
    return LedgerEntry(**row)


def award_points(store: Store, user_id: str, pickup_id: Optional[str], weight_kg: Any) -> LedgerEntry:
    """10 points per kg, rounded down; exactly one ledger entry per pickup."""
    with store.transaction() as tx:
        entry = record_award(tx, user_id, pickup_id, weight_kg)
    logger.info("awarded %s points to %s for pickup %s", entry.points, user_id, pickup_id)
    return entry


def get_balance(store: StoreOrTx, user_id: str) -> int:
    return int(store.sum('points', 'points', {'user_id': user_id}))


def list_ledger(store: Store, user_id: str, limit: Optional[int] = 20) -> List[LedgerEntry]:
    rows = store.select('points', {'user_id': user_id}, order_by=('-created_at',), limit=limit)
    return [LedgerEntry(**r) for r in rows]


# ======== Impact ========
def compute_impact(material_type: str, kg: float) -> Impact:
    """Environmental equivalents of recycling ``kg`` of one material.

    Unknown materials yield an all-zero result and a warning instead of an error.
    """
    factors = IMPACT_FACTORS.get(material_type)
    if factors is None:
        for name, candidate in IMPACT_FACTORS.items():
            if name.lower() == str(material_type or '').lower():
                factors = candidate
                break
    if factors is None:
        logger.warning("Unknown scrap type: %s", material_type)
        return Impact()
    tons = kg / 1000
    return Impact(
        trees_saved=math.floor(tons * factors['trees_per_ton']),
        co2_reduction=tons * factors['co2_per_ton'],
        energy_saved=tons * factors['energy_per_ton'],
    )


def pickup_impact(pickup: PickupRequest) -> Impact:
    """Impact of a pickup, its weight split evenly across its materials."""
    if not pickup.material_types:
        return Impact()
    share = pickup.weight / len(pickup.material_types)
    total = Impact()
    for material in sorted(pickup.material_types):
        total = total + compute_impact(material, share)
    return total


def user_impact(store: Store, user_id: str) -> Dict[str, Any]:
    rows = store.select('pickups', {'user_id': user_id, 'status': PickupStatus.COMPLETED})
    completed = [PickupRequest.from_row(r) for r in rows]
    total = Impact()
    for pickup in completed:
        total = total + pickup_impact(pickup)
    return {
        "completed_pickups": len(completed),
        "kg_recycled": sum(p.weight for p in completed),
        "impact": total.model_dump(),
    }


# ======== Rewards ========
def seed_rewards(store: Store) -> None:
    with store.transaction() as tx:
        if tx.select('rewards', limit=1):
            return
        for name, cost, description in DEFAULT_REWARDS:
            tx.insert('rewards', {
                'id': str(uuid.uuid4()),
                'name': name,
                'description': description,
                'points_required': cost,
                'active': True,
            })


def list_rewards(store: Store, active_only: bool = True) -> List[Reward]:
    where = {'active': True} if active_only else None
    return [Reward.from_row(r) for r in store.select('rewards', where, order_by=('points_required',))]


def redeem_reward(
    store: Store,
    user_id: str,
    reward_id: str,
    points_required: Optional[int] = None,
) -> Tuple[Redemption, LedgerEntry, int]:
    """Spend points on a reward.

    The redemption record and its negative ledger entry commit together. The
    balance check runs inside the same write transaction, so two concurrent
    redemptions against one balance cannot both pass it.
    """
    with store.transaction() as tx:
        if tx.fetch_one('users', {'id': user_id}) is None:
            raise NotFoundError("user not found")
        row = tx.fetch_one('rewards', {'id': reward_id, 'active': True})
        if row is None:
            raise NotFoundError("reward not found")
        reward = Reward.from_row(row)
        if points_required is not None and int(points_required) != reward.points_required:
            raise ValidationError("points_required does not match the reward")
        cost = reward.points_required
        balance = get_balance(tx, user_id)
        if balance < cost:
            raise InsufficientPointsError("insufficient points")
        created_at = now_iso()
        redemption = Redemption(**tx.insert('redeemed_rewards', {
            'id': str(uuid.uuid4()),
            'user_id': user_id,
            'reward_id': reward.id,
            'created_at': created_at,
        }))
        entry = LedgerEntry(**tx.insert('points', {
            'id': str(uuid.uuid4()),
            'user_id': user_id,
            'points': -cost,
            'pickup_id': None,
            'redemption_id': redemption.id,
            'reason': f"Redeemed: {reward.name}",
            'created_at': created_at,
        }))
    logger.info("user %s redeemed %s for %s points", user_id, reward.name, cost)
    return redemption, entry, balance - cost
