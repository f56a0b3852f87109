"""Trust-score recomputation.

The score is a full recompute from the actor's order history, so it is safe
to re-run or skip. This module is the only writer of ``trust_score`` and
``account_status`` after a user document is created.
"""

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Literal, Optional

from clients.couchbase import Where, transactional
from models.entities.couchbase.orders import TERMINAL_STATUSES, Order, OrderData
from models.entities.couchbase.users import AccountStatus, User
from models.operations.events import CourierDropped, OrderReachedTerminal
from models.operations.policy import RescuePolicy, policy_get
from models.operations.timeutil import as_utc

logger = logging.getLogger(__name__)

Role = Literal["buyer", "seller", "courier"]

_PARTY_FIELD: Dict[str, str] = {"buyer": "buyer_id", "seller": "seller_id", "courier": "courier_id"}


def _dropped_by(data: OrderData, courier_id: str) -> bool:
    return any(drop.courier_id == courier_id for drop in data.courier_drops)


def _is_relevant(data: OrderData, role: Role, actor_id: str) -> bool:
    if role == "buyer":
        return data.buyer_id == actor_id
    if role == "courier" and _dropped_by(data, actor_id):
        return True
    return getattr(data, _PARTY_FIELD[role]) == actor_id and data.status in TERMINAL_STATUSES


def _is_responsible_failure(data: OrderData, role: Role, actor_id: str) -> bool:
    if data.status == "failed":
        return True
    if data.status == "cancelled" and data.cancellation and data.cancellation.cancelled_by == role:
        return True
    return role == "courier" and _dropped_by(data, actor_id)


def _is_on_time(data: OrderData, grace: timedelta) -> bool:
    scheduled = data.pickup.scheduled_at
    if scheduled is None:
        return True
    delivered = data.timeline.delivered_at
    if delivered is None:
        return False
    return as_utc(delivered) - as_utc(scheduled) <= grace


def account_status_for(score: int, policy: Optional[RescuePolicy] = None) -> AccountStatus:
    policy = policy or policy_get()
    if score < policy.lock_below:
        return "locked"
    if score < policy.warn_below:
        return "warned"
    return "active"


def trust_score_compute(
    orders: Iterable[OrderData],
    role: Role,
    actor_id: str,
    policy: Optional[RescuePolicy] = None,
) -> int:
    """Score in [0, 100] for *actor_id* acting as *role*, from its order history.

    ``50 + completion*30 - responsible_failures*30 + on_time*20``, rounded
    half-up and clamped. An actor with no relevant orders gets the default.
    """
    policy = policy or policy_get()
    relevant = [data for data in orders if _is_relevant(data, role, actor_id)]
    if not relevant:
        return policy.default_trust_score

    total = len(relevant)
    delivered = [
        data for data in relevant
        if data.status == "delivered" and getattr(data, _PARTY_FIELD[role]) == actor_id
    ]
    failures = sum(1 for data in relevant if _is_responsible_failure(data, role, actor_id))
    grace = timedelta(minutes=policy.on_time_grace_minutes)
    on_time = sum(1 for data in delivered if _is_on_time(data, grace))

    completion_rate = len(delivered) / total
    failure_rate = failures / total
    on_time_rate = on_time / len(delivered) if delivered else 0.0

    raw = 50 + completion_rate * 30 - failure_rate * 30 + on_time_rate * 20
    score = int(Decimal(repr(raw)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return max(0, min(100, score))


async def _relevant_orders(user_id: str, role: Role) -> List[OrderData]:
    if role == "buyer":
        found = await Order.find([Where("buyer_id", "=", user_id)])
    else:
        found = await Order.find([
            Where(_PARTY_FIELD[role], "=", user_id),
            Where("status", "IN", list(TERMINAL_STATUSES)),
        ])
        if role == "courier":
            found += await Order.find([Where("courier_drops", "ANY", ("courier_id", user_id))])

    unique: Dict[str, OrderData] = {}
    for order in found:
        unique[order.id] = order.data
    return list(unique.values())


@transactional()
async def reputation_recompute(user_id: str, role: Role) -> Optional[User]:
    """Recompute and persist one actor's score with a CAS-guarded write."""
    user = await User.get(user_id)
    if user is None:
        logger.warning(f"Reputation: user {user_id} not found, skipping {role} recompute")
        return None

    orders = await _relevant_orders(user_id, role)
    score = trust_score_compute(orders, role, user_id)
    status = account_status_for(score)
    if user.data.trust_score == score and user.data.account_status == status:
        return user

    previous = user.data.trust_score
    user.data.trust_score = score
    user.data.account_status = status
    user = await User.update(user)
    logger.info(f"Reputation: {role} {user_id} trust score {previous} -> {score} ({status})")
    return user


async def _recompute_quietly(user_id: str, role: Role) -> None:
    try:
        await reputation_recompute(user_id, role)
    except Exception as e:
        logger.error(f"Reputation recompute failed for {role} {user_id}: {e}", exc_info=True)


async def reputation_on_order_terminal(event: OrderReachedTerminal) -> None:
    await _recompute_quietly(event.buyer_id, "buyer")
    await _recompute_quietly(event.seller_id, "seller")
    if event.courier_id:
        await _recompute_quietly(event.courier_id, "courier")


async def reputation_on_courier_dropped(event: CourierDropped) -> None:
    await _recompute_quietly(event.courier_id, "courier")
