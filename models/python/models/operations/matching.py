"""Courier matching for orders awaiting a courier.

``matching_initiate`` finds and ranks nearby eligible couriers, sends each a
rescue request and records when the order should fall back to self pickup.
The fallback deadline lives on the order document and is applied by
``matching_sweep_due_fallbacks``, which the API service runs periodically.
"""

import logging
from datetime import datetime, timedelta
from typing import Collection, Dict, List, Optional, Tuple

from pydantic import BaseModel

from clients.couchbase import TransactionContext, Where, nearest, run_transaction, transactional
from models.entities.couchbase.courier_profiles import CourierProfile
from models.entities.couchbase.listings import Listing
from models.entities.couchbase.orders import CourierSearch, Order
from models.entities.couchbase.users import User, UserData
from models.operations.notifications import (
    notification_create,
    notification_mark_rescue_requests_read,
    notification_stage,
)
from models.operations.policy import RescuePolicy, policy_get
from models.operations.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)


class CourierCandidate(BaseModel):
    user_id: str
    name: Optional[str] = None
    distance_m: float
    trust_score: int
    distance_score: float
    trust_weight: float
    match_score: float


def score_candidate(
    distance_m: float,
    trust_score: Optional[int],
    policy: Optional[RescuePolicy] = None,
) -> Tuple[float, float, float]:
    """Return ``(distance_score, trust_weight, match_score)``.

    Distance decays linearly to zero at the match radius and outweighs trust.
    """
    policy = policy or policy_get()
    if trust_score is None:
        trust_score = policy.default_trust_score
    distance_score = max(0.0, 1 - distance_m / policy.match_radius_m) * policy.match_distance_weight
    trust_weight = trust_score * policy.match_trust_weight
    return distance_score, trust_weight, distance_score + trust_weight


def rank_candidates(candidates: List[CourierCandidate], limit: int) -> List[CourierCandidate]:
    ranked = sorted(candidates, key=lambda c: (-c.match_score, c.distance_m))
    return ranked[:limit]


async def courier_candidates_find(
    lat: float,
    lng: float,
    exclude: Collection[str] = (),
    policy: Optional[RescuePolicy] = None,
) -> List[CourierCandidate]:
    """Active, available, unlocked couriers with headroom near a point, best first."""
    policy = policy or policy_get()
    hits = await nearest(
        User.get_keyspace(),
        lat,
        lng,
        policy.match_radius_m,
        where=[Where("role", "=", "courier"), Where("is_active", "=", True)],
    )
    hits = [(row, distance) for row, distance in hits if row["id"] not in exclude]
    if not hits:
        return []

    profiles: Dict[str, CourierProfile] = {
        profile.id: profile
        for profile in await CourierProfile.get_many([row["id"] for row, _ in hits])
    }

    candidates: List[CourierCandidate] = []
    for row, distance in hits:
        user = UserData(**row[User._collection_name])
        profile = profiles.get(row["id"])
        if profile is None:
            continue
        ledger = profile.data.availability
        if not ledger.is_available or not ledger.has_headroom() or user.account_status == "locked":
            continue
        distance_score, trust_weight, match_score = score_candidate(distance, user.trust_score, policy)
        candidates.append(CourierCandidate(
            user_id=row["id"],
            name=user.name,
            distance_m=distance,
            trust_score=user.trust_score,
            distance_score=distance_score,
            trust_weight=trust_weight,
            match_score=match_score,
        ))
    return rank_candidates(candidates, policy.match_max_candidates)


@transactional()
async def _record_courier_search(order_id: str, search: CourierSearch) -> bool:
    async def logic(tx: TransactionContext) -> bool:
        order = await Order.tx_get(tx, order_id)
        if order is None or order.data.status != "awaiting_courier":
            return False
        order.data.courier_search = search
        await Order.tx_update(tx, order)
        return True

    return await run_transaction(logic)


async def matching_initiate(order_id: str, now: Optional[datetime] = None) -> List[CourierCandidate]:
    """Notify the best nearby couriers about an order and schedule its fallback."""
    policy = policy_get()
    now = now or utcnow()

    order = await Order.get(order_id)
    if order is None or order.data.status != "awaiting_courier":
        logger.info(f"[Matching] Order {order_id} is not awaiting a courier, nothing to do")
        return []

    listing = await Listing.get(order.data.listing_id)
    if listing is None or listing.data.pickup_geo is None:
        logger.error(f"[Matching] Order {order_id}: listing {order.data.listing_id} has no pickup location")
        candidates: List[CourierCandidate] = []
    else:
        geo = listing.data.pickup_geo
        dropped = {drop.courier_id for drop in order.data.courier_drops}
        candidates = await courier_candidates_find(geo.lat, geo.lng, exclude=dropped, policy=policy)
    logger.info(f"[Matching] Order {order_id}: {len(candidates)} qualified couriers within {policy.match_radius_m:.0f}m")

    notified = 0
    for candidate in candidates:
        try:
            await notification_create(
                candidate.user_id,
                "rescue_request",
                "Rescue Request",
                f"Nearby rescue available: {listing.data.food_name} ({order.data.quantity_ordered} items). "
                f"Your match score: {round(candidate.match_score)}%",
                data={
                    "listing_id": listing.id,
                    "distance": f"{candidate.distance_m / 1000:.1f}km",
                    "match_score": round(candidate.match_score, 2),
                    "action": "view_rescue",
                },
                order_id=order_id,
            )
            notified += 1
        except Exception as e:
            logger.error(f"[Matching] Failed to notify courier {candidate.user_id} about order {order_id}: {e}", exc_info=True)

    fallback_at = None
    if candidates or policy.fallback_when_no_candidates:
        fallback_at = now + timedelta(seconds=policy.match_fallback_delay_s)
    search = CourierSearch(started_at=now, fallback_at=fallback_at, candidates_notified=notified)
    if not await _record_courier_search(order_id, search):
        logger.info(f"[Matching] Order {order_id} moved on before its search was recorded")
    elif fallback_at is None:
        logger.info(f"[Matching] Order {order_id}: no couriers found, waiting without a fallback")
    return candidates


@transactional()
async def matching_fallback(order_id: str, due_before: Optional[datetime] = None) -> bool:
    """Switch an order still awaiting a courier to self pickup.

    A no-op returning False when the order has moved on, or when *due_before*
    is given and the order's fallback deadline is later than that.
    """

    async def logic(tx: TransactionContext) -> bool:
        order = await Order.tx_get(tx, order_id)
        if order is None or order.data.status != "awaiting_courier":
            return False
        if due_before is not None:
            search = order.data.courier_search
            if search is None or search.fallback_at is None or as_utc(search.fallback_at) > due_before:
                return False

        order.data.fulfillment = "self_pickup"
        order.data.status = "placed"
        order.data.courier_search = None
        await Order.tx_update(tx, order)
        await notification_stage(
            tx,
            order.data.buyer_id,
            "order_update",
            "Delivery Update",
            "No volunteer available right now. Please arrange for self-pickup.",
            data={"status": "placed", "fulfillment": "self_pickup"},
            order_id=order_id,
        )
        return True

    applied = await run_transaction(logic)
    if applied:
        logger.info(f"[Matching] No courier accepted order {order_id}, fell back to self pickup")
        try:
            await notification_mark_rescue_requests_read(order_id)
        except Exception as e:
            logger.warning(f"[Matching] Could not retire rescue requests for order {order_id}: {e}")
    return applied


async def matching_sweep_due_fallbacks(now: Optional[datetime] = None) -> int:
    """Apply every fallback whose deadline has passed. Returns how many were applied."""
    now = now or utcnow()
    due = await Order.find([
        Where("status", "=", "awaiting_courier"),
        Where("courier_search.fallback_at", "<=", now),
    ])
    applied = 0
    for order in due:
        try:
            if await matching_fallback(order.id, due_before=now):
                applied += 1
        except Exception as e:
            logger.error(f"[Matching] Fallback failed for order {order.id}: {e}", exc_info=True)
    if due:
        logger.info(f"[Matching] Fallback sweep: {applied}/{len(due)} due orders switched to self pickup")
    return applied
