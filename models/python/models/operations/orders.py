"""Order lifecycle.

Every transition reads and writes the order, the listing, the courier's
capacity ledger and the notifications it produces in one transaction, and is
retried on write conflicts. Matching and reputation run after the commit.
"""

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from clients.couchbase import TransactionContext, Where, run_transaction, transactional
from models.entities.couchbase.courier_profiles import CourierProfile
from models.entities.couchbase.listings import Listing
from models.entities.couchbase.orders import (
    FULFILLMENTS,
    ORDER_STATUSES,
    RELEASED_STATUSES,
    TERMINAL_STATUSES,
    CourierDrop,
    Order,
    OrderCancellation,
    OrderData,
    OrderDrop,
    OrderPickup,
    OrderPricing,
    OrderTimeline,
)
from models.entities.couchbase.users import User
from models.errors import (
    AccountLocked,
    CancelRateLimited,
    CourierNotFound,
    InvalidCode,
    ListingNotFound,
    NotOrderParty,
    OrderNotAwaitingCourier,
    OrderNotFound,
    OrderTerminal,
    OrderValidationError,
    TooCloseToPickup,
)
from models.operations import events
from models.operations.events import CourierDropped, OrderReachedTerminal, order_events
from models.operations.listings import inventory_reserve, inventory_restore
from models.operations.matching import matching_initiate
from models.operations.notifications import notification_mark_rescue_requests_read, notification_stage
from models.operations.policy import policy_get
from models.operations.reputation import reputation_on_courier_dropped, reputation_on_order_terminal
from models.operations.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

CANCELLERS = ("buyer", "seller", "courier", "system")
PAYMENT_STATUSES = ("unpaid", "paid", "refunded")
# Statuses in which the pickup code may be presented on a courier delivery
PICKUP_CODE_STATUSES = ("placed", "awaiting_courier", "courier_assigned")
# A courier has the order; it can no longer become a self pickup
COURIER_HELD_STATUSES = ("courier_assigned", "picked_up", "in_transit")
HARD_CANCEL_REASON = "No courier available after multiple attempts"


def generate_code() -> str:
    """Four-digit handover code."""
    return str(secrets.randbelow(9000) + 1000)


def _codes_match(presented: str, expected: Optional[str]) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


def _short_id(order_id: str) -> str:
    return order_id[-6:]


def code_transition(data: OrderData, code: str) -> Optional[str]:
    """The status *code* advances a non-terminal order to, or None if it is wrong for this stage."""
    if data.fulfillment == "self_pickup":
        return "delivered" if _codes_match(code, data.handover_code) else None
    if data.status in PICKUP_CODE_STATUSES:
        return "picked_up" if _codes_match(code, data.pickup_code) else None
    if data.status in RELEASED_STATUSES:
        return "delivered" if _codes_match(code, data.handover_code) else None
    return None


def _validate_status(status: Optional[str]) -> None:
    if status is not None and status not in ORDER_STATUSES:
        raise OrderValidationError(f"Unknown order status '{status}'")


def _terminal_event(order: Order) -> OrderReachedTerminal:
    return OrderReachedTerminal(
        order_id=order.id,
        status=order.data.status,
        buyer_id=order.data.buyer_id,
        seller_id=order.data.seller_id,
        courier_id=order.data.courier_id,
    )


def _start_matching(order_id: str) -> None:
    events.spawn(matching_initiate(order_id), name=f"matching-{order_id}")


async def _load_order(tx: TransactionContext, order_id: str) -> Order:
    order = await Order.tx_get(tx, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def _release_capacity(tx: TransactionContext, courier_id: Optional[str]) -> None:
    if not courier_id:
        return
    profile = await CourierProfile.tx_get(tx, courier_id)
    if profile is None:
        logger.warning(f"Courier profile {courier_id} missing, no capacity to release")
        return
    profile.data.availability.release()
    await CourierProfile.tx_update(tx, profile)


def _refund_if_paid(data: OrderData, now: datetime) -> None:
    if data.payment.status == "paid":
        data.payment.status = "refunded"
        data.payment.refunded_at = now


# ---------------------------------------------------------------------------
# Create and read
# ---------------------------------------------------------------------------

@transactional()
async def order_create(
    buyer_id: str,
    listing_id: str,
    quantity: int,
    fulfillment: str = "self_pickup",
    pickup: Optional[OrderPickup] = None,
    drop: Optional[OrderDrop] = None,
    pricing: Optional[OrderPricing] = None,
    special_instructions: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Reserve *quantity* of a listing and place the order.

    Courier deliveries start in ``awaiting_courier`` and kick off matching
    once committed.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise OrderValidationError("Quantity must be a positive integer")
    if fulfillment not in FULFILLMENTS:
        raise OrderValidationError(f"Unknown fulfillment '{fulfillment}'")
    now = now or utcnow()
    courier_delivery = fulfillment == "courier_delivery"

    async def logic(tx: TransactionContext) -> Order:
        listing = await Listing.tx_get(tx, listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        inventory_reserve(listing.data, quantity, now)
        await Listing.tx_update(tx, listing)

        data = OrderData(
            listing_id=listing_id,
            seller_id=listing.data.seller_id,
            buyer_id=buyer_id,
            quantity_ordered=quantity,
            fulfillment=fulfillment,
            status="awaiting_courier" if courier_delivery else "placed",
            handover_code=generate_code(),
            pickup_code=generate_code() if courier_delivery else None,
            pickup=pickup or OrderPickup(address_text=listing.data.pickup_address_text),
            drop=drop or OrderDrop(),
            pricing=pricing,
            special_instructions=special_instructions,
            timeline=OrderTimeline(placed_at=now),
        )
        order = await Order.tx_create(tx, data, user_id=buyer_id)

        buyer = await User.tx_get(tx, buyer_id)
        buyer_name = buyer.data.name if buyer and buyer.data.name else "A buyer"
        food = listing.data.food_name
        await notification_stage(
            tx, data.seller_id, "order_update", "New Order Received",
            f"{buyer_name} just ordered {quantity}x {food}.",
            data={"status": data.status}, order_id=order.id,
        )
        next_step = (
            "A volunteer will be assigned soon." if courier_delivery
            else "You can pick it up at the scheduled time."
        )
        await notification_stage(
            tx, buyer_id, "order_update", "Order Placed Successfully",
            f"Your order for {quantity}x {food} has been placed! {next_step}",
            data={"status": data.status}, order_id=order.id,
        )
        return order

    order = await run_transaction(logic)
    logger.info(f"Order {order.id} placed: {quantity} of listing {listing_id} for buyer {buyer_id} ({fulfillment})")
    if courier_delivery:
        _start_matching(order.id)
    return order


async def order_get(order_id: str) -> Order:
    order = await Order.get(order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def _order_list(party_field: str, party_id: str, status: Optional[str]) -> List[Order]:
    _validate_status(status)
    where = [Where(party_field, "=", party_id)]
    if status:
        where.append(Where("status", "=", status))
    return await Order.find(where, order_by="created_at DESC")


async def order_list_by_buyer(buyer_id: str, status: Optional[str] = None) -> List[Order]:
    return await _order_list("buyer_id", buyer_id, status)


async def order_list_by_seller(seller_id: str, status: Optional[str] = None) -> List[Order]:
    return await _order_list("seller_id", seller_id, status)


async def order_list_by_courier(courier_id: str, status: Optional[str] = None) -> List[Order]:
    return await _order_list("courier_id", courier_id, status)


# ---------------------------------------------------------------------------
# Courier assignment and handover codes
# ---------------------------------------------------------------------------

@transactional()
async def order_accept_courier(order_id: str, courier_id: str, now: Optional[datetime] = None) -> Order:
    """Assign *courier_id* to an order awaiting a courier and take one capacity slot."""
    now = now or utcnow()

    async def logic(tx: TransactionContext) -> Order:
        order = await _load_order(tx, order_id)
        if order.data.status != "awaiting_courier" or order.data.fulfillment != "courier_delivery":
            raise OrderNotAwaitingCourier(order.data.status)

        profile = await CourierProfile.tx_get(tx, courier_id)
        if profile is None:
            raise CourierNotFound(courier_id)
        courier = await User.tx_get(tx, courier_id)
        if courier is not None and courier.data.account_status == "locked":
            raise AccountLocked(courier_id)

        profile.data.availability.acquire()
        await CourierProfile.tx_update(tx, profile)

        order.data.status = "courier_assigned"
        order.data.courier_id = courier_id
        order.data.courier_assigned_at = now
        order.data.timeline.accepted_at = now
        order.data.courier_search = None
        await Order.tx_update(tx, order)

        status = {"status": "courier_assigned"}
        await notification_stage(
            tx, order.data.buyer_id, "order_update", "Volunteer Assigned",
            "A volunteer has accepted your rescue request and is on the way!",
            data=status, order_id=order_id,
        )
        await notification_stage(
            tx, order.data.seller_id, "order_update", "Volunteer Found",
            "A volunteer will arrive shortly to pick up the order.",
            data=status, order_id=order_id,
        )
        await notification_stage(
            tx, courier_id, "order_update", "Pickup Assignment",
            f"You have been assigned to pick up {order.data.quantity_ordered} items from the seller.",
            data=status, order_id=order_id,
        )
        return order

    order = await run_transaction(logic)
    logger.info(f"Order {order_id} accepted by courier {courier_id}")
    try:
        await notification_mark_rescue_requests_read(order_id)
    except Exception as e:
        logger.warning(f"Could not retire rescue requests for order {order_id}: {e}")
    return order


@transactional()
async def order_verify_code(order_id: str, code: str, now: Optional[datetime] = None) -> Order:
    """Advance an order by one custody step when *code* is right for its stage."""
    code = str(code or "").strip()
    if not code:
        raise OrderValidationError("A code is required")
    now = now or utcnow()

    async def logic(tx: TransactionContext) -> Order:
        order = await _load_order(tx, order_id)
        data = order.data
        if data.is_terminal():
            raise OrderTerminal(data.status)

        next_status = code_transition(data, code)
        if next_status is None:
            raise InvalidCode()

        data.status = next_status
        status = {"status": next_status}
        if next_status == "picked_up":
            data.timeline.picked_up_at = now
            await notification_stage(
                tx, data.buyer_id, "order_update", "Food Picked Up!",
                "The volunteer has collected your food and is on the way.",
                data=status, order_id=order_id,
            )
            if data.courier_id:
                await notification_stage(
                    tx, data.courier_id, "order_update", "Delivery Assignment",
                    f"Food collected! Now deliver {data.quantity_ordered} items to the buyer.",
                    data=status, order_id=order_id,
                )
        else:
            data.timeline.delivered_at = now
            await _release_capacity(tx, data.courier_id)
            await notification_stage(
                tx, data.buyer_id, "order_update", "Delivered!",
                "Hope you enjoy the food! This rescue is complete.",
                data=status, order_id=order_id,
            )
            await notification_stage(
                tx, data.seller_id, "order_update", "Rescue Successful!",
                "Your food donation has been successfully delivered.",
                data=status, order_id=order_id,
            )
        await Order.tx_update(tx, order)
        return order

    order = await run_transaction(logic)
    logger.info(f"Order {order_id}: code verified, now {order.data.status}")
    if order.data.status == "delivered":
        await order_events.publish(_terminal_event(order))
    return order


# ---------------------------------------------------------------------------
# Generic status patch
# ---------------------------------------------------------------------------

@dataclass
class _UpdateOutcome:
    order: Order
    previous_status: str


_STATUS_TITLES = {
    "picked_up": ("Order Picked Up", "The volunteer has picked up your food!"),
    "delivered": ("Order Delivered", "Enjoy your meal! The order has been delivered."),
}


@transactional()
async def order_update(
    order_id: str,
    status: Optional[str] = None,
    fulfillment: Optional[str] = None,
    payment_status: Optional[str] = None,
    refunded_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Patch status, fulfillment and payment fields outside the code flow.

    Entering a terminal status releases the courier's slot and recomputes
    reputation; entering ``awaiting_courier`` starts matching.
    """
    _validate_status(status)
    if fulfillment is not None and fulfillment not in FULFILLMENTS:
        raise OrderValidationError(f"Unknown fulfillment '{fulfillment}'")
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise OrderValidationError(f"Unknown payment status '{payment_status}'")
    if status is None and fulfillment is None and payment_status is None and refunded_at is None:
        raise OrderValidationError("Nothing to update")
    now = now or utcnow()

    async def logic(tx: TransactionContext) -> _UpdateOutcome:
        order = await _load_order(tx, order_id)
        data = order.data
        previous = data.status
        target = status
        changes_fulfillment = fulfillment is not None and fulfillment != data.fulfillment
        if data.is_terminal() and ((target is not None and target != previous) or changes_fulfillment):
            raise OrderTerminal(previous)

        if changes_fulfillment:
            if fulfillment == "self_pickup" and previous in COURIER_HELD_STATUSES:
                raise OrderValidationError(f"A courier already holds this order (status: {previous})")
            data.fulfillment = fulfillment
            if fulfillment == "courier_delivery" and data.pickup_code is None:
                data.pickup_code = generate_code()
            if fulfillment == "self_pickup" and previous == "awaiting_courier":
                # Same outcome as the matching fallback
                data.courier_search = None
                if target is None:
                    target = "placed"

        if target is not None and target != previous:
            if target == "awaiting_courier":
                if data.fulfillment != "courier_delivery":
                    raise OrderValidationError("Only courier deliveries can wait for a courier")
                await _release_capacity(tx, data.courier_id)
                data.courier_id = None
                data.courier_assigned_at = None
            elif target in TERMINAL_STATUSES:
                await _release_capacity(tx, data.courier_id)

            data.status = target
            if target == "picked_up":
                data.timeline.picked_up_at = now
            elif target == "delivered":
                data.timeline.delivered_at = now
            elif target in ("cancelled", "failed"):
                data.timeline.cancelled_at = now

            title, message = _STATUS_TITLES.get(
                target, ("Order Update", f"Order #{_short_id(order_id)} is now {target.replace('_', ' ')}")
            )
            await notification_stage(tx, data.buyer_id, "order_update", title, message,
                                     data={"status": target}, order_id=order_id)
            if target in ("delivered", "cancelled"):
                seller_message = (
                    "Your food rescue has been successfully completed!" if target == "delivered"
                    else "The order was cancelled."
                )
                await notification_stage(tx, data.seller_id, "order_update", title, seller_message,
                                         data={"status": target}, order_id=order_id)

        if payment_status is not None:
            data.payment.status = payment_status
            if payment_status == "paid" and data.payment.paid_at is None:
                data.payment.paid_at = now
            if payment_status == "refunded" and refunded_at is None and data.payment.refunded_at is None:
                data.payment.refunded_at = now
        if refunded_at is not None:
            data.payment.refunded_at = refunded_at

        await Order.tx_update(tx, order)
        return _UpdateOutcome(order, previous)

    outcome = await run_transaction(logic)
    order = outcome.order
    if order.data.status != outcome.previous_status:
        logger.info(f"Order {order_id}: status {outcome.previous_status} -> {order.data.status}")
        if order.data.is_terminal():
            await order_events.publish(_terminal_event(order))
        elif order.data.status == "awaiting_courier":
            _start_matching(order_id)
        if outcome.previous_status == "awaiting_courier":
            try:
                await notification_mark_rescue_requests_read(order_id)
            except Exception as e:
                logger.warning(f"Could not retire rescue requests for order {order_id}: {e}")
    return order


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

def _cancelling_party(data: OrderData, cancelled_by: str, actor_id: Optional[str]) -> Optional[str]:
    """The party id behind *cancelled_by* on this order; None for the system."""
    if cancelled_by == "system":
        return None
    party_id = {"buyer": data.buyer_id, "seller": data.seller_id, "courier": data.courier_id}[cancelled_by]
    if party_id is None:
        raise NotOrderParty(f"Order has no assigned {cancelled_by}")
    if actor_id is not None and actor_id != party_id:
        raise NotOrderParty(f"Only the order's {cancelled_by} may cancel as {cancelled_by}")
    return party_id


async def _recent_cancellations(cancelled_by: str, party_id: str, since: datetime) -> int:
    party_field = {"buyer": "buyer_id", "seller": "seller_id", "courier": "courier_id"}[cancelled_by]
    cancelled = await Order.find([
        Where(party_field, "=", party_id),
        Where("cancellation.cancelled_by", "=", cancelled_by),
        Where("timeline.cancelled_at", ">=", since),
    ])
    count = len(cancelled)
    if cancelled_by == "courier":
        dropped = await Order.find([Where("courier_drops", "ANY", ("courier_id", party_id))])
        count += sum(
            1
            for order in dropped
            for drop in order.data.courier_drops
            if drop.courier_id == party_id and as_utc(drop.dropped_at) >= since
        )
    return count


@dataclass
class _CancelOutcome:
    order: Order
    path: str  # failed | requeued | hard_cancelled | cancelled
    dropped_courier: Optional[str] = None


@transactional()
async def order_cancel(
    order_id: str,
    cancelled_by: str,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Cancel an order on behalf of *cancelled_by*.

    Checked in order: terminal status, the per-role rate limit, the buyer's
    pickup cut-off. Then the food's whereabouts decide the path: already
    released fails the order, a courier dropping an assignment re-queues it
    (or cancels it once the attempts run out), anything else cancels it and
    returns the quantity to the listing.
    """
    if cancelled_by not in CANCELLERS:
        raise OrderValidationError(f"Unknown canceller '{cancelled_by}'")
    policy = policy_get()
    now = now or utcnow()

    current = await Order.get(order_id)
    if current is None:
        raise OrderNotFound(order_id)
    if current.data.is_terminal():
        raise OrderTerminal(current.data.status)
    party_id = _cancelling_party(current.data, cancelled_by, actor_id)
    if party_id is not None:
        since = now - timedelta(hours=policy.cancel_window_hours)
        if await _recent_cancellations(cancelled_by, party_id, since) >= policy.cancel_limit:
            raise CancelRateLimited(policy.cancel_limit, policy.cancel_window_hours)

    async def logic(tx: TransactionContext) -> _CancelOutcome:
        order = await _load_order(tx, order_id)
        data = order.data
        if data.is_terminal():
            raise OrderTerminal(data.status)
        _cancelling_party(data, cancelled_by, actor_id)

        released = data.status in RELEASED_STATUSES
        listing = None if released else await Listing.tx_get(tx, data.listing_id)

        # Only an agreed pickup time gates the buyer; the listing window does not
        scheduled_at = data.pickup.scheduled_at
        if cancelled_by == "buyer" and scheduled_at is not None:
            if as_utc(scheduled_at) - now < timedelta(minutes=policy.buyer_cancel_cutoff_minutes):
                raise TooCloseToPickup(policy.buyer_cancel_cutoff_minutes)

        if released:
            return await _cancel_released(tx, order, now)
        if cancelled_by == "courier" and data.status == "courier_assigned":
            return await _cancel_courier_drop(tx, order, now)
        return await _cancel_before_pickup(tx, order, listing, now)

    async def _cancel_released(tx: TransactionContext, order: Order, now: datetime) -> _CancelOutcome:
        data = order.data
        data.status = "failed"
        data.cancellation = OrderCancellation(cancelled_by=cancelled_by, reason=reason)
        data.timeline.cancelled_at = now
        _refund_if_paid(data, now)
        await _release_capacity(tx, data.courier_id)
        await Order.tx_update(tx, order)

        short_id = _short_id(order.id)
        status = {"status": "failed"}
        await notification_stage(
            tx, data.buyer_id, "order_update", "Order Failed",
            f"Order #{short_id} could not be completed after pickup. Please contact support.",
            data=status, order_id=order.id,
        )
        await notification_stage(
            tx, data.seller_id, "order_update", "Order Failed",
            f"Order #{short_id} was marked as failed after food was picked up.",
            data=status, order_id=order.id,
        )
        if data.courier_id:
            await notification_stage(
                tx, data.courier_id, "order_update", "Order Failed",
                f"Order #{short_id} has been marked as failed.",
                data=status, order_id=order.id,
            )
        return _CancelOutcome(order, "failed")

    async def _cancel_courier_drop(tx: TransactionContext, order: Order, now: datetime) -> _CancelOutcome:
        data = order.data
        courier_id = data.courier_id
        await _release_capacity(tx, courier_id)
        data.courier_drops.append(CourierDrop(courier_id=courier_id, dropped_at=now, reason=reason))
        data.courier_match_attempts += 1
        data.courier_id = None
        data.courier_assigned_at = None
        data.timeline.accepted_at = None

        short_id = _short_id(order.id)
        max_attempts = policy.max_courier_match_attempts
        if data.courier_match_attempts >= max_attempts:
            data.status = "cancelled"
            data.cancellation = OrderCancellation(cancelled_by="system", reason=HARD_CANCEL_REASON)
            data.timeline.cancelled_at = now
            _refund_if_paid(data, now)
            await Order.tx_update(tx, order)
            status = {"status": "cancelled"}
            await notification_stage(
                tx, data.buyer_id, "order_update", "Order Cancelled: No Volunteer Available",
                f"We couldn't find a volunteer for order #{short_id} after {max_attempts} attempts. "
                "Your order has been cancelled and any payment refunded.",
                data=status, order_id=order.id,
            )
            await notification_stage(
                tx, data.seller_id, "order_update", "Order Cancelled: No Volunteer",
                f"Order #{short_id} was cancelled after {max_attempts} failed volunteer matches.",
                data=status, order_id=order.id,
            )
            return _CancelOutcome(order, "hard_cancelled", dropped_courier=courier_id)

        data.status = "awaiting_courier"
        data.courier_search = None
        await Order.tx_update(tx, order)
        status = {"status": "awaiting_courier"}
        await notification_stage(
            tx, data.buyer_id, "order_update", "Finding New Volunteer",
            f"The volunteer for order #{short_id} is no longer available. We're finding a replacement!",
            data=status, order_id=order.id,
        )
        await notification_stage(
            tx, data.seller_id, "order_update", "Volunteer Dropped",
            f"The assigned volunteer for order #{short_id} dropped out. "
            f"Searching for a new one (attempt {data.courier_match_attempts}/{max_attempts}).",
            data=status, order_id=order.id,
        )
        return _CancelOutcome(order, "requeued", dropped_courier=courier_id)

    async def _cancel_before_pickup(
        tx: TransactionContext, order: Order, listing: Optional[Listing], now: datetime
    ) -> _CancelOutcome:
        data = order.data
        if listing is not None:
            inventory_restore(listing.data, data.quantity_ordered)
            await Listing.tx_update(tx, listing)
        else:
            logger.warning(f"Order {order.id}: listing {data.listing_id} missing, quantity not restored")

        data.status = "cancelled"
        data.cancellation = OrderCancellation(cancelled_by=cancelled_by, reason=reason)
        data.timeline.cancelled_at = now
        data.courier_search = None
        _refund_if_paid(data, now)
        await _release_capacity(tx, data.courier_id)
        await Order.tx_update(tx, order)

        short_id = _short_id(order.id)
        status = {"status": "cancelled"}
        if cancelled_by == "buyer":
            title, message = "Order Cancelled", f"You have successfully cancelled order #{short_id}."
        elif cancelled_by == "system":
            title = "Order Cancelled"
            message = f"Order #{short_id} was automatically cancelled. Any payment has been refunded."
        else:
            title = "Order Cancelled"
            message = f"Your order #{short_id} has been cancelled by the {cancelled_by}."
        await notification_stage(tx, data.buyer_id, "order_update", title, message,
                                 data=status, order_id=order.id)
        if cancelled_by != "seller":
            await notification_stage(
                tx, data.seller_id, "order_update", "Order Cancelled",
                f"Order #{short_id} has been cancelled by the {cancelled_by}.",
                data=status, order_id=order.id,
            )
        if data.courier_id and cancelled_by != "courier":
            await notification_stage(
                tx, data.courier_id, "order_update", "Order Cancelled",
                f"The rescue request for #{short_id} was cancelled.",
                data=status, order_id=order.id,
            )
        return _CancelOutcome(order, "cancelled")

    outcome = await run_transaction(logic)
    order = outcome.order
    logger.info(f"Order {order_id} cancelled by {cancelled_by}: {outcome.path}")

    if outcome.dropped_courier:
        await order_events.publish(CourierDropped(order_id=order_id, courier_id=outcome.dropped_courier))
    if order.data.is_terminal():
        await order_events.publish(_terminal_event(order))
    if outcome.path == "requeued":
        _start_matching(order_id)
    return order


# ---------------------------------------------------------------------------
# Emergencies
# ---------------------------------------------------------------------------

async def order_report_emergency(order_id: str, actor_id: Optional[str] = None, details: Optional[str] = None) -> Order:
    """Alert the buyer and seller about a delivery problem. The order itself is untouched."""
    order = await order_get(order_id)
    data = order.data
    if actor_id is not None and actor_id not in (data.buyer_id, data.seller_id, data.courier_id):
        raise NotOrderParty("Only a party to the order can report an emergency")

    logger.error(f"EMERGENCY reported on order {order_id} by {actor_id or 'unknown'}: {details or 'no details'}")
    payload = {"status": data.status, "reported_by": actor_id, "details": details}

    async def logic(tx: TransactionContext) -> None:
        await notification_stage(
            tx, data.buyer_id, "emergency", "Delivery Alert",
            "A potential delay or issue has occurred with your delivery. We are looking into it.",
            data=payload, order_id=order_id,
        )
        await notification_stage(
            tx, data.seller_id, "emergency", "Delivery Alert",
            "An issue was reported for a rescue pickup. Please contact support if needed.",
            data=payload, order_id=order_id,
        )

    await run_transaction(logic)
    return order


order_events.subscribe(OrderReachedTerminal, reputation_on_order_terminal)
order_events.subscribe(CourierDropped, reputation_on_courier_dropped)
