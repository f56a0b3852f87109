from datetime import timedelta

import pytest

from models.entities.couchbase.orders import OrderPickup
from models.errors import (
    CancelRateLimited,
    NotOrderParty,
    OrderTerminal,
    OrderValidationError,
    TooCloseToPickup,
)
from models.operations.events import background_drain
from models.operations.orders import (
    HARD_CANCEL_REASON,
    order_accept_courier,
    order_cancel,
    order_create,
    order_update,
    order_verify_code,
)
from models.operations.policy import RescuePolicy, policy_set


async def _delivery(seed, listing_id=None):
    order = await order_create("buyer-1", listing_id or seed.listing(), 1, fulfillment="courier_delivery")
    await background_drain()
    return order


# ---------------------------------------------------------------------------
# Before pickup
# ---------------------------------------------------------------------------

async def test_buyer_cancel_restores_the_listing(seed, store, inbox):
    listing_id = seed.listing(quantity=5)
    order = await order_create("buyer-1", listing_id, 5)
    assert store.doc("listings", listing_id)["status"] == "completed"

    cancelled = await order_cancel(order.id, "buyer", reason="plans changed", actor_id="buyer-1")

    assert cancelled.data.status == "cancelled"
    assert cancelled.data.cancellation.cancelled_by == "buyer"
    assert cancelled.data.cancellation.reason == "plans changed"
    assert cancelled.data.timeline.cancelled_at is not None
    listing = store.doc("listings", listing_id)
    assert (listing["remaining_quantity"], listing["status"]) == (5, "active")
    assert "Order Cancelled" in [n["title"] for n in inbox("seller-1")]


async def test_seller_cancel_notifies_buyer_only(seed, inbox):
    order = await order_create("buyer-1", seed.listing(), 1)

    await order_cancel(order.id, "seller", actor_id="seller-1")

    [to_buyer] = [n for n in inbox("buyer-1") if n["data"]["status"] == "cancelled"]
    assert "has been cancelled by the seller" in to_buyer["message"]
    assert [n for n in inbox("seller-1") if n["data"]["status"] == "cancelled"] == []


async def test_cancelling_an_assigned_order_frees_the_courier(seed, store, inbox):
    seed.courier("courier-1")
    order = await _delivery(seed)
    await order_accept_courier(order.id, "courier-1")

    await order_cancel(order.id, "seller", actor_id="seller-1")

    assert store.doc("courier_profiles", "courier-1")["availability"]["active_orders"] == 0
    assert "Order Cancelled" in [n["title"] for n in inbox("courier-1")]


async def test_paid_order_is_refunded(seed):
    order = await order_create("buyer-1", seed.listing(), 1)
    await order_update(order.id, payment_status="paid")

    cancelled = await order_cancel(order.id, "buyer", actor_id="buyer-1")

    assert cancelled.data.payment.status == "refunded"
    assert cancelled.data.payment.refunded_at is not None


async def test_unpaid_order_stays_unpaid(seed):
    order = await order_create("buyer-1", seed.listing(), 1)
    cancelled = await order_cancel(order.id, "buyer", actor_id="buyer-1")
    assert cancelled.data.payment.status == "unpaid"


async def test_system_cancel(seed, inbox):
    order = await order_create("buyer-1", seed.listing(), 1)

    cancelled = await order_cancel(order.id, "system", reason="listing withdrawn")

    assert cancelled.data.cancellation.cancelled_by == "system"
    assert any("automatically cancelled" in n["message"] for n in inbox("buyer-1"))


# ---------------------------------------------------------------------------
# After pickup
# ---------------------------------------------------------------------------

async def test_cancel_after_pickup_fails_the_order(seed, store, inbox):
    seed.courier("courier-1")
    listing_id = seed.listing(quantity=5)
    order = await _delivery(seed, listing_id)
    await order_accept_courier(order.id, "courier-1")
    await order_verify_code(order.id, store.doc("orders", order.id)["pickup_code"])

    failed = await order_cancel(order.id, "courier", reason="bike broke", actor_id="courier-1")

    assert failed.data.status == "failed"
    # The food is gone, so nothing goes back on the listing
    assert store.doc("listings", listing_id)["remaining_quantity"] == 4
    assert store.doc("courier_profiles", "courier-1")["availability"]["active_orders"] == 0
    for party in ("buyer-1", "seller-1", "courier-1"):
        assert "Order Failed" in [n["title"] for n in inbox(party)]
    # Failure counts against every party on the order
    assert store.doc("users", "buyer-1")["trust_score"] == 20
    assert store.doc("users", "courier-1")["trust_score"] == 20


async def test_cancel_in_transit_fails_the_order(seed, store, inbox):
    seed.courier("courier-1")
    listing_id = seed.listing(quantity=5)
    order = await _delivery(seed, listing_id)
    await order_accept_courier(order.id, "courier-1")
    await order_verify_code(order.id, store.doc("orders", order.id)["pickup_code"])
    await order_update(order.id, status="in_transit")
    assert store.doc("orders", order.id)["status"] == "in_transit"

    failed = await order_cancel(order.id, "buyer", actor_id="buyer-1")

    assert failed.data.status == "failed"
    assert store.doc("listings", listing_id)["remaining_quantity"] == 4
    assert store.doc("courier_profiles", "courier-1")["availability"]["active_orders"] == 0
    assert "Order Failed" in [n["title"] for n in inbox("courier-1")]


# ---------------------------------------------------------------------------
# Courier drops
# ---------------------------------------------------------------------------

async def test_courier_drop_requeues_the_order(seed, store, inbox):
    seed.courier("courier-1")
    seed.courier("courier-2")
    order = await _delivery(seed)
    await order_accept_courier(order.id, "courier-1")

    requeued = await order_cancel(order.id, "courier", reason="flat tyre", actor_id="courier-1")
    await background_drain()

    assert requeued.data.status == "awaiting_courier"
    assert requeued.data.courier_id is None
    assert requeued.data.courier_match_attempts == 1
    assert [d.courier_id for d in requeued.data.courier_drops] == ["courier-1"]
    assert store.doc("courier_profiles", "courier-1")["availability"]["active_orders"] == 0
    assert "Finding New Volunteer" in [n["title"] for n in inbox("buyer-1")]

    # Re-matching skips the courier who dropped
    assert len(inbox("courier-1", type="rescue_request")) == 1
    assert len(inbox("courier-2", type="rescue_request")) == 2
    assert store.doc("orders", order.id)["courier_search"]["fallback_at"] is not None

    # A drop is a responsible failure for the courier only
    assert store.doc("users", "courier-1")["trust_score"] == 20
    assert store.doc("users", "buyer-1")["trust_score"] == 50


async def test_last_allowed_drop_cancels_the_order(seed, store, inbox):
    for courier_id in ("courier-1", "courier-2", "courier-3"):
        seed.courier(courier_id)
    order = await _delivery(seed)
    await order_update(order.id, payment_status="paid")

    for courier_id in ("courier-1", "courier-2", "courier-3"):
        await order_accept_courier(order.id, courier_id)
        result = await order_cancel(order.id, "courier", actor_id=courier_id)
        await background_drain()

    assert result.data.status == "cancelled"
    assert result.data.courier_match_attempts == 3
    assert result.data.courier_id is None
    assert result.data.cancellation.cancelled_by == "system"
    assert result.data.cancellation.reason == HARD_CANCEL_REASON
    assert result.data.payment.status == "refunded"
    assert "Order Cancelled: No Volunteer Available" in [n["title"] for n in inbox("buyer-1")]
    assert "Order Cancelled: No Volunteer" in [n["title"] for n in inbox("seller-1")]


async def test_drop_before_max_attempts_keeps_order_open(seed):
    policy_set(RescuePolicy(max_courier_match_attempts=2))
    seed.courier("courier-1")
    order = await _delivery(seed)
    await order_accept_courier(order.id, "courier-1")

    result = await order_cancel(order.id, "courier", actor_id="courier-1")
    await background_drain()

    assert result.data.status == "awaiting_courier"


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------

async def test_terminal_order_cannot_be_cancelled(seed, store):
    order = await order_create("buyer-1", seed.listing(), 1)
    await order_verify_code(order.id, store.doc("orders", order.id)["handover_code"])

    with pytest.raises(OrderTerminal):
        await order_cancel(order.id, "buyer", actor_id="buyer-1")


async def test_buyer_cannot_cancel_close_to_pickup(seed, store, now):
    listing_id = seed.listing(quantity=5)
    order = await order_create(
        "buyer-1", listing_id, 2,
        pickup=OrderPickup(scheduled_at=now + timedelta(minutes=20)),
    )

    with pytest.raises(TooCloseToPickup, match="30 minutes"):
        await order_cancel(order.id, "buyer", actor_id="buyer-1")
    assert store.doc("orders", order.id)["status"] == "placed"
    assert store.doc("listings", listing_id)["remaining_quantity"] == 3


async def test_buyer_cannot_cancel_once_pickup_time_has_passed(seed, now):
    order = await order_create(
        "buyer-1", seed.listing(), 1,
        pickup=OrderPickup(scheduled_at=now - timedelta(hours=1)),
    )
    with pytest.raises(TooCloseToPickup):
        await order_cancel(order.id, "buyer", actor_id="buyer-1")


async def test_listing_window_alone_does_not_block_the_buyer(seed, store, now):
    # Ordered after the window opened, without an agreed pickup time
    listing_id = seed.listing(quantity=5, window_start=now - timedelta(minutes=10))
    order = await order_create("buyer-1", listing_id, 2)

    cancelled = await order_cancel(order.id, "buyer", actor_id="buyer-1")

    assert cancelled.data.status == "cancelled"
    assert store.doc("listings", listing_id)["remaining_quantity"] == 5


async def test_seller_is_not_bound_by_the_pickup_cutoff(seed, now):
    order = await order_create(
        "buyer-1", seed.listing(), 1,
        pickup=OrderPickup(scheduled_at=now + timedelta(minutes=5)),
    )
    cancelled = await order_cancel(order.id, "seller", actor_id="seller-1")
    assert cancelled.data.status == "cancelled"


async def test_cancellation_rate_limit(seed):
    listing_id = seed.listing(quantity=10)
    for _ in range(3):
        order = await order_create("buyer-1", listing_id, 1)
        await order_cancel(order.id, "buyer", actor_id="buyer-1")

    fourth = await order_create("buyer-1", listing_id, 1)
    with pytest.raises(CancelRateLimited, match="more than 3 orders within 24 hours"):
        await order_cancel(fourth.id, "buyer", actor_id="buyer-1")


async def test_rate_limit_is_checked_before_the_cutoff(seed, now):
    policy_set(RescuePolicy(cancel_limit=1))
    listing_id = seed.listing(quantity=10)
    first = await order_create("buyer-1", listing_id, 1)
    await order_cancel(first.id, "buyer", actor_id="buyer-1")

    close = await order_create(
        "buyer-1", listing_id, 1,
        pickup=OrderPickup(scheduled_at=now + timedelta(minutes=5)),
    )
    with pytest.raises(CancelRateLimited):
        await order_cancel(close.id, "buyer", actor_id="buyer-1")


async def test_courier_drops_count_towards_the_rate_limit(seed):
    policy_set(RescuePolicy(cancel_limit=1))
    seed.courier("courier-1")
    first = await _delivery(seed)
    await order_accept_courier(first.id, "courier-1")
    await order_cancel(first.id, "courier", actor_id="courier-1")
    await background_drain()

    second = await _delivery(seed)
    await order_accept_courier(second.id, "courier-1")
    with pytest.raises(CancelRateLimited):
        await order_cancel(second.id, "courier", actor_id="courier-1")


async def test_other_users_cannot_cancel_as_a_party(seed):
    order = await order_create("buyer-1", seed.listing(), 1)
    with pytest.raises(NotOrderParty):
        await order_cancel(order.id, "buyer", actor_id="buyer-2")


async def test_courier_cannot_cancel_unassigned_order(seed):
    order = await _delivery(seed)
    with pytest.raises(NotOrderParty):
        await order_cancel(order.id, "courier", actor_id="courier-1")


async def test_unknown_canceller(seed):
    order = await order_create("buyer-1", seed.listing(), 1)
    with pytest.raises(OrderValidationError):
        await order_cancel(order.id, "admin")
