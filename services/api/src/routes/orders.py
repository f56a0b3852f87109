from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models.entities.couchbase.orders import Order, OrderData, OrderDrop, OrderPickup, OrderPricing
from models.entities.geo import GeoPoint
from models.errors import NotOrderParty
from models.operations.orders import (
    order_accept_courier,
    order_cancel,
    order_create,
    order_get,
    order_list_by_buyer,
    order_list_by_courier,
    order_list_by_seller,
    order_report_emergency,
    order_update,
    order_verify_code,
)
from utils import log
from .dependencies import actor_id_get

logger = log.get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateOrderRequest(BaseModel):
    listing_id: str
    quantity: int
    fulfillment: Literal["self_pickup", "courier_delivery"] = "self_pickup"
    pickup_scheduled_at: Optional[datetime] = None
    drop_address_text: Optional[str] = None
    drop_geo: Optional[GeoPoint] = None
    total_amount: Optional[float] = Field(default=None, ge=0)
    currency: str = "INR"
    special_instructions: Optional[str] = None


class VerifyCodeRequest(BaseModel):
    code: str


class PaymentPatch(BaseModel):
    status: Optional[str] = None
    refunded_at: Optional[datetime] = None


class UpdateOrderRequest(BaseModel):
    status: Optional[str] = None
    fulfillment: Optional[str] = None
    payment: Optional[PaymentPatch] = None


class CancelOrderRequest(BaseModel):
    cancelled_by: str
    reason: Optional[str] = None


class EmergencyRequest(BaseModel):
    details: Optional[str] = None


class OrderResponse(OrderData):
    id: str
    # Each party only sees the code it has to hand over
    pickup_code: Optional[str] = None
    handover_code: Optional[str] = None


def _order_to_response(order: Order, actor_id: str) -> OrderResponse:
    data = order.data
    return OrderResponse(
        id=order.id,
        **data.model_dump(),
        handover_code=data.handover_code if actor_id == data.buyer_id else None,
        pickup_code=data.pickup_code if data.courier_id and actor_id == data.courier_id else None,
    )


def _require_party(order: Order, actor_id: str) -> None:
    data = order.data
    if actor_id not in (data.buyer_id, data.seller_id, data.courier_id):
        raise NotOrderParty("Not a party to this order")


# ---------------------------------------------------------------------------
# Create and list
# ---------------------------------------------------------------------------

@router.post("/", response_model=OrderResponse, status_code=201)
async def route_order_create(body: CreateOrderRequest, actor_id: str = Depends(actor_id_get)):
    pricing = None
    if body.total_amount is not None:
        pricing = OrderPricing(total_amount=body.total_amount, currency=body.currency)
    order = await order_create(
        actor_id,
        body.listing_id,
        body.quantity,
        fulfillment=body.fulfillment,
        pickup=OrderPickup(scheduled_at=body.pickup_scheduled_at) if body.pickup_scheduled_at else None,
        drop=OrderDrop(address_text=body.drop_address_text, geo=body.drop_geo),
        pricing=pricing,
        special_instructions=body.special_instructions,
    )
    return _order_to_response(order, actor_id)


@router.get("/buyer", response_model=List[OrderResponse])
async def route_orders_as_buyer(status: Optional[str] = Query(default=None), actor_id: str = Depends(actor_id_get)):
    return [_order_to_response(o, actor_id) for o in await order_list_by_buyer(actor_id, status)]


@router.get("/seller", response_model=List[OrderResponse])
async def route_orders_as_seller(status: Optional[str] = Query(default=None), actor_id: str = Depends(actor_id_get)):
    return [_order_to_response(o, actor_id) for o in await order_list_by_seller(actor_id, status)]


@router.get("/courier", response_model=List[OrderResponse])
async def route_orders_as_courier(status: Optional[str] = Query(default=None), actor_id: str = Depends(actor_id_get)):
    return [_order_to_response(o, actor_id) for o in await order_list_by_courier(actor_id, status)]


@router.get("/{order_id}", response_model=OrderResponse)
async def route_order_get(order_id: str, actor_id: str = Depends(actor_id_get)):
    order = await order_get(order_id)
    _require_party(order, actor_id)
    return _order_to_response(order, actor_id)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@router.post("/{order_id}/accept", response_model=OrderResponse)
async def route_order_accept(order_id: str, actor_id: str = Depends(actor_id_get)):
    """Accept a rescue request as the calling courier."""
    order = await order_accept_courier(order_id, actor_id)
    return _order_to_response(order, actor_id)


@router.post("/{order_id}/verify", response_model=OrderResponse)
async def route_order_verify(order_id: str, body: VerifyCodeRequest, actor_id: str = Depends(actor_id_get)):
    _require_party(await order_get(order_id), actor_id)
    order = await order_verify_code(order_id, body.code)
    return _order_to_response(order, actor_id)


@router.patch("/{order_id}", response_model=OrderResponse)
async def route_order_update(order_id: str, body: UpdateOrderRequest, actor_id: str = Depends(actor_id_get)):
    _require_party(await order_get(order_id), actor_id)
    payment = body.payment or PaymentPatch()
    order = await order_update(
        order_id,
        status=body.status,
        fulfillment=body.fulfillment,
        payment_status=payment.status,
        refunded_at=payment.refunded_at,
    )
    return _order_to_response(order, actor_id)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def route_order_cancel(order_id: str, body: CancelOrderRequest, actor_id: str = Depends(actor_id_get)):
    if body.cancelled_by == "system":
        raise NotOrderParty("System cancellations are internal only")
    order = await order_cancel(order_id, body.cancelled_by, reason=body.reason, actor_id=actor_id)
    return _order_to_response(order, actor_id)


@router.post("/{order_id}/emergency")
async def route_order_emergency(order_id: str, body: EmergencyRequest, actor_id: str = Depends(actor_id_get)):
    await order_report_emergency(order_id, actor_id=actor_id, details=body.details)
    return {"message": "Emergency reported and parties notified"}
