from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel, Field
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData
from models.entities.geo import GeoPoint

OrderStatus = Literal[
    "placed",
    "awaiting_courier",
    "courier_assigned",
    "picked_up",
    "in_transit",
    "delivered",
    "cancelled",
    "failed",
]
Fulfillment = Literal["self_pickup", "courier_delivery"]
CancelledBy = Literal["buyer", "seller", "courier", "system"]

ORDER_STATUSES = (
    "placed",
    "awaiting_courier",
    "courier_assigned",
    "picked_up",
    "in_transit",
    "delivered",
    "cancelled",
    "failed",
)
FULFILLMENTS = ("self_pickup", "courier_delivery")
TERMINAL_STATUSES = ("delivered", "cancelled", "failed")
# Food has left the seller; cancelling from here fails the order
RELEASED_STATUSES = ("picked_up", "in_transit")


class OrderTimeline(BaseModel):
    placed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class OrderCancellation(BaseModel):
    cancelled_by: CancelledBy
    reason: Optional[str] = None


class OrderPayment(BaseModel):
    status: Literal["unpaid", "paid", "refunded"] = "unpaid"
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class OrderPickup(BaseModel):
    scheduled_at: Optional[datetime] = None
    address_text: Optional[str] = None


class OrderDrop(BaseModel):
    address_text: Optional[str] = None
    geo: Optional[GeoPoint] = None


class OrderPricing(BaseModel):
    total_amount: float = 0.0
    currency: str = "INR"


class CourierSearch(BaseModel):
    """Pending self-pickup fallback for an order awaiting a courier."""
    started_at: datetime
    fallback_at: Optional[datetime] = None
    candidates_notified: int = 0


class CourierDrop(BaseModel):
    courier_id: str
    dropped_at: datetime
    reason: Optional[str] = None


class OrderData(BaseCouchbaseEntityData):
    listing_id: str
    seller_id: str
    buyer_id: str
    courier_id: Optional[str] = None
    courier_assigned_at: Optional[datetime] = None

    quantity_ordered: int
    fulfillment: Fulfillment = "self_pickup"
    status: OrderStatus = "placed"

    # Single-use handover codes, kept out of API dumps
    pickup_code: Optional[str] = Field(default=None, exclude=True)
    handover_code: Optional[str] = Field(default=None, exclude=True)

    pickup: OrderPickup = Field(default_factory=OrderPickup)
    drop: OrderDrop = Field(default_factory=OrderDrop)
    pricing: Optional[OrderPricing] = None
    special_instructions: Optional[str] = None

    timeline: OrderTimeline = Field(default_factory=OrderTimeline)
    cancellation: Optional[OrderCancellation] = None
    payment: OrderPayment = Field(default_factory=OrderPayment)

    courier_match_attempts: int = 0
    courier_search: Optional[CourierSearch] = None
    courier_drops: List[CourierDrop] = []

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Order(BaseModelCouchbase[OrderData]):
    _collection_name = "orders"
