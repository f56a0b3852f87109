from typing import Optional, Literal
from pydantic import BaseModel, Field
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData
from models.errors import CourierAtCapacity


class CapacityLedger(BaseModel):
    """Concurrent assignments of one courier against its configured maximum.

    Invariant: ``0 <= active_orders <= max_concurrent_orders`` and
    ``is_available`` is False whenever the courier is at capacity.
    """
    is_available: bool = True
    active_orders: int = Field(default=0, ge=0)
    max_concurrent_orders: int = Field(default=1, gt=0)

    def has_headroom(self) -> bool:
        return self.active_orders < self.max_concurrent_orders

    def acquire(self) -> None:
        if not self.has_headroom():
            raise CourierAtCapacity(self.max_concurrent_orders)
        self.active_orders += 1
        if not self.has_headroom():
            self.is_available = False

    def release(self) -> None:
        self.active_orders = max(0, self.active_orders - 1)
        self.is_available = True

    def set_available(self, available: bool) -> None:
        # A courier at capacity stays unavailable until a slot frees
        self.is_available = available and self.has_headroom()


class CourierProfileData(BaseCouchbaseEntityData):
    user_id: str
    vehicle_type: Optional[Literal["walk", "bicycle", "motorbike", "car"]] = None
    availability: CapacityLedger = Field(default_factory=CapacityLedger)


class CourierProfile(BaseModelCouchbase[CourierProfileData]):
    """Keyed by the courier's user id."""
    _collection_name = "courier_profiles"
