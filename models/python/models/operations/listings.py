from datetime import datetime
from typing import List, Optional

from clients.couchbase import Where
from models.entities.couchbase.listings import Listing, ListingData
from models.errors import InsufficientQuantity, ListingExpired, ListingUnavailable, OrderValidationError
from models.operations.timeutil import as_utc, utcnow


async def listing_create(seller_id: str, data: ListingData) -> Listing:
    data.seller_id = seller_id
    if data.remaining_quantity == 0 and data.total_quantity > 0:
        data.remaining_quantity = data.total_quantity
    data.status = "active" if data.remaining_quantity > 0 else "completed"
    return await Listing.create(data, user_id=seller_id)


async def listing_get_by_seller(seller_id: str) -> List[Listing]:
    return await Listing.find([Where("seller_id", "=", seller_id)], order_by="created_at DESC")


# ---------------------------------------------------------------------------
# Inventory: mutate ListingData in place inside the caller's transaction.
# remaining_quantity == 0 exactly when status == "completed".
# ---------------------------------------------------------------------------

def inventory_reserve(data: ListingData, quantity: int, now: Optional[datetime] = None) -> None:
    """Take *quantity* off the listing or raise the unmet condition."""
    if quantity <= 0:
        raise OrderValidationError("Quantity must be a positive integer")
    now = now or utcnow()

    if data.status != "active":
        raise ListingUnavailable(data.status)
    if data.remaining_quantity < quantity:
        raise InsufficientQuantity(quantity, data.remaining_quantity)
    if as_utc(data.pickup_window.end) < now:
        raise ListingExpired()

    data.remaining_quantity -= quantity
    if data.remaining_quantity == 0:
        data.status = "completed"


def inventory_restore(data: ListingData, quantity: int) -> None:
    """Give *quantity* back to the listing, reopening it if it had completed."""
    data.remaining_quantity += quantity
    if data.status == "completed" and data.remaining_quantity > 0:
        data.status = "active"

