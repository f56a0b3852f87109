from typing import Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData
from models.entities.geo import GeoPoint


class PickupWindow(BaseModel):
    start: datetime
    end: datetime


class ListingData(BaseCouchbaseEntityData):
    seller_id: str
    food_name: str
    food_type: Literal["cooked_veg", "cooked_non_veg", "raw_veg", "bakery", "other"] = "other"
    description: Optional[str] = None
    total_quantity: int = 0
    remaining_quantity: int = 0
    status: Literal["active", "completed"] = "active"
    pickup_geo: Optional[GeoPoint] = None
    pickup_address_text: Optional[str] = None
    pickup_window: PickupWindow


class Listing(BaseModelCouchbase[ListingData]):
    _collection_name = "listings"
