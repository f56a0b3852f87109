from typing import Optional, Literal
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData
from models.entities.geo import GeoPoint

AccountStatus = Literal["active", "warned", "locked"]


class UserData(BaseCouchbaseEntityData):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    role: Literal["buyer", "seller", "courier", "admin"] = "buyer"
    is_active: bool = True
    geo: Optional[GeoPoint] = None
    address_text: Optional[str] = None
    # Written only by the reputation engine
    trust_score: int = 50
    account_status: AccountStatus = "active"


class User(BaseModelCouchbase[UserData]):
    _collection_name = "users"
