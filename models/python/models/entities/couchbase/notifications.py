from typing import Any, Dict, Optional, Literal
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData

NotificationType = Literal["order_update", "rescue_request", "emergency"]


class NotificationData(BaseCouchbaseEntityData):
    user_id: str
    type: NotificationType
    title: str
    message: str
    order_id: Optional[str] = None
    data: Dict[str, Any] = {}
    is_read: bool = False
    read_at: Optional[datetime] = None


class Notification(BaseModelCouchbase[NotificationData]):
    _collection_name = "notifications"
