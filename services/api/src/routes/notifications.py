from typing import List

from fastapi import APIRouter, Depends, Query

from models.entities.couchbase.notifications import NotificationData
from models.operations.notifications import notification_list_for_user, notification_mark_read
from utils import log
from .dependencies import actor_id_get

logger = log.get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(NotificationData):
    id: str


@router.get("/", response_model=List[NotificationResponse])
async def route_notifications_list(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, gt=0, le=200),
    actor_id: str = Depends(actor_id_get),
):
    notifications = await notification_list_for_user(actor_id, unread_only=unread_only, limit=limit)
    return [NotificationResponse(id=n.id, **n.data.model_dump()) for n in notifications]


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def route_notification_read(notification_id: str, actor_id: str = Depends(actor_id_get)):
    notification = await notification_mark_read(notification_id, actor_id)
    return NotificationResponse(id=notification.id, **notification.data.model_dump())
