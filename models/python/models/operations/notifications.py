"""Notification records. Delivery (push, SMS) happens elsewhere; here we only
compose and store them, and flip the read flag."""

import logging
from typing import Any, Dict, List, Optional

from clients.couchbase import TransactionContext, Where
from models.entities.couchbase.notifications import Notification, NotificationData, NotificationType
from models.entities.couchbase.orders import Order
from models.errors import NotificationNotFound
from models.operations.timeutil import utcnow

logger = logging.getLogger(__name__)


def _notification_data(
    user_id: str,
    type: NotificationType,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]],
    order_id: Optional[str],
) -> NotificationData:
    payload = dict(data or {})
    if order_id and "order_id" not in payload:
        payload["order_id"] = order_id
    return NotificationData(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        order_id=order_id,
        data=payload,
    )


async def notification_stage(
    tx: TransactionContext,
    user_id: str,
    type: NotificationType,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    order_id: Optional[str] = None,
) -> Notification:
    """Write a notification as part of the caller's transaction."""
    return await Notification.tx_create(tx, _notification_data(user_id, type, title, message, data, order_id))


async def notification_create(
    user_id: str,
    type: NotificationType,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    order_id: Optional[str] = None,
) -> Notification:
    return await Notification.create(_notification_data(user_id, type, title, message, data, order_id))


async def notification_list_for_user(user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    where = [Where("user_id", "=", user_id)]
    if unread_only:
        where.append(Where("is_read", "=", False))
    return await Notification.find(where, order_by="created_at DESC", limit=limit)


async def notification_mark_read(notification_id: str, user_id: str) -> Notification:
    notification = await Notification.get(notification_id)
    # Someone else's notification is reported as missing
    if notification is None or notification.data.user_id != user_id:
        raise NotificationNotFound(notification_id)
    if notification.data.is_read:
        return notification
    notification.data.is_read = True
    notification.data.read_at = utcnow()
    return await Notification.update(notification)


async def notification_mark_rescue_requests_read(order_id: str) -> int:
    """Mark every unread rescue request for *order_id* read. Returns how many changed."""
    pending = await Notification.find([
        Where("order_id", "=", order_id),
        Where("type", "=", "rescue_request"),
        Where("is_read", "=", False),
    ])
    now = utcnow()
    for notification in pending:
        notification.data.is_read = True
        notification.data.read_at = now
        await Notification.update(notification)
    return len(pending)


async def notification_list_rescue_requests(courier_id: str) -> List[Notification]:
    """Open rescue requests for a courier.

    Requests whose order has moved on from ``awaiting_courier`` are marked
    read and left out.
    """
    requests = await Notification.find(
        [
            Where("user_id", "=", courier_id),
            Where("type", "=", "rescue_request"),
            Where("is_read", "=", False),
        ],
        order_by="created_at DESC",
    )
    order_ids = list({n.data.order_id for n in requests if n.data.order_id})
    open_orders = {
        order.id for order in await Order.get_many(order_ids)
        if order.data.status == "awaiting_courier"
    }

    now = utcnow()
    still_open: List[Notification] = []
    for notification in requests:
        if notification.data.order_id in open_orders:
            still_open.append(notification)
            continue
        notification.data.is_read = True
        notification.data.read_at = now
        await Notification.update(notification)
    logger.debug(f"Courier {courier_id}: {len(still_open)} open rescue requests, {len(requests) - len(still_open)} stale")
    return still_open
