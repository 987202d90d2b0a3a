from __future__ import annotations

from ..extensions import db
from ..models import Notification
from .money import format_cents


TYPE_ORDER_CREATED = "ORDER_CREATED"

_TITLES = {
    "ONLINE": "New Online Order",
    "IN_STORE": "New In-Store Order",
    "PHONE": "New Phone Order",
}


def enqueue_order_notification(order) -> Notification:
    """
    Write the merchant notification for a freshly settled order.

    Must run inside the settlement transaction so the notification exists
    if and only if the order does.
    """
    notification = Notification(
        store_id=order.store_id,
        order_id=order.id,
        type=TYPE_ORDER_CREATED,
        title=_TITLES.get(order.source, "New Order"),
        message=f"Order {order.order_number} created for {format_cents(order.total_cents)} {order.currency}",
        is_read=False,
    )
    db.session.add(notification)
    return notification
