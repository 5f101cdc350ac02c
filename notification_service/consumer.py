"""
Notification service consumer. Listens to order.confirmed and order.cancelled
and logs a structured notification. In a real system this would send
email/SMS/push.
"""

import logging

from notification_service.metrics import NOTIFICATIONS
from shared.errors import PoisonMessageError
from shared.events import EventBase, OrderCancelledEvent, OrderConfirmedEvent

logger = logging.getLogger(__name__)


async def notify(event: EventBase) -> None:
    if isinstance(event, OrderConfirmedEvent):
        logger.info(
            "NOTIFICATION: Order confirmed",
            extra={
                "order_id": str(event.order_id),
                "owner_id": event.owner_id,
                "correlation_id": event.correlation_id,
            },
        )
        NOTIFICATIONS.labels("confirmed").inc()
    elif isinstance(event, OrderCancelledEvent):
        logger.info(
            "NOTIFICATION: Order cancelled",
            extra={
                "order_id": str(event.order_id),
                "owner_id": event.owner_id,
                "correlation_id": event.correlation_id,
                "reason": event.reason,
            },
        )
        NOTIFICATIONS.labels("cancelled").inc()
    else:
        raise PoisonMessageError(f"Notification service cannot handle {type(event).__name__}")
