import logging
from typing import Any, Dict, Optional

from twilio.rest import Client

from config import settings
from database import create_document, to_object_id
from schemas import Notification

logger = logging.getLogger(__name__)

ORDER_PLACED = "order_placed"
ORDER_CONFIRMED = "order_confirmed"
ORDER_SHIPPED = "order_shipped"
ORDER_CANCELLED = "order_cancelled"
DELIVERY_ASSIGNED = "delivery_assigned"
OUT_FOR_DELIVERY = "out_for_delivery"
OTP_GENERATED = "otp_generated"
ORDER_DELIVERED = "order_delivered"

TITLES = {
    ORDER_PLACED: "New order received",
    ORDER_CONFIRMED: "Order confirmed",
    ORDER_SHIPPED: "Order shipped",
    ORDER_CANCELLED: "Order cancelled",
    DELIVERY_ASSIGNED: "New delivery assigned",
    OUT_FOR_DELIVERY: "Out for delivery",
    OTP_GENERATED: "Delivery code",
    ORDER_DELIVERED: "Order delivered",
}


class NotificationService:
    """Optional SMS transport. Disabled unless Twilio credentials are set."""

    def __init__(self):
        self.client = None
        self.enabled = False

        if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER:
            try:
                self.client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
                self.enabled = True
                logger.info("NotificationService: Twilio client initialized")
            except Exception as e:
                logger.error("Failed to initialize Twilio client: %s", e)
        else:
            logger.info("NotificationService: credentials missing, SMS disabled")

    def send_sms(self, to_number: str, body: str) -> bool:
        if not self.enabled or not to_number:
            return False
        try:
            self.client.messages.create(from_=settings.TWILIO_FROM_NUMBER, body=body, to=to_number)
            logger.info("SMS sent to %s", to_number)
            return True
        except Exception as e:
            logger.error("Failed to send SMS to %s: %s", to_number, e)
            return False


_service: Optional[NotificationService] = None


def get_service() -> NotificationService:
    global _service
    if _service is None:
        _service = NotificationService()
    return _service


def render(event: str, order_number: Optional[str], data: Dict[str, Any]) -> str:
    title = TITLES.get(event, event.replace("_", " ").capitalize())
    text = f"{title}"
    if order_number:
        text += f": {order_number}"
    if event == OTP_GENERATED and data.get("otp"):
        text += f". Share code {data['otp']} with the delivery agent."
    return text


def emit(db, recipient_id: str, event: str, order_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> str:
    """
    Record an event for out-of-band delivery and try the SMS transport.

    Returns the notification id. Transport problems are logged, never raised.
    """
    data = dict(data or {})
    note = Notification(recipient_id=recipient_id, event=event, order_id=order_id, data=data)
    notification_id = create_document(db, "notification", note)
    logger.info("Notification %s -> user %s (order %s)", event, recipient_id, order_id)

    service = get_service()
    if service.enabled:
        try:
            user = db["user"].find_one({"_id": to_object_id(recipient_id, "User")}, {"phone": 1})
        except Exception as e:
            logger.error("Recipient lookup failed for %s: %s", recipient_id, e)
            return notification_id
        if user and user.get("phone"):
            service.send_sms(user["phone"], render(event, data.get("order_number"), data))
    return notification_id
