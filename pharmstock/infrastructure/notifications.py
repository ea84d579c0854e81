import logging
from typing import Dict, Any

logger = logging.getLogger(__name__)


async def send_notification(recipient: str, subject: str, body: str, channel: str = "in_app") -> Dict[str, Any]:
    """Hand a message to the hospital notification sink.

    Delivery (email, ward display, push) belongs to the notification
    service; this adapter only logs and acknowledges the hand-off.
    """
    if not recipient:
        raise ValueError("Notification recipient is required")

    logger.info(f"Sending {channel} notification to {recipient}: {subject}")
    return {"status": "sent", "recipient": recipient, "channel": channel, "subject": subject, "body": body}
