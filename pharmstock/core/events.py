"""
Requisition workflow events.

Events are published after the workflow transaction commits, so a failure
here never undoes or fails a transition; it is logged and dropped.
"""

from typing import Dict, Any, Optional
import logging

from pharmstock.core.config import settings
from pharmstock.infrastructure.database import utcnow

logger = logging.getLogger(__name__)

REQUISITION_APPROVED = "requisition.approved"
REQUISITION_REJECTED = "requisition.rejected"
REQUISITION_CANCELLED = "requisition.cancelled"
REQUISITION_PARTIALLY_FILLED = "requisition.partially_filled"
REQUISITION_COMPLETED = "requisition.completed"


def build_event(event: str, requisition, actor_id: str, comments: Optional[str] = None) -> Dict[str, Any]:
    return {
        "event": event,
        "requisition_id": requisition.id,
        "requisition_number": requisition.requisition_number,
        "hospital_id": requisition.hospital_id,
        "status": requisition.status.value,
        "requester_id": requisition.requester_id,
        "actor_id": actor_id,
        "comments": comments,
        "occurred_at": utcnow().isoformat(),
    }


class EventPublisher:
    """Hands workflow events to the notification worker"""

    def __init__(self, enabled: Optional[bool] = None):
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return settings.EVENTS_ENABLED if self._enabled is None else self._enabled

    def publish(self, event: str, requisition, actor_id: str, comments: Optional[str] = None) -> bool:
        if not self.enabled:
            return False

        payload = build_event(event, requisition, actor_id, comments)
        try:
            from pharmstock.workers.tasks import deliver_requisition_event
            deliver_requisition_event.delay(payload)
            return True
        except Exception as e:
            logger.error(f"Failed to publish {event} for requisition {requisition.id}: {e}")
            return False


event_publisher = EventPublisher()
