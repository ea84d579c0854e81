from typing import Dict, Any, Optional
from datetime import date
import asyncio

from loguru import logger

from pharmstock.workers.celery_app import celery_app
from pharmstock.infrastructure.notifications import send_notification

EVENT_SUBJECTS = {
    "requisition.approved": "Requisition {number} approved",
    "requisition.rejected": "Requisition {number} rejected",
    "requisition.cancelled": "Requisition {number} cancelled",
    "requisition.partially_filled": "Requisition {number} partially filled",
    "requisition.completed": "Requisition {number} completed",
}


def build_message(payload: Dict[str, Any]) -> Dict[str, str]:
    """Subject and body for a workflow event payload"""
    number = payload.get("requisition_number", "")
    template = EVENT_SUBJECTS.get(payload["event"], "Requisition {number} updated")
    body = f"Status: {payload.get('status')}"
    if payload.get("comments"):
        body += f"\n{payload['comments']}"
    return {"subject": template.format(number=number), "body": body}


@celery_app.task(name="pharmstock.workers.tasks.deliver_requisition_event", bind=True, max_retries=3)
def deliver_requisition_event(self, payload: Dict[str, Any]):
    """Deliver a requisition workflow event to the requester"""
    message = build_message(payload)
    try:
        logger.info(f"Delivering {payload['event']} for requisition {payload.get('requisition_number')}")
        return asyncio.run(send_notification(
            recipient=payload["requester_id"],
            subject=message["subject"],
            body=message["body"],
        ))
    except Exception as exc:
        logger.error(f"Failed to deliver {payload.get('event')}: {exc}")
        raise self.retry(exc=exc, countdown=2 ** self.request.retries)


async def _expire_batches(today: date, hospital_id: Optional[str]) -> int:
    from pharmstock.infrastructure.database import AsyncSessionLocal
    from pharmstock.domain.stock.service import StockService

    async with AsyncSessionLocal() as session:
        return await StockService(session).expire_batches(today, hospital_id)


@celery_app.task(name="pharmstock.workers.tasks.expire_stock_batches")
def expire_stock_batches(today: Optional[str] = None, hospital_id: Optional[str] = None):
    """Daily sweep marking lots past their expiry date"""
    run_date = date.fromisoformat(today) if today else date.today()
    logger.info(f"Expiring stock batches as of {run_date.isoformat()}")
    count = asyncio.run(_expire_batches(run_date, hospital_id))
    logger.info(f"{count} batches marked expired")
    return {"expired": count, "date": run_date.isoformat()}
