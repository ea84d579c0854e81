"""
Requisition state machine and workflow audit trail.

    DRAFT --submit--> SUBMITTED
    SUBMITTED --approve--> APPROVED
    SUBMITTED --reject--> REJECTED
    DRAFT | SUBMITTED | APPROVED | PARTIALLY_FILLED --cancel--> CANCELLED
    APPROVED | PARTIALLY_FILLED --fulfill--> PARTIALLY_FILLED | COMPLETED

REJECTED, CANCELLED and COMPLETED are terminal.
"""

from typing import Optional
import logging

from pharmstock.core.exceptions import InvalidStateError
from pharmstock.domain.requisitions.models import (
    Requisition, RequisitionStatus, RequisitionWorkflow, WorkflowAction
)
from pharmstock.infrastructure.database import utcnow

logger = logging.getLogger(__name__)

ALLOWED_FROM = {
    WorkflowAction.SUBMIT: frozenset({RequisitionStatus.DRAFT}),
    WorkflowAction.APPROVE: frozenset({RequisitionStatus.SUBMITTED}),
    WorkflowAction.REJECT: frozenset({RequisitionStatus.SUBMITTED}),
    WorkflowAction.CANCEL: frozenset({
        RequisitionStatus.DRAFT,
        RequisitionStatus.SUBMITTED,
        RequisitionStatus.APPROVED,
        RequisitionStatus.PARTIALLY_FILLED,
    }),
    WorkflowAction.FULFILL: frozenset({RequisitionStatus.APPROVED, RequisitionStatus.PARTIALLY_FILLED}),
}

TERMINAL_STATUSES = frozenset({
    RequisitionStatus.REJECTED,
    RequisitionStatus.CANCELLED,
    RequisitionStatus.COMPLETED,
})

# Statuses in which approved items hold stock reservations
RESERVING_STATUSES = frozenset({RequisitionStatus.APPROVED, RequisitionStatus.PARTIALLY_FILLED})


def ensure_allowed(requisition: Requisition, action: WorkflowAction) -> None:
    """Raise InvalidStateError unless action is legal from the current status"""
    allowed = ALLOWED_FROM[action]
    if requisition.status not in allowed:
        raise InvalidStateError(
            f"Cannot {action.value.lower()} a requisition in status {requisition.status.value}",
            details={
                "requisition_id": requisition.id,
                "status": requisition.status.value,
                "action": action.value,
                "allowed_from": sorted(s.value for s in allowed),
            },
        )


def transition(
    requisition: Requisition,
    action: WorkflowAction,
    to_status: RequisitionStatus,
    user_id: str,
    comments: Optional[str] = None,
) -> RequisitionWorkflow:
    """Move the requisition to to_status and append the audit row"""
    from_status = requisition.status
    requisition.status = to_status
    entry = record(requisition, action, from_status, to_status, user_id, comments)
    logger.info(
        f"Requisition {requisition.requisition_number} {action.value}: "
        f"{from_status.value if from_status else '-'} -> {to_status.value}"
    )
    return entry


def record(
    requisition: Requisition,
    action: WorkflowAction,
    from_status: Optional[RequisitionStatus],
    to_status: RequisitionStatus,
    user_id: str,
    comments: Optional[str] = None,
) -> RequisitionWorkflow:
    entry = RequisitionWorkflow(
        action=action,
        from_status=from_status,
        to_status=to_status,
        user_id=user_id,
        comments=comments,
        processed_at=utcnow(),
    )
    requisition.workflow.append(entry)
    return entry
