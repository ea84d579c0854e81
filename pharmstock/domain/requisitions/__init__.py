# Requisitions domain module
from pharmstock.domain.requisitions.models import (
    FulfillmentRequest,
    ItemStatus,
    Requisition,
    RequisitionCounter,
    RequisitionItem,
    RequisitionPriority,
    RequisitionStatus,
    RequisitionType,
    RequisitionWorkflow,
    WorkflowAction,
)

__all__ = [
    "FulfillmentRequest",
    "ItemStatus",
    "Requisition",
    "RequisitionCounter",
    "RequisitionItem",
    "RequisitionPriority",
    "RequisitionStatus",
    "RequisitionType",
    "RequisitionWorkflow",
    "WorkflowAction",
]
