"""
Requisition API Schemas

Pydantic models for requisition workflow requests and responses.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, date
from decimal import Decimal

from pharmstock.domain.requisitions.models import (
    ItemStatus, RequisitionPriority, RequisitionStatus, RequisitionType, WorkflowAction
)


# ==================== Request Schemas ====================

class RequisitionItemCreate(BaseModel):
    """One requested drug line"""
    drug_id: str
    requested_quantity: int = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=1000)


class RequisitionCreate(BaseModel):
    """Schema for creating a requisition"""
    requesting_department_id: str
    fulfillment_warehouse_id: str
    type: RequisitionType = RequisitionType.REGULAR
    priority: RequisitionPriority = RequisitionPriority.NORMAL
    required_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=2000)
    requisition_number: Optional[str] = Field(None, min_length=1, max_length=32)
    save_as_draft: bool = False
    items: List[RequisitionItemCreate] = Field(..., min_length=1)


class WorkflowComment(BaseModel):
    comments: Optional[str] = Field(None, max_length=2000)


class ApprovalItem(BaseModel):
    item_id: str
    approved_quantity: int = Field(..., ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class RequisitionApprove(BaseModel):
    """Approve with optional per-item quantity overrides"""
    items: List[ApprovalItem] = []
    comments: Optional[str] = Field(None, max_length=2000)


class RequisitionReject(BaseModel):
    # Blank reasons are refused by the workflow with MISSING_REASON
    reason: str = ""


class RequisitionCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class FulfillmentItem(BaseModel):
    item_id: str
    dispensed_quantity: int = Field(..., ge=0)
    batch_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


class RequisitionFulfill(BaseModel):
    """Dispensing lines; idempotency_key makes a retried call safe"""
    items: List[FulfillmentItem] = Field(..., min_length=1)
    comments: Optional[str] = Field(None, max_length=2000)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)


# ==================== Response Schemas ====================

class RequisitionItemResponse(BaseModel):
    id: str
    line_number: int
    drug_id: str
    stock_card_id: str
    requested_quantity: int
    approved_quantity: Optional[int] = None
    fulfilled_quantity: int
    outstanding_quantity: int
    status: ItemStatus
    unit_cost: Optional[Decimal] = None
    total_cost: Optional[Decimal] = None
    request_notes: Optional[str] = None
    approver_notes: Optional[str] = None
    dispenser_notes: Optional[str] = None
    last_batch_id: Optional[str] = None
    last_dispensed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkflowEntryResponse(BaseModel):
    action: WorkflowAction
    from_status: Optional[RequisitionStatus] = None
    to_status: RequisitionStatus
    user_id: str
    comments: Optional[str] = None
    processed_at: datetime

    class Config:
        from_attributes = True


class RequisitionTotals(BaseModel):
    item_count: int
    completed_item_count: int
    requested_quantity: int
    approved_quantity: int
    fulfilled_quantity: int
    approved_value: Decimal
    dispensed_value: Decimal


class RequisitionDetailResponse(BaseModel):
    """Full aggregate with items, workflow history and totals"""
    id: str
    requisition_number: str
    type: RequisitionType
    priority: RequisitionPriority
    status: RequisitionStatus
    requesting_department_id: str
    fulfillment_warehouse_id: str
    requester_id: str
    approver_id: Optional[str] = None
    fulfiller_id: Optional[str] = None
    requested_date: datetime
    required_date: Optional[date] = None
    submitted_date: Optional[datetime] = None
    approved_date: Optional[datetime] = None
    fulfilled_date: Optional[datetime] = None
    cancelled_date: Optional[datetime] = None
    request_notes: Optional[str] = None
    approver_comments: Optional[str] = None
    fulfiller_comments: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    total_dispensed_value: Decimal
    created_at: Optional[datetime] = None
    items: List[RequisitionItemResponse]
    workflow: List[WorkflowEntryResponse]
    totals: RequisitionTotals


class RequisitionSummaryResponse(BaseModel):
    """List row"""
    id: str
    requisition_number: str
    type: RequisitionType
    priority: RequisitionPriority
    status: RequisitionStatus
    requesting_department_id: str
    fulfillment_warehouse_id: str
    requester_id: str
    requested_date: datetime
    required_date: Optional[date] = None
    total_dispensed_value: Decimal
    created_at: Optional[datetime] = None
    item_count: int = 0

    class Config:
        from_attributes = True


class RequisitionListResponse(BaseModel):
    """Schema for paginated requisition list"""
    items: List[RequisitionSummaryResponse]
    total: int
    page: int
    limit: int
    pages: int


class FulfillmentResponse(BaseModel):
    requisition_id: str
    action: str
    status: RequisitionStatus
    dispensed_value: Decimal
    replayed: bool = False
