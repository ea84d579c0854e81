"""
Requisition API Routes

API endpoints for the requisition workflow: create, list, detail, submit,
approve, reject, cancel and fulfill.
"""

from fastapi import APIRouter, Depends, Query, status
from typing import Optional
import math

from pharmstock.api.deps import get_requisition_service
from pharmstock.core.permissions import CurrentUser, Permissions, require_permissions
from pharmstock.domain.requisitions.fulfillment import FulfillmentLine
from pharmstock.domain.requisitions.models import RequisitionStatus, RequisitionType
from pharmstock.domain.requisitions.service import (
    ApprovalLine, ItemInput, RequisitionInput, RequisitionService
)
from pharmstock.api.v1.requisitions.schemas import (
    RequisitionCreate, RequisitionApprove, RequisitionReject, RequisitionCancel,
    RequisitionFulfill, WorkflowComment,
    RequisitionDetailResponse, RequisitionListResponse, RequisitionSummaryResponse,
    FulfillmentResponse
)

router = APIRouter()


@router.post("", response_model=RequisitionDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_requisition(
    body: RequisitionCreate,
    service: RequisitionService = Depends(get_requisition_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.REQUISITIONS_CREATE]))
):
    """Create a requisition, as a draft or submitted straight away"""
    requisition = await service.create(
        current_user.hospital_id,
        current_user.user_id,
        RequisitionInput(
            requesting_department_id=body.requesting_department_id,
            fulfillment_warehouse_id=body.fulfillment_warehouse_id,
            items=[ItemInput(i.drug_id, i.requested_quantity, i.notes) for i in body.items],
            type=body.type,
            priority=body.priority,
            required_date=body.required_date,
            notes=body.notes,
            requisition_number=body.requisition_number,
            save_as_draft=body.save_as_draft,
        ),
    )
    return await service.get(requisition.id, current_user.hospital_id)


@router.get("", response_model=RequisitionListResponse)
async def list_requisitions(
    status_filter: Optional[RequisitionStatus] = Query(None, alias="status"),
    type_filter: Optional[RequisitionType] = Query(None, alias="type"),
    warehouse_id: Optional[str] = Query(None, description="Incoming view: fulfillment warehouse"),
    department_id: Optional[str] = Query(None, description="Outgoing view: requesting department"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: RequisitionService = Depends(get_requisition_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.REQUISITIONS_READ]))
):
    """List requisitions, most urgent and newest first"""
    rows, total = await service.list(
        current_user.hospital_id,
        status=status_filter,
        requisition_type=type_filter,
        fulfillment_warehouse_id=warehouse_id,
        requesting_department_id=department_id,
        page=page,
        limit=limit,
    )
    items = []
    for requisition, item_count in rows:
        summary = RequisitionSummaryResponse.model_validate(requisition)
        summary.item_count = item_count
        items.append(summary)

    return RequisitionListResponse(
        items=items,
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total > 0 else 0,
    )


@router.get("/{requisition_id}", response_model=RequisitionDetailResponse)
async def get_requisition(
    requisition_id: str,
    service: RequisitionService = Depends(get_requisition_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.REQUISITIONS_READ]))
):
    """Requisition with items, workflow history and totals"""
    return await service.get(requisition_id, current_user.hospital_id)


@router.post("/{requisition_id}/submit", response_model=RequisitionDetailResponse)
async def submit_requisition(
    requisition_id: str,
    body: Optional[WorkflowComment] = None,
    service: RequisitionService = Depends(get_requisition_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.REQUISITIONS_CREATE]))
):
    await service.submit(
        requisition_id, current_user.hospital_id, current_user.user_id,
        body.comments if body else None,
    )
    return await service.get(requisition_id, current_user.hospital_id)


@router.post("/{requisition_id}/approve", response_model=RequisitionDetailResponse)
async def approve_requisition(
    requisition_id: str,
    body: Optional[RequisitionApprove] = None,
    service: RequisitionService = Depends(get_requisition_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.REQUISITIONS_APPROVE]))
):
    """Approve and reserve stock for every item"""
    body = body or RequisitionApprove()
    await service.approve(
        requisition_id,
        current_user.hospital_id,
        current_user.user_id,
        [ApprovalLine(i.item_id, i.approved_quantity, i.notes) for i in body.items],
        body.comments,
    )
    return await service.get(requisition_id, current_user.hospital_id)


@router.post("/{requisition_id}/reject", response_model=RequisitionDetailResponse)
async def reject_requisition(
    requisition_id: str,
    body: RequisitionReject,
    service: RequisitionService = Depends(get_requisition_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.REQUISITIONS_APPROVE]))
):
    await service.reject(requisition_id, current_user.hospital_id, current_user.user_id, body.reason)
    return await service.get(requisition_id, current_user.hospital_id)


@router.post("/{requisition_id}/cancel", response_model=RequisitionDetailResponse)
async def cancel_requisition(
    requisition_id: str,
    body: Optional[RequisitionCancel] = None,
    service: RequisitionService = Depends(get_requisition_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.REQUISITIONS_CANCEL]))
):
    """Cancel and release any outstanding reservation"""
    await service.cancel(
        requisition_id, current_user.hospital_id, current_user.user_id,
        body.reason if body else None,
    )
    return await service.get(requisition_id, current_user.hospital_id)


@router.post("/{requisition_id}/fulfill", response_model=FulfillmentResponse)
async def fulfill_requisition(
    requisition_id: str,
    body: RequisitionFulfill,
    service: RequisitionService = Depends(get_requisition_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.REQUISITIONS_FULFILL]))
):
    """Dispense against an approved requisition"""
    result = await service.fulfill(
        requisition_id,
        current_user.hospital_id,
        current_user.user_id,
        [FulfillmentLine(i.item_id, i.dispensed_quantity, i.batch_id, i.notes) for i in body.items],
        body.comments,
        body.idempotency_key,
    )
    return result.to_dict()
