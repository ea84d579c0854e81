"""
Stock API Routes

API endpoints for stock cards, lot disposal and the movement ledger.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional
import math

from pharmstock.api.deps import get_stock_service
from pharmstock.core.permissions import CurrentUser, Permissions, require_permissions
from pharmstock.domain.stock.ledger import BatchInput
from pharmstock.domain.stock.models import TransactionType
from pharmstock.domain.stock.service import StockAdjustment, StockService
from pharmstock.api.v1.stock.schemas import (
    StockAdjustRequest, StockReceiveRequest, StockTransferRequest, BatchDisposeRequest,
    StockCardResponse, StockCardListResponse, StockCardDetailResponse, StockBatchResponse,
    StockTransactionListResponse, StockAdjustResponse, StockTransferResponse
)

router = APIRouter()


# ==================== Stock Card Endpoints ====================

@router.get("/cards", response_model=StockCardListResponse)
async def list_stock_cards(
    warehouse_id: Optional[str] = Query(None),
    low_stock_only: bool = Query(False),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    service: StockService = Depends(get_stock_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.STOCK_READ]))
):
    """Stock cards of a warehouse, optionally only those at or below reorder point"""
    cards, total = await service.list_cards(
        current_user.hospital_id, warehouse_id, low_stock_only, search, page, limit
    )
    return StockCardListResponse(
        items=[StockCardResponse.model_validate(c) for c in cards],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total > 0 else 0,
    )


@router.get("/cards/{card_id}", response_model=StockCardDetailResponse)
async def get_stock_card(
    card_id: str,
    service: StockService = Depends(get_stock_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.STOCK_READ]))
):
    """Card with active lots, latest movements and batch reconciliation"""
    detail = await service.get_card_detail(card_id, current_user.hospital_id)
    batches = []
    for row in detail["batches"]:
        batch = StockBatchResponse.model_validate(row["batch"])
        batch.days_to_expiry = row["days_to_expiry"]
        batches.append(batch)

    return StockCardDetailResponse(
        card=StockCardResponse.model_validate(detail["card"]),
        batches=batches,
        recent_transactions=detail["recent_transactions"],
        batch_total=detail["batch_total"],
        reconciliation_difference=detail["reconciliation_difference"],
    )


@router.put("/cards/{card_id}", response_model=StockAdjustResponse)
async def adjust_stock_card(
    card_id: str,
    body: StockAdjustRequest,
    service: StockService = Depends(get_stock_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.STOCK_ADJUST]))
):
    """Manual correction of on-hand stock, reorder point and unit price"""
    result = await service.adjust_stock(
        card_id,
        current_user.hospital_id,
        current_user.user_id,
        StockAdjustment(
            new_current_stock=body.current_stock,
            new_reorder_point=body.reorder_point,
            new_price_per_unit=body.price_per_unit,
            new_max_stock=body.max_stock,
            notes=body.notes,
        ),
    )
    return StockAdjustResponse(
        card=StockCardResponse.model_validate(result["card"]),
        changes=result["changes"],
    )


@router.post("/cards/{card_id}/receive", response_model=StockCardResponse)
async def receive_stock(
    card_id: str,
    body: StockReceiveRequest,
    service: StockService = Depends(get_stock_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.STOCK_RECEIVE]))
):
    """Receive goods (or a department return) onto a card"""
    batch = None
    if body.batch:
        batch = BatchInput(
            batch_number=body.batch.batch_number,
            expiry_date=body.batch.expiry_date,
            manufacturing_date=body.batch.manufacturing_date,
        )

    if body.is_return:
        card = await service.return_stock(
            card_id, current_user.hospital_id, current_user.user_id, body.quantity,
            unit_cost=body.unit_cost, batch=batch,
            reference_document=body.reference_document, notes=body.notes,
        )
    else:
        card = await service.receive(
            card_id, current_user.hospital_id, current_user.user_id, body.quantity,
            body.unit_cost, batch=batch,
            reference_document=body.reference_document, notes=body.notes,
        )
    return StockCardResponse.model_validate(card)


@router.post("/cards/{card_id}/transfer", response_model=StockTransferResponse)
async def transfer_stock(
    card_id: str,
    body: StockTransferRequest,
    service: StockService = Depends(get_stock_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.STOCK_ADJUST]))
):
    """Move available stock to the same drug's card in another warehouse"""
    result = await service.transfer(
        card_id,
        body.destination_warehouse_id,
        current_user.hospital_id,
        current_user.user_id,
        body.quantity,
        batch_id=body.batch_id,
        notes=body.notes,
    )
    return StockTransferResponse(
        source=StockCardResponse.model_validate(result["source"]),
        destination=StockCardResponse.model_validate(result["destination"]),
    )


# ==================== Batch Endpoints ====================

@router.post("/batches/{batch_id}/dispose", response_model=StockCardResponse)
async def dispose_batch(
    batch_id: str,
    body: Optional[BatchDisposeRequest] = None,
    service: StockService = Depends(get_stock_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.STOCK_ADJUST]))
):
    card = await service.dispose_batch(
        batch_id, current_user.hospital_id, current_user.user_id, body.notes if body else None
    )
    return StockCardResponse.model_validate(card)


# ==================== Transaction Endpoints ====================

@router.get("/transactions", response_model=StockTransactionListResponse)
async def list_transactions(
    stock_card_id: Optional[str] = Query(None),
    reference_id: Optional[str] = Query(None, description="e.g. a requisition id"),
    transaction_type: Optional[TransactionType] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    service: StockService = Depends(get_stock_service),
    current_user: CurrentUser = Depends(require_permissions([Permissions.STOCK_READ]))
):
    """Ledger entries, newest first"""
    transactions, total = await service.list_transactions(
        current_user.hospital_id, stock_card_id, reference_id, transaction_type, page, limit
    )
    return StockTransactionListResponse(
        items=transactions,
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit) if total > 0 else 0,
    )
