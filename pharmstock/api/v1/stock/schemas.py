"""
Stock API Schemas

Pydantic models for stock card, batch and ledger transaction endpoints.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List
from datetime import datetime, date
from decimal import Decimal

from pharmstock.domain.stock.models import BatchStatus, TransactionType


# ==================== Request Schemas ====================

class StockAdjustRequest(BaseModel):
    """Dashboard edit; negative values are refused by the service"""
    current_stock: int
    reorder_point: Optional[int] = None
    price_per_unit: Optional[Decimal] = None
    max_stock: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=2000)


class BatchData(BaseModel):
    batch_number: str = Field(..., min_length=1, max_length=64)
    expiry_date: Optional[date] = None
    manufacturing_date: Optional[date] = None

    @model_validator(mode="after")
    def validate_dates(self):
        if self.expiry_date and self.manufacturing_date and self.expiry_date <= self.manufacturing_date:
            raise ValueError("Expiry date must be after manufacturing date")
        return self


class StockReceiveRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    unit_cost: Decimal = Field(..., ge=0)
    batch: Optional[BatchData] = None
    reference_document: Optional[str] = Field(None, max_length=64)
    notes: Optional[str] = Field(None, max_length=2000)
    is_return: bool = False


class StockTransferRequest(BaseModel):
    destination_warehouse_id: str
    quantity: int = Field(..., gt=0)
    batch_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=2000)


class BatchDisposeRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


# ==================== Response Schemas ====================

class DrugSummary(BaseModel):
    id: str
    code: str
    name: str
    unit: Optional[str] = None
    dosage_form: Optional[str] = None
    strength: Optional[str] = None
    is_controlled: bool = False
    is_narcotic: bool = False
    is_high_alert: bool = False
    is_dangerous: bool = False

    class Config:
        from_attributes = True


class StockCardResponse(BaseModel):
    id: str
    warehouse_id: str
    drug_id: str
    card_number: Optional[str] = None
    current_stock: int
    reserved_stock: int
    available_stock: int
    reorder_point: int
    max_stock: Optional[int] = None
    average_cost: Decimal
    last_cost: Optional[Decimal] = None
    total_value: Decimal
    low_stock_alert: bool
    over_stock_alert: bool
    expiry_alert: bool
    last_receive_date: Optional[datetime] = None
    last_issue_date: Optional[datetime] = None
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None
    drug: Optional[DrugSummary] = None

    class Config:
        from_attributes = True


class StockCardListResponse(BaseModel):
    items: List[StockCardResponse]
    total: int
    page: int
    limit: int
    pages: int


class StockBatchResponse(BaseModel):
    id: str
    batch_number: str
    expiry_date: Optional[date] = None
    manufacturing_date: Optional[date] = None
    current_qty: int
    reserved_qty: int
    available_qty: int
    unit_cost: Optional[Decimal] = None
    status: BatchStatus
    received_at: Optional[datetime] = None
    days_to_expiry: Optional[int] = None

    class Config:
        from_attributes = True


class StockTransactionResponse(BaseModel):
    id: str
    stock_card_id: str
    warehouse_id: str
    drug_id: str
    batch_id: Optional[str] = None
    transaction_type: TransactionType
    quantity: int
    stock_before: int
    stock_after: int
    reserved_before: int
    reserved_after: int
    unit_cost: Decimal
    total_cost: Decimal
    reference_document: Optional[str] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    performed_by: Optional[str] = None
    transaction_date: datetime

    class Config:
        from_attributes = True


class StockTransactionListResponse(BaseModel):
    items: List[StockTransactionResponse]
    total: int
    page: int
    limit: int
    pages: int


class StockCardDetailResponse(BaseModel):
    card: StockCardResponse
    batches: List[StockBatchResponse]
    recent_transactions: List[StockTransactionResponse]
    batch_total: int
    reconciliation_difference: int


class StockAdjustChanges(BaseModel):
    stock_difference: int
    reorder_point_change: int
    value_change: Decimal


class StockAdjustResponse(BaseModel):
    card: StockCardResponse
    changes: StockAdjustChanges


class StockTransferResponse(BaseModel):
    source: StockCardResponse
    destination: StockCardResponse
