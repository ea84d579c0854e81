"""
Stock Domain Models

Implements the database models for:
- Drug / warehouse / department reference data (owned by the catalog services)
- Stock cards: one running balance per (warehouse, drug)
- Stock batches: dated lots under a stock card
- Stock transactions: the append-only movement ledger
"""

from sqlalchemy import (
    Column, String, Date, Boolean, DateTime, ForeignKey,
    Integer, Numeric, Text, Enum, CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
import enum

from pharmstock.infrastructure.database import Base, gen_uuid, utcnow


class WarehouseType(str, enum.Enum):
    """Kind of stock-holding location"""
    CENTRAL = "CENTRAL"
    PHARMACY = "PHARMACY"
    WARD = "WARD"
    EMERGENCY = "EMERGENCY"
    OTHER = "OTHER"


class BatchStatus(str, enum.Enum):
    """Lot lifecycle"""
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    QUARANTINED = "QUARANTINED"
    DISPOSED = "DISPOSED"


class TransactionType(str, enum.Enum):
    """Ledger movement kinds"""
    RECEIVE = "RECEIVE"
    DISPENSE = "DISPENSE"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    ADJUST_INCREASE = "ADJUST_INCREASE"
    ADJUST_DECREASE = "ADJUST_DECREASE"
    RETURN = "RETURN"
    DISPOSE = "DISPOSE"
    RESERVE = "RESERVE"
    UNRESERVE = "UNRESERVE"


class Drug(Base):
    """Catalog entry, read-only for the ledger"""
    __tablename__ = "drugs"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    hospital_id = Column(String(36), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    unit = Column(String(32), nullable=True)
    dosage_form = Column(String(64), nullable=True)
    strength = Column(String(64), nullable=True)

    is_controlled = Column(Boolean, default=False, nullable=False)
    is_narcotic = Column(Boolean, default=False, nullable=False)
    is_high_alert = Column(Boolean, default=False, nullable=False)
    is_dangerous = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("hospital_id", "code", name="uq_drug_hospital_code"),
    )


class Warehouse(Base):
    """Stock-holding location"""
    __tablename__ = "warehouses"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    hospital_id = Column(String(36), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    type = Column(Enum(WarehouseType), nullable=False, default=WarehouseType.PHARMACY)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Department(Base):
    """Requesting department"""
    __tablename__ = "departments"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    hospital_id = Column(String(36), nullable=False, index=True)
    code = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class StockCard(Base):
    """Running balance of one drug in one warehouse.

    available_stock, total_value and the alert flags are derived; only the
    ledger verbs in ``pharmstock.domain.stock.ledger`` write to this row.
    """
    __tablename__ = "stock_cards"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    hospital_id = Column(String(36), nullable=False, index=True)
    warehouse_id = Column(String(36), ForeignKey("warehouses.id"), nullable=False, index=True)
    drug_id = Column(String(36), ForeignKey("drugs.id"), nullable=False, index=True)
    card_number = Column(String(64), nullable=True)

    # Balances
    current_stock = Column(Integer, nullable=False, default=0)
    reserved_stock = Column(Integer, nullable=False, default=0)
    available_stock = Column(Integer, nullable=False, default=0)

    # Thresholds
    reorder_point = Column(Integer, nullable=False, default=0)
    max_stock = Column(Integer, nullable=True)

    # Valuation
    average_cost = Column(Numeric(14, 4), nullable=False, default=0)
    last_cost = Column(Numeric(14, 4), nullable=True)
    total_value = Column(Numeric(16, 4), nullable=False, default=0)

    # Alerts
    low_stock_alert = Column(Boolean, nullable=False, default=False)
    over_stock_alert = Column(Boolean, nullable=False, default=False)
    expiry_alert = Column(Boolean, nullable=False, default=False)

    last_receive_date = Column(DateTime, nullable=True)
    last_issue_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    drug = relationship("Drug", lazy="selectin")
    warehouse = relationship("Warehouse", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("hospital_id", "warehouse_id", "drug_id", name="uq_stock_card_warehouse_drug"),
        CheckConstraint("current_stock >= 0", name="check_current_stock_nonneg"),
        CheckConstraint("reserved_stock >= 0", name="check_reserved_stock_nonneg"),
        CheckConstraint("reserved_stock <= current_stock", name="check_reserved_within_current"),
        CheckConstraint("available_stock = current_stock - reserved_stock", name="check_available_stock"),
    )


class StockBatch(Base):
    """A dated lot held on a stock card"""
    __tablename__ = "stock_batches"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    stock_card_id = Column(String(36), ForeignKey("stock_cards.id"), nullable=False, index=True)
    batch_number = Column(String(64), nullable=False)
    expiry_date = Column(Date, nullable=True)
    manufacturing_date = Column(Date, nullable=True)

    current_qty = Column(Integer, nullable=False, default=0)
    reserved_qty = Column(Integer, nullable=False, default=0)
    available_qty = Column(Integer, nullable=False, default=0)
    unit_cost = Column(Numeric(14, 4), nullable=True)

    status = Column(Enum(BatchStatus), nullable=False, default=BatchStatus.ACTIVE, index=True)
    received_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("stock_card_id", "batch_number", name="uq_batch_card_number"),
        CheckConstraint("current_qty >= 0", name="check_batch_qty_nonneg"),
        CheckConstraint("reserved_qty >= 0 AND reserved_qty <= current_qty", name="check_batch_reserved"),
    )


class StockTransaction(Base):
    """Append-only ledger entry; never updated or deleted"""
    __tablename__ = "stock_transactions"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    hospital_id = Column(String(36), nullable=False, index=True)
    stock_card_id = Column(String(36), ForeignKey("stock_cards.id"), nullable=False, index=True)
    warehouse_id = Column(String(36), nullable=False)
    drug_id = Column(String(36), nullable=False)
    batch_id = Column(String(36), ForeignKey("stock_batches.id"), nullable=True)

    transaction_type = Column(Enum(TransactionType), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)  # signed
    stock_before = Column(Integer, nullable=False)
    stock_after = Column(Integer, nullable=False)
    reserved_before = Column(Integer, nullable=False)
    reserved_after = Column(Integer, nullable=False)

    unit_cost = Column(Numeric(14, 4), nullable=False, default=0)
    total_cost = Column(Numeric(16, 4), nullable=False, default=0)

    reference_document = Column(String(64), nullable=True)
    reference_id = Column(String(36), nullable=True, index=True)
    notes = Column(Text, nullable=True)
    performed_by = Column(String(36), nullable=True)
    transaction_date = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_stock_transactions_card_date", "stock_card_id", "transaction_date"),
    )
