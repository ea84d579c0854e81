"""
Requisition Domain Models

Implements the database models for:
- Requisitions (workflow aggregate root) and their line items
- Workflow history (one append-only row per transition)
- Per-hospital number counters
- Fulfillment idempotency records
"""

from sqlalchemy import (
    Column, String, Date, DateTime, ForeignKey, Integer, Numeric, Text,
    Enum, JSON, CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
import enum

from pharmstock.infrastructure.database import Base, gen_uuid, utcnow


class RequisitionType(str, enum.Enum):
    REGULAR = "REGULAR"
    EMERGENCY = "EMERGENCY"
    SCHEDULED = "SCHEDULED"
    RETURN = "RETURN"


class RequisitionPriority(str, enum.Enum):
    """Ordering only; has no effect on the workflow"""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RequisitionStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ItemStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    FULFILLED = "FULFILLED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class WorkflowAction(str, enum.Enum):
    CREATE = "CREATE"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CANCEL = "CANCEL"
    FULFILL = "FULFILL"


class Requisition(Base):
    """Request to move drugs from a warehouse to a department"""
    __tablename__ = "requisitions"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    hospital_id = Column(String(36), nullable=False, index=True)
    requisition_number = Column(String(32), nullable=False)

    type = Column(Enum(RequisitionType), nullable=False, default=RequisitionType.REGULAR)
    priority = Column(Enum(RequisitionPriority), nullable=False, default=RequisitionPriority.NORMAL)
    status = Column(Enum(RequisitionStatus), nullable=False, default=RequisitionStatus.DRAFT, index=True)

    requesting_department_id = Column(String(36), ForeignKey("departments.id"), nullable=False, index=True)
    fulfillment_warehouse_id = Column(String(36), ForeignKey("warehouses.id"), nullable=False, index=True)

    requester_id = Column(String(36), nullable=False)
    approver_id = Column(String(36), nullable=True)
    fulfiller_id = Column(String(36), nullable=True)

    # Dates
    requested_date = Column(DateTime, nullable=False, default=utcnow)
    required_date = Column(Date, nullable=True)
    submitted_date = Column(DateTime, nullable=True)
    approved_date = Column(DateTime, nullable=True)
    fulfilled_date = Column(DateTime, nullable=True)
    cancelled_date = Column(DateTime, nullable=True)

    # Notes
    request_notes = Column(Text, nullable=True)
    approver_comments = Column(Text, nullable=True)
    fulfiller_comments = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    total_dispensed_value = Column(Numeric(16, 4), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    items = relationship(
        "RequisitionItem",
        back_populates="requisition",
        lazy="selectin",
        order_by="RequisitionItem.line_number",
        cascade="all, delete-orphan",
    )
    workflow = relationship(
        "RequisitionWorkflow",
        back_populates="requisition",
        lazy="selectin",
        order_by="RequisitionWorkflow.processed_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("hospital_id", "requisition_number", name="uq_requisition_hospital_number"),
        Index("ix_requisitions_priority_created", "priority", "created_at"),
    )


class RequisitionItem(Base):
    """One drug line of a requisition"""
    __tablename__ = "requisition_items"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    requisition_id = Column(String(36), ForeignKey("requisitions.id"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False)
    drug_id = Column(String(36), ForeignKey("drugs.id"), nullable=False)
    stock_card_id = Column(String(36), ForeignKey("stock_cards.id"), nullable=False, index=True)

    requested_quantity = Column(Integer, nullable=False)
    approved_quantity = Column(Integer, nullable=True)
    fulfilled_quantity = Column(Integer, nullable=False, default=0)
    status = Column(Enum(ItemStatus), nullable=False, default=ItemStatus.PENDING)

    unit_cost = Column(Numeric(14, 4), nullable=True)
    total_cost = Column(Numeric(16, 4), nullable=True)

    request_notes = Column(Text, nullable=True)
    approver_notes = Column(Text, nullable=True)
    dispenser_notes = Column(Text, nullable=True)
    last_batch_id = Column(String(36), nullable=True)
    last_dispensed_at = Column(DateTime, nullable=True)

    requisition = relationship("Requisition", back_populates="items")

    __table_args__ = (
        CheckConstraint("requested_quantity > 0", name="check_item_requested_positive"),
        CheckConstraint("fulfilled_quantity >= 0", name="check_item_fulfilled_nonneg"),
        CheckConstraint(
            "approved_quantity IS NULL OR fulfilled_quantity <= approved_quantity",
            name="check_item_fulfilled_within_approved",
        ),
    )

    @property
    def outstanding_quantity(self) -> int:
        """Approved but not yet dispensed; this is what stays reserved"""
        if self.approved_quantity is None or self.status in (ItemStatus.REJECTED, ItemStatus.CANCELLED):
            return 0
        return max(self.approved_quantity - self.fulfilled_quantity, 0)

    @property
    def is_complete(self) -> bool:
        return self.approved_quantity is not None and self.fulfilled_quantity >= self.approved_quantity


class RequisitionWorkflow(Base):
    """Audit row for one status transition, never updated"""
    __tablename__ = "requisition_workflow"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    requisition_id = Column(String(36), ForeignKey("requisitions.id"), nullable=False, index=True)
    action = Column(Enum(WorkflowAction), nullable=False)
    from_status = Column(Enum(RequisitionStatus), nullable=True)
    to_status = Column(Enum(RequisitionStatus), nullable=False)
    user_id = Column(String(36), nullable=False)
    comments = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=False, default=utcnow)

    requisition = relationship("Requisition", back_populates="workflow")


class RequisitionCounter(Base):
    """Next requisition sequence per hospital"""
    __tablename__ = "requisition_counters"

    hospital_id = Column(String(36), primary_key=True)
    next_seq = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class FulfillmentRequest(Base):
    """Outcome of a fulfillment call, keyed by the caller's idempotency key"""
    __tablename__ = "requisition_fulfillment_requests"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    requisition_id = Column(String(36), ForeignKey("requisitions.id"), nullable=False)
    idempotency_key = Column(String(128), nullable=False)
    outcome = Column(JSON, nullable=False)
    performed_by = Column(String(36), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("requisition_id", "idempotency_key", name="uq_fulfillment_request_key"),
    )
