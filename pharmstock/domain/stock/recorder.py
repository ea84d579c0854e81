"""
Transaction Recorder

Appends StockTransaction rows. Balances are read from the card the caller
just mutated, inside the same session, so stock_before/stock_after always
describe that one movement.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pharmstock.domain.stock.models import StockCard, StockTransaction, TransactionType
from pharmstock.infrastructure.database import utcnow


@dataclass
class Movement:
    """Snapshot of one ledger verb, produced by StockLedger"""
    card: StockCard
    transaction_type: TransactionType
    quantity: int
    stock_before: int
    reserved_before: int
    unit_cost: Decimal
    batch_id: Optional[str] = None


@dataclass
class Reference:
    """Document a movement belongs to (requisition, receipt, adjustment)"""
    document: Optional[str] = None
    reference_id: Optional[str] = None
    performed_by: Optional[str] = None
    notes: Optional[str] = None


class TransactionRecorder:
    """Append-only writer for the movement ledger"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def record(
        self,
        movement: Movement,
        reference: Optional[Reference] = None,
        transaction_date: Optional[datetime] = None,
    ) -> StockTransaction:
        reference = reference or Reference()
        card = movement.card
        unit_cost = Decimal(movement.unit_cost or 0)

        entry = StockTransaction(
            hospital_id=card.hospital_id,
            stock_card_id=card.id,
            warehouse_id=card.warehouse_id,
            drug_id=card.drug_id,
            batch_id=movement.batch_id,
            transaction_type=movement.transaction_type,
            quantity=movement.quantity,
            stock_before=movement.stock_before,
            stock_after=card.current_stock,
            reserved_before=movement.reserved_before,
            reserved_after=card.reserved_stock,
            unit_cost=unit_cost,
            total_cost=unit_cost * abs(movement.quantity),
            reference_document=reference.document,
            reference_id=reference.reference_id,
            notes=reference.notes,
            performed_by=reference.performed_by,
            transaction_date=transaction_date or utcnow(),
        )
        self.db.add(entry)
        return entry
