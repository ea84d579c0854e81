"""
Stock Service Layer

Units of work over the ledger: manual adjustment, receiving, returns,
transfers between warehouses, lot disposal and expiry, plus the stock card
read model.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from pharmstock.core.config import settings
from pharmstock.core.exceptions import (
    NegativeValueError, NotFoundError, StockCardNotFoundError, ValidationError
)
from pharmstock.domain.stock.ledger import BatchInput, StockLedger
from pharmstock.domain.stock.models import BatchStatus, StockCard, TransactionType
from pharmstock.domain.stock.recorder import Reference
from pharmstock.domain.stock.repository import StockRepository
from pharmstock.infrastructure.database import unit_of_work

logger = logging.getLogger(__name__)


@dataclass
class StockAdjustment:
    """Dashboard edit of a stock card"""
    new_current_stock: int
    new_reorder_point: Optional[int] = None
    new_price_per_unit: Optional[Decimal] = None
    new_max_stock: Optional[int] = None
    notes: Optional[str] = None


class StockService:
    """Service layer for stock ledger operations"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = StockRepository(db)
        self.ledger = StockLedger(db)

    # ==================== Mutations ====================

    async def adjust_stock(
        self, card_id: str, hospital_id: str, user_id: str, adjustment: StockAdjustment
    ) -> Dict[str, Any]:
        """Set on-hand stock, reorder point and unit price in one step"""
        for name in ("new_current_stock", "new_reorder_point", "new_price_per_unit", "new_max_stock"):
            value = getattr(adjustment, name)
            if value is not None and value < 0:
                raise NegativeValueError(details={"field": name, "value": str(value)})

        async with unit_of_work(self.db, "adjust stock"):
            card = await self.ledger.lock_card(card_id, hospital_id)
            before = {
                "current_stock": card.current_stock,
                "reorder_point": card.reorder_point,
                "total_value": Decimal(card.total_value or 0),
            }

            # Price first so the adjustment entry is valued at the new price
            await self.ledger.revalue(
                card.id,
                reorder_point=adjustment.new_reorder_point,
                max_stock=adjustment.new_max_stock,
                average_cost=adjustment.new_price_per_unit,
            )
            reference = Reference(
                document="MANUAL_ADJUSTMENT",
                reference_id=card.id,
                performed_by=user_id,
                notes=adjustment.notes or (
                    f"Manual adjustment: {adjustment.new_current_stock - before['current_stock']:+d}"
                ),
            )
            await self.ledger.adjust(card.id, adjustment.new_current_stock - card.current_stock, reference)
            if adjustment.notes is not None:
                card.notes = adjustment.notes
            await self._refresh_expiry_alert(card)

        logger.info(
            f"Stock card {card.id} adjusted {before['current_stock']} -> {card.current_stock} by {user_id}"
        )
        return {
            "card": card,
            "changes": {
                "stock_difference": card.current_stock - before["current_stock"],
                "reorder_point_change": card.reorder_point - before["reorder_point"],
                "value_change": Decimal(card.total_value) - before["total_value"],
            },
        }

    async def receive(
        self,
        card_id: str,
        hospital_id: str,
        user_id: str,
        quantity: int,
        unit_cost: Decimal,
        batch: Optional[BatchInput] = None,
        reference_document: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StockCard:
        """Goods received into a warehouse"""
        async with unit_of_work(self.db, "receive stock"):
            entry = await self.ledger.credit(
                card_id,
                quantity,
                unit_cost,
                Reference(document=reference_document, performed_by=user_id, notes=notes),
                transaction_type=TransactionType.RECEIVE,
                batch=batch,
                hospital_id=hospital_id,
            )
            await self._refresh_expiry_alert(entry.card)

        logger.info(f"Received {quantity} into stock card {entry.card.id}")
        return entry.card

    async def return_stock(
        self,
        card_id: str,
        hospital_id: str,
        user_id: str,
        quantity: int,
        unit_cost: Optional[Decimal] = None,
        batch: Optional[BatchInput] = None,
        reference_document: Optional[str] = None,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StockCard:
        """Stock handed back by a department"""
        async with unit_of_work(self.db, "return stock"):
            entry = await self.ledger.credit(
                card_id,
                quantity,
                unit_cost,
                Reference(
                    document=reference_document,
                    reference_id=reference_id,
                    performed_by=user_id,
                    notes=notes,
                ),
                transaction_type=TransactionType.RETURN,
                batch=batch,
                hospital_id=hospital_id,
            )
            await self._refresh_expiry_alert(entry.card)
        return entry.card

    async def transfer(
        self,
        source_card_id: str,
        destination_warehouse_id: str,
        hospital_id: str,
        user_id: str,
        quantity: int,
        batch_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, StockCard]:
        """Move available stock to the same drug's card in another warehouse"""
        source = await self.repo.get_card(source_card_id, hospital_id)
        if source is None:
            raise StockCardNotFoundError(details={"stock_card_id": source_card_id})
        if source.warehouse_id == destination_warehouse_id:
            raise ValidationError("Source and destination warehouse are the same")
        destination = await self.repo.find_card(hospital_id, destination_warehouse_id, source.drug_id)
        if destination is None:
            raise StockCardNotFoundError(details={
                "warehouse_id": destination_warehouse_id,
                "drug_id": source.drug_id,
            })

        async with unit_of_work(self.db, "transfer stock"):
            # Lock both rows in id order so opposite transfers cannot deadlock
            for card_id in sorted([source.id, destination.id]):
                await self.ledger.lock_card(card_id, hospital_id)

            out = await self.ledger.debit(
                source.id,
                quantity,
                reference=Reference(
                    document="TRANSFER",
                    reference_id=destination.id,
                    performed_by=user_id,
                    notes=notes,
                ),
                transaction_type=TransactionType.TRANSFER_OUT,
                from_reservation=False,
                batch_id=batch_id,
            )
            moved_lot = out.allocations[0][0] if len(out.allocations) == 1 else None
            lot = None
            if moved_lot is not None:
                lot = BatchInput(
                    batch_number=moved_lot.batch_number,
                    expiry_date=moved_lot.expiry_date,
                    manufacturing_date=moved_lot.manufacturing_date,
                )
            into = await self.ledger.credit(
                destination.id,
                quantity,
                out.transaction.unit_cost,
                Reference(
                    document="TRANSFER",
                    reference_id=source.id,
                    performed_by=user_id,
                    notes=notes,
                ),
                transaction_type=TransactionType.TRANSFER_IN,
                batch=lot,
            )
            await self._refresh_expiry_alert(out.card)
            await self._refresh_expiry_alert(into.card)

        logger.info(
            f"Transferred {quantity} of drug {source.drug_id} "
            f"from warehouse {source.warehouse_id} to {destination_warehouse_id}"
        )
        return {"source": out.card, "destination": into.card}

    async def dispose_batch(
        self, batch_id: str, hospital_id: str, user_id: str, notes: Optional[str] = None
    ) -> StockCard:
        """Write off an expired, quarantined or damaged lot"""
        async with unit_of_work(self.db, "dispose batch"):
            entry = await self.ledger.dispose(
                batch_id,
                Reference(document="DISPOSAL", reference_id=batch_id, performed_by=user_id, notes=notes),
                hospital_id=hospital_id,
            )
            await self._refresh_expiry_alert(entry.card)

        logger.info(f"Disposed batch {batch_id} from stock card {entry.card.id}")
        return entry.card

    async def expire_batches(self, today: Optional[date] = None, hospital_id: Optional[str] = None) -> int:
        """Mark lots past expiry as EXPIRED and refresh expiry alerts.

        Expired lots keep their quantity on the card until disposed.
        """
        today = today or date.today()
        async with unit_of_work(self.db, "expire batches"):
            expired = await self.repo.expired_batches(today, hospital_id)
            for batch in expired:
                batch.status = BatchStatus.EXPIRED

            for card_id in await self.repo.cards_with_active_batches(hospital_id):
                card = await self.ledger.lock_card(card_id)
                await self._refresh_expiry_alert(card, today)
            for card_id in {batch.stock_card_id for batch in expired}:
                card = await self.ledger.lock_card(card_id)
                await self._refresh_expiry_alert(card, today)

        if expired:
            logger.info(f"Marked {len(expired)} batches expired as of {today.isoformat()}")
        return len(expired)

    # ==================== Reads ====================

    async def get_card(self, card_id: str, hospital_id: str) -> StockCard:
        card = await self.repo.get_card(card_id, hospital_id)
        if card is None:
            raise StockCardNotFoundError(details={"stock_card_id": card_id})
        return card

    async def get_card_detail(self, card_id: str, hospital_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Card with its lots, latest movements and batch reconciliation"""
        today = today or date.today()
        card = await self.get_card(card_id, hospital_id)
        batches = await self.repo.list_batches(card.id)
        transactions, _ = await self.repo.list_transactions(
            hospital_id, stock_card_id=card.id, limit=settings.RECENT_TRANSACTIONS_LIMIT
        )
        batch_total = sum(b.current_qty for b in batches)

        return {
            "card": card,
            "batches": [
                {
                    "batch": b,
                    "days_to_expiry": (b.expiry_date - today).days if b.expiry_date else None,
                }
                for b in batches
            ],
            "recent_transactions": transactions,
            "batch_total": batch_total,
            "reconciliation_difference": card.current_stock - batch_total,
        }

    async def list_cards(
        self,
        hospital_id: str,
        warehouse_id: Optional[str] = None,
        low_stock_only: bool = False,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ):
        return await self.repo.list_cards(
            hospital_id, warehouse_id, low_stock_only, search, skip=(page - 1) * limit, limit=limit
        )

    async def list_transactions(
        self,
        hospital_id: str,
        stock_card_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None,
        page: int = 1,
        limit: int = 50,
    ):
        return await self.repo.list_transactions(
            hospital_id, stock_card_id, reference_id, transaction_type,
            skip=(page - 1) * limit, limit=limit,
        )

    async def get_batch_card(self, batch_id: str, hospital_id: str) -> StockCard:
        batch = await self.repo.get_batch(batch_id)
        card = await self.repo.get_card(batch.stock_card_id, hospital_id) if batch else None
        if card is None:
            raise NotFoundError("Stock batch not found", details={"batch_id": batch_id})
        return card

    # ==================== Internals ====================

    async def _refresh_expiry_alert(self, card: StockCard, today: Optional[date] = None) -> None:
        today = today or date.today()
        await self.db.flush()
        card.expiry_alert = await self.repo.has_batch_expiring_by(
            card.id, today + timedelta(days=settings.NEAR_EXPIRY_DAYS)
        )
