"""
Stock Ledger

The only writer of StockCard and StockBatch balances. Every verb locks the
card row, checks its precondition, applies the delta, recomputes the derived
fields and hands a Movement to the TransactionRecorder, all inside the
caller's unit of work. Committing or rolling back is the caller's job.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple
import logging

from sqlalchemy import select, case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from pharmstock.core.exceptions import (
    InsufficientAvailableError,
    InsufficientStockError,
    InvariantViolationError,
    NegativeValueError,
    NotFoundError,
    StockCardNotFoundError,
    ValidationError,
)
from pharmstock.domain.stock.models import (
    BatchStatus,
    StockBatch,
    StockCard,
    StockTransaction,
    TransactionType,
)
from pharmstock.domain.stock.recorder import Movement, Reference, TransactionRecorder
from pharmstock.infrastructure.database import gen_uuid, utcnow

logger = logging.getLogger(__name__)

COST_PLACES = Decimal("0.0001")


@dataclass
class BatchInput:
    """Lot details supplied when stock is received"""
    batch_number: str
    expiry_date: Optional[date] = None
    manufacturing_date: Optional[date] = None


@dataclass
class LedgerEntry:
    """Result of a ledger verb: the written transaction and lots touched"""
    card: StockCard
    transaction: StockTransaction
    allocations: List[Tuple[StockBatch, int]] = field(default_factory=list)


def _money(value) -> Decimal:
    return Decimal(value or 0).quantize(COST_PLACES, rounding=ROUND_HALF_UP)


def refresh_derived(card: StockCard) -> None:
    """Recompute availability, valuation and alert flags from the balances"""
    card.available_stock = card.current_stock - card.reserved_stock
    card.total_value = _money(Decimal(card.current_stock) * Decimal(card.average_cost or 0))
    card.low_stock_alert = card.available_stock <= (card.reorder_point or 0)
    card.over_stock_alert = card.max_stock is not None and card.current_stock > card.max_stock


def refresh_batch(batch: StockBatch) -> None:
    batch.available_qty = batch.current_qty - batch.reserved_qty


class StockLedger:
    """Reserve / release / debit / credit / adjust against locked stock cards"""

    def __init__(self, db: AsyncSession, recorder: Optional[TransactionRecorder] = None):
        self.db = db
        self.recorder = recorder or TransactionRecorder(db)

    # ==================== Locking ====================

    async def _execute_locked(self, query):
        # Pending balance changes must reach the row before it is re-read
        await self.db.flush()
        return await self.db.execute(query)

    async def lock_card(self, card_id: str, hospital_id: Optional[str] = None) -> StockCard:
        """Load a card with a row lock held until the unit of work ends"""
        query = select(StockCard).where(StockCard.id == card_id)
        if hospital_id is not None:
            query = query.where(StockCard.hospital_id == hospital_id)
        query = query.with_for_update(of=StockCard).execution_options(populate_existing=True)

        result = await self._execute_locked(query)
        card = result.scalar_one_or_none()
        if card is None:
            raise StockCardNotFoundError(details={"stock_card_id": card_id})
        return card

    async def lock_batches(self, card: StockCard) -> List[StockBatch]:
        """Consumable lots of a card in FEFO order, undated lots last.

        Lots past their expiry date are left out even before the daily
        sweep marks them EXPIRED.
        """
        undated_last = case((StockBatch.expiry_date.is_(None), 1), else_=0)
        query = (
            select(StockBatch)
            .where(
                StockBatch.stock_card_id == card.id,
                StockBatch.status == BatchStatus.ACTIVE,
                StockBatch.current_qty > 0,
                or_(StockBatch.expiry_date.is_(None), StockBatch.expiry_date >= date.today()),
            )
            .order_by(
                undated_last.asc(),
                StockBatch.expiry_date.asc(),
                StockBatch.received_at.asc(),
                StockBatch.id.asc(),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._execute_locked(query)
        return list(result.scalars().all())

    async def lock_batch(self, batch_id: str, card: Optional[StockCard] = None) -> StockBatch:
        query = select(StockBatch).where(StockBatch.id == batch_id)
        if card is not None:
            query = query.where(StockBatch.stock_card_id == card.id)
        query = query.with_for_update().execution_options(populate_existing=True)
        result = await self._execute_locked(query)
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError("Stock batch not found", details={"batch_id": batch_id})
        return batch

    # ==================== Verbs ====================

    async def reserve(
        self, card_id: str, quantity: int, reference: Optional[Reference] = None,
        hospital_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Earmark quantity for an approved requisition"""
        self._require_positive(quantity)
        card = await self.lock_card(card_id, hospital_id)

        if card.current_stock - card.reserved_stock < quantity:
            raise InsufficientAvailableError(details={
                "stock_card_id": card.id,
                "drug_id": card.drug_id,
                "requested": quantity,
                "available": card.current_stock - card.reserved_stock,
            })

        stock_before, reserved_before = card.current_stock, card.reserved_stock
        card.reserved_stock += quantity
        return self._commit_movement(
            card, TransactionType.RESERVE, quantity, stock_before, reserved_before,
            card.average_cost, reference,
        )

    async def release(
        self, card_id: str, quantity: int, reference: Optional[Reference] = None,
        hospital_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Return earmarked quantity to available stock"""
        self._require_positive(quantity)
        card = await self.lock_card(card_id, hospital_id)

        if quantity > card.reserved_stock:
            self._violation(
                "Release exceeds reserved stock",
                card, requested=quantity, reserved=card.reserved_stock,
            )

        stock_before, reserved_before = card.current_stock, card.reserved_stock
        card.reserved_stock -= quantity
        return self._commit_movement(
            card, TransactionType.UNRESERVE, -quantity, stock_before, reserved_before,
            card.average_cost, reference,
        )

    async def debit(
        self,
        card_id: str,
        quantity: int,
        unit_cost: Optional[Decimal] = None,
        reference: Optional[Reference] = None,
        transaction_type: TransactionType = TransactionType.DISPENSE,
        from_reservation: bool = True,
        batch_id: Optional[str] = None,
        hospital_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Remove stock from the card.

        With ``from_reservation`` (dispensing) the quantity also leaves
        reserved stock; otherwise it must fit in available stock so that
        existing reservations stay covered. Lots are consumed FEFO, starting
        with ``batch_id`` when given.
        """
        self._require_positive(quantity)
        card = await self.lock_card(card_id, hospital_id)

        if card.current_stock < quantity:
            raise InsufficientStockError(details={
                "stock_card_id": card.id,
                "drug_id": card.drug_id,
                "requested": quantity,
                "current": card.current_stock,
            })
        if from_reservation:
            if quantity > card.reserved_stock:
                self._violation(
                    "Dispensed quantity exceeds reserved stock",
                    card, requested=quantity, reserved=card.reserved_stock,
                )
        elif card.current_stock - card.reserved_stock < quantity:
            raise InsufficientAvailableError(details={
                "stock_card_id": card.id,
                "drug_id": card.drug_id,
                "requested": quantity,
                "available": card.current_stock - card.reserved_stock,
            })

        allocations = await self._consume_batches(card, quantity, batch_id)

        stock_before, reserved_before = card.current_stock, card.reserved_stock
        card.current_stock -= quantity
        if from_reservation:
            card.reserved_stock -= quantity
        card.last_issue_date = utcnow()

        cost = card.average_cost if unit_cost is None else unit_cost
        entry = self._commit_movement(
            card, transaction_type, -quantity, stock_before, reserved_before, cost, reference,
            batch_id=allocations[0][0].id if len(allocations) == 1 else None,
        )
        entry.allocations = allocations
        return entry

    async def credit(
        self,
        card_id: str,
        quantity: int,
        unit_cost: Optional[Decimal] = None,
        reference: Optional[Reference] = None,
        transaction_type: TransactionType = TransactionType.RECEIVE,
        batch: Optional[BatchInput] = None,
        hospital_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Add stock to the card, folding unit_cost into the weighted average"""
        self._require_positive(quantity)
        card = await self.lock_card(card_id, hospital_id)

        cost = Decimal(card.average_cost or 0) if unit_cost is None else Decimal(unit_cost)
        if cost < 0:
            raise NegativeValueError(details={"field": "unit_cost", "value": str(cost)})

        old_qty = card.current_stock
        old_cost = Decimal(card.average_cost or 0)
        if old_qty + quantity > 0:
            card.average_cost = _money((old_qty * old_cost + quantity * cost) / (old_qty + quantity))

        allocations = []
        if batch is not None:
            lot = await self._receive_batch(card, batch, quantity, cost)
            allocations.append((lot, quantity))

        stock_before, reserved_before = card.current_stock, card.reserved_stock
        card.current_stock += quantity
        if transaction_type == TransactionType.RECEIVE:
            card.last_cost = _money(cost)
            card.last_receive_date = utcnow()

        entry = self._commit_movement(
            card, transaction_type, quantity, stock_before, reserved_before, cost, reference,
            batch_id=allocations[0][0].id if allocations else None,
        )
        entry.allocations = allocations
        return entry

    async def adjust(
        self, card_id: str, delta: int, reference: Optional[Reference] = None,
        hospital_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        """Manual correction of on-hand stock; reservations are left alone.

        A decrease may not cut into reserved stock. Returns None for a zero
        delta, which records nothing.
        """
        card = await self.lock_card(card_id, hospital_id)
        if delta == 0:
            refresh_derived(card)
            return None

        new_current = card.current_stock + delta
        if new_current < 0:
            raise NegativeValueError(details={
                "field": "current_stock", "value": new_current, "stock_card_id": card.id,
            })
        if new_current < card.reserved_stock:
            raise InsufficientStockError(
                "Adjusted stock would fall below reserved stock",
                details={
                    "stock_card_id": card.id,
                    "requested_current": new_current,
                    "reserved": card.reserved_stock,
                },
            )

        allocations = []
        if delta < 0:
            allocations = await self._consume_batches(card, -delta, None)

        stock_before, reserved_before = card.current_stock, card.reserved_stock
        card.current_stock = new_current
        transaction_type = TransactionType.ADJUST_INCREASE if delta > 0 else TransactionType.ADJUST_DECREASE

        entry = self._commit_movement(
            card, transaction_type, delta, stock_before, reserved_before, card.average_cost, reference,
        )
        entry.allocations = allocations
        return entry

    async def dispose(
        self, batch_id: str, reference: Optional[Reference] = None,
        hospital_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Write off the remaining quantity of a lot and mark it DISPOSED"""
        # Card before lot, the same lock order as every other verb
        card_id = await self.db.scalar(
            select(StockBatch.stock_card_id).where(StockBatch.id == batch_id)
        )
        if card_id is None:
            raise NotFoundError("Stock batch not found", details={"batch_id": batch_id})
        try:
            card = await self.lock_card(card_id, hospital_id)
        except StockCardNotFoundError:
            raise NotFoundError("Stock batch not found", details={"batch_id": batch_id})
        batch = await self.lock_batch(batch_id, card)

        if batch.status == BatchStatus.DISPOSED:
            raise ValidationError("Batch is already disposed", details={"batch_id": batch.id})
        if batch.current_qty <= 0:
            raise ValidationError("Batch has no remaining quantity to dispose", details={"batch_id": batch.id})

        quantity = batch.current_qty
        if card.current_stock - card.reserved_stock < quantity:
            raise InsufficientAvailableError(
                "Disposing this batch would leave reservations uncovered",
                details={
                    "stock_card_id": card.id,
                    "batch_id": batch.id,
                    "requested": quantity,
                    "available": card.current_stock - card.reserved_stock,
                },
            )

        stock_before, reserved_before = card.current_stock, card.reserved_stock
        batch.current_qty = 0
        batch.status = BatchStatus.DISPOSED
        refresh_batch(batch)
        card.current_stock -= quantity

        cost = batch.unit_cost if batch.unit_cost is not None else card.average_cost
        return self._commit_movement(
            card, TransactionType.DISPOSE, -quantity, stock_before, reserved_before, cost, reference,
            batch_id=batch.id,
        )

    async def revalue(
        self,
        card_id: str,
        reorder_point: Optional[int] = None,
        max_stock: Optional[int] = None,
        average_cost: Optional[Decimal] = None,
        hospital_id: Optional[str] = None,
    ) -> StockCard:
        """Change thresholds or unit price; balances are untouched"""
        card = await self.lock_card(card_id, hospital_id)
        for name, value in (("reorder_point", reorder_point), ("max_stock", max_stock), ("average_cost", average_cost)):
            if value is not None and value < 0:
                raise NegativeValueError(details={"field": name, "value": str(value)})

        if reorder_point is not None:
            card.reorder_point = reorder_point
        if max_stock is not None:
            card.max_stock = max_stock
        if average_cost is not None:
            card.average_cost = _money(average_cost)
        refresh_derived(card)
        return card

    # ==================== Internals ====================

    def _commit_movement(
        self,
        card: StockCard,
        transaction_type: TransactionType,
        quantity: int,
        stock_before: int,
        reserved_before: int,
        unit_cost,
        reference: Optional[Reference],
        batch_id: Optional[str] = None,
    ) -> LedgerEntry:
        refresh_derived(card)
        self._check_invariants(card)

        transaction = self.recorder.record(
            Movement(
                card=card,
                transaction_type=transaction_type,
                quantity=quantity,
                stock_before=stock_before,
                reserved_before=reserved_before,
                unit_cost=_money(unit_cost),
                batch_id=batch_id,
            ),
            reference,
        )
        logger.debug(
            f"{transaction_type.value} card={card.id} qty={quantity} "
            f"current {stock_before}->{card.current_stock} "
            f"reserved {reserved_before}->{card.reserved_stock}"
        )
        return LedgerEntry(card=card, transaction=transaction)

    def _check_invariants(self, card: StockCard) -> None:
        if card.reserved_stock < 0 or card.current_stock < 0 or card.reserved_stock > card.current_stock:
            self._violation(
                "Stock card balances out of range",
                card, current=card.current_stock, reserved=card.reserved_stock,
            )

    def _violation(self, message: str, card: StockCard, **details) -> None:
        details["stock_card_id"] = card.id
        logger.error(f"{message}: {details}")
        raise InvariantViolationError(message, details=details)

    @staticmethod
    def _require_positive(quantity: int) -> None:
        if quantity is None or quantity <= 0:
            raise ValidationError(
                "Quantity must be greater than zero",
                details={"quantity": quantity},
            )

    async def _consume_batches(
        self, card: StockCard, quantity: int, preferred_batch_id: Optional[str]
    ) -> List[Tuple[StockBatch, int]]:
        """Take quantity out of lots, preferred lot first then FEFO.

        The card is authoritative: stock not covered by any lot is
        treated as untracked and leaves no batch allocation.
        """
        lots = await self.lock_batches(card)

        if preferred_batch_id is not None:
            preferred = next((lot for lot in lots if lot.id == preferred_batch_id), None)
            if preferred is None:
                raise ValidationError(
                    "Batch is not an active lot of this stock card",
                    details={"batch_id": preferred_batch_id, "stock_card_id": card.id},
                )
            lots.remove(preferred)
            lots.insert(0, preferred)

        remaining = quantity
        allocations: List[Tuple[StockBatch, int]] = []
        for lot in lots:
            if remaining <= 0:
                break
            free = lot.current_qty - lot.reserved_qty
            if free <= 0:
                continue
            use = min(free, remaining)
            lot.current_qty -= use
            refresh_batch(lot)
            allocations.append((lot, use))
            remaining -= use
        return allocations

    async def _receive_batch(
        self, card: StockCard, data: BatchInput, quantity: int, unit_cost: Decimal
    ) -> StockBatch:
        result = await self._execute_locked(
            select(StockBatch)
            .where(
                StockBatch.stock_card_id == card.id,
                StockBatch.batch_number == data.batch_number,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        lot = result.scalar_one_or_none()

        if lot is None:
            lot = StockBatch(
                id=gen_uuid(),
                stock_card_id=card.id,
                batch_number=data.batch_number,
                expiry_date=data.expiry_date,
                manufacturing_date=data.manufacturing_date,
                current_qty=0,
                reserved_qty=0,
                available_qty=0,
                unit_cost=_money(unit_cost),
                status=BatchStatus.ACTIVE,
                received_at=utcnow(),
            )
            self.db.add(lot)
            await self.db.flush()
        elif lot.status != BatchStatus.ACTIVE:
            raise ValidationError(
                "Cannot receive into a batch that is not active",
                details={"batch_id": lot.id, "status": lot.status.value},
            )
        elif data.expiry_date is not None and lot.expiry_date is not None and data.expiry_date != lot.expiry_date:
            raise ValidationError(
                "Batch number already exists with a different expiry date",
                details={"batch_number": data.batch_number},
            )

        lot.current_qty += quantity
        refresh_batch(lot)
        return lot
