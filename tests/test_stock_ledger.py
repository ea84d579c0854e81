import pytest
from datetime import date, timedelta
from decimal import Decimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import fetch
from pharmstock.core.exceptions import (
    InsufficientAvailableError, InsufficientStockError, InvariantViolationError,
    NegativeValueError, ValidationError
)
from pharmstock.domain.stock.ledger import BatchInput, StockLedger
from pharmstock.domain.stock.models import BatchStatus, StockBatch, StockCard, StockTransaction, TransactionType
from pharmstock.domain.stock.recorder import Reference
from pharmstock.infrastructure.database import unit_of_work

pytestmark = pytest.mark.stock


@pytest.fixture
def ledger(db_session: AsyncSession) -> StockLedger:
    return StockLedger(db_session)


async def card_transactions(db_session: AsyncSession, card_id: str):
    result = await db_session.execute(
        select(StockTransaction)
        .where(StockTransaction.stock_card_id == card_id)
        .order_by(StockTransaction.transaction_date.asc())
    )
    return list(result.scalars().all())


async def receive_lot(ledger, db_session, card_id, quantity, batch_number, expiry=None, cost="2.50"):
    async with unit_of_work(db_session, "receive"):
        entry = await ledger.credit(
            card_id, quantity, Decimal(cost),
            batch=BatchInput(batch_number=batch_number, expiry_date=expiry),
        )
    return entry.allocations[0][0].id


@pytest.mark.asyncio
async def test_reserve_moves_stock_to_reserved(ledger: StockLedger, db_session: AsyncSession, seed):
    """Reserving keeps on-hand stock and lowers availability"""
    async with unit_of_work(db_session, "reserve"):
        entry = await ledger.reserve(seed.para_card_id, 30, Reference(document="RQ-1", reference_id="req-1"))

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.current_stock == 100
    assert card.reserved_stock == 30
    assert card.available_stock == 70

    assert entry.transaction.transaction_type == TransactionType.RESERVE
    assert entry.transaction.quantity == 30
    assert entry.transaction.stock_before == 100
    assert entry.transaction.stock_after == 100
    assert entry.transaction.reserved_before == 0
    assert entry.transaction.reserved_after == 30
    assert entry.transaction.reference_id == "req-1"


@pytest.mark.asyncio
async def test_reserve_beyond_available_changes_nothing(ledger: StockLedger, db_session: AsyncSession, seed):
    with pytest.raises(InsufficientAvailableError) as exc_info:
        async with unit_of_work(db_session, "reserve"):
            await ledger.reserve(seed.para_card_id, 101)

    assert exc_info.value.details["requested"] == 101
    assert exc_info.value.details["available"] == 100

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.reserved_stock == 0
    assert await card_transactions(db_session, seed.para_card_id) == []


@pytest.mark.asyncio
async def test_release_more_than_reserved_is_invariant_violation(ledger: StockLedger, db_session: AsyncSession, seed):
    async with unit_of_work(db_session, "reserve"):
        await ledger.reserve(seed.para_card_id, 10)

    with pytest.raises(InvariantViolationError):
        async with unit_of_work(db_session, "release"):
            await ledger.release(seed.para_card_id, 11)

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.reserved_stock == 10


@pytest.mark.asyncio
async def test_release_returns_stock_to_available(ledger: StockLedger, db_session: AsyncSession, seed):
    async with unit_of_work(db_session, "reserve"):
        await ledger.reserve(seed.para_card_id, 40)
    async with unit_of_work(db_session, "release"):
        entry = await ledger.release(seed.para_card_id, 15)

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.reserved_stock == 25
    assert card.available_stock == 75
    assert entry.transaction.transaction_type == TransactionType.UNRESERVE
    assert entry.transaction.quantity == -15


@pytest.mark.asyncio
async def test_debit_from_reservation(ledger: StockLedger, db_session: AsyncSession, seed):
    async with unit_of_work(db_session, "reserve"):
        await ledger.reserve(seed.para_card_id, 30)
    async with unit_of_work(db_session, "dispense"):
        entry = await ledger.debit(seed.para_card_id, 30)

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.current_stock == 70
    assert card.reserved_stock == 0
    assert card.available_stock == 70
    assert card.last_issue_date is not None
    assert entry.transaction.transaction_type == TransactionType.DISPENSE
    assert entry.transaction.quantity == -30
    assert entry.transaction.unit_cost == Decimal("2.5")
    assert entry.transaction.total_cost == Decimal("75")


@pytest.mark.asyncio
async def test_debit_from_reservation_requires_reserved_stock(ledger: StockLedger, db_session: AsyncSession, seed):
    with pytest.raises(InvariantViolationError):
        async with unit_of_work(db_session, "dispense"):
            await ledger.debit(seed.para_card_id, 5)

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.current_stock == 100


@pytest.mark.asyncio
async def test_free_debit_cannot_take_reserved_stock(ledger: StockLedger, db_session: AsyncSession, seed):
    async with unit_of_work(db_session, "reserve"):
        await ledger.reserve(seed.para_card_id, 80)

    with pytest.raises(InsufficientAvailableError):
        async with unit_of_work(db_session, "transfer out"):
            await ledger.debit(
                seed.para_card_id, 30,
                transaction_type=TransactionType.TRANSFER_OUT, from_reservation=False,
            )

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.current_stock == 100
    assert card.reserved_stock == 80


@pytest.mark.asyncio
async def test_debit_more_than_on_hand(ledger: StockLedger, db_session: AsyncSession, seed):
    with pytest.raises(InsufficientStockError):
        async with unit_of_work(db_session, "dispense"):
            await ledger.debit(seed.amox_card_id, 51, from_reservation=False)


@pytest.mark.asyncio
async def test_non_positive_quantity_is_rejected(ledger: StockLedger, db_session: AsyncSession, seed):
    with pytest.raises(ValidationError):
        await ledger.reserve(seed.para_card_id, 0)
    with pytest.raises(ValidationError):
        await ledger.credit(seed.para_card_id, -5)


@pytest.mark.asyncio
async def test_credit_uses_weighted_average_cost(ledger: StockLedger, db_session: AsyncSession, seed):
    """100 @ 2.50 plus 100 @ 3.50 averages to 3.00"""
    async with unit_of_work(db_session, "receive"):
        entry = await ledger.credit(seed.para_card_id, 100, Decimal("3.50"))

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.current_stock == 200
    assert card.average_cost == Decimal("3.00")
    assert card.last_cost == Decimal("3.50")
    assert card.total_value == Decimal("600")
    assert card.last_receive_date is not None
    assert entry.transaction.transaction_type == TransactionType.RECEIVE
    assert entry.transaction.total_cost == Decimal("350")


@pytest.mark.asyncio
async def test_credit_creates_and_tops_up_batch(ledger: StockLedger, db_session: AsyncSession, seed):
    expiry = date.today() + timedelta(days=365)
    batch_id = await receive_lot(ledger, db_session, seed.ward_card_id, 40, "LOT-A", expiry)
    again = await receive_lot(ledger, db_session, seed.ward_card_id, 10, "LOT-A", expiry)

    assert again == batch_id
    batch = await fetch(db_session, StockBatch, batch_id)
    assert batch.current_qty == 50
    assert batch.available_qty == 50
    assert batch.status == BatchStatus.ACTIVE


@pytest.mark.asyncio
async def test_credit_refuses_batch_with_different_expiry(ledger: StockLedger, db_session: AsyncSession, seed):
    await receive_lot(ledger, db_session, seed.ward_card_id, 40, "LOT-A", date(2030, 1, 31))

    with pytest.raises(ValidationError):
        await receive_lot(ledger, db_session, seed.ward_card_id, 10, "LOT-A", date(2031, 1, 31))

    card = await fetch(db_session, StockCard, seed.ward_card_id)
    assert card.current_stock == 40


@pytest.mark.asyncio
async def test_debit_consumes_lots_first_expiry_first(ledger: StockLedger, db_session: AsyncSession, seed):
    late = await receive_lot(ledger, db_session, seed.ward_card_id, 20, "LOT-LATE", date(2031, 6, 30))
    undated = await receive_lot(ledger, db_session, seed.ward_card_id, 20, "LOT-NODATE")
    early = await receive_lot(ledger, db_session, seed.ward_card_id, 20, "LOT-EARLY", date(2030, 6, 30))

    async with unit_of_work(db_session, "transfer out"):
        entry = await ledger.debit(seed.ward_card_id, 30, from_reservation=False)

    assert [(lot.id, qty) for lot, qty in entry.allocations] == [(early, 20), (late, 10)]
    # Two lots touched, so the single ledger row carries no batch
    assert entry.transaction.batch_id is None

    assert (await fetch(db_session, StockBatch, early)).current_qty == 0
    assert (await fetch(db_session, StockBatch, late)).current_qty == 10
    assert (await fetch(db_session, StockBatch, undated)).current_qty == 20


@pytest.mark.asyncio
async def test_debit_starts_with_preferred_lot(ledger: StockLedger, db_session: AsyncSession, seed):
    await receive_lot(ledger, db_session, seed.ward_card_id, 20, "LOT-EARLY", date(2030, 6, 30))
    late = await receive_lot(ledger, db_session, seed.ward_card_id, 20, "LOT-LATE", date(2031, 6, 30))

    async with unit_of_work(db_session, "transfer out"):
        entry = await ledger.debit(seed.ward_card_id, 5, from_reservation=False, batch_id=late)

    assert entry.transaction.batch_id == late
    assert (await fetch(db_session, StockBatch, late)).current_qty == 15


@pytest.mark.asyncio
async def test_debit_skips_lots_past_expiry(ledger: StockLedger, db_session: AsyncSession, seed):
    """Lots expired but not yet swept are never dispensed"""
    yesterday = date.today() - timedelta(days=1)
    expired = await receive_lot(ledger, db_session, seed.ward_card_id, 20, "LOT-GONE", yesterday)
    fresh = await receive_lot(ledger, db_session, seed.ward_card_id, 20, "LOT-FRESH", date.today() + timedelta(days=200))

    async with unit_of_work(db_session, "transfer out"):
        entry = await ledger.debit(seed.ward_card_id, 5, from_reservation=False)

    assert [(lot.id, qty) for lot, qty in entry.allocations] == [(fresh, 5)]
    assert (await fetch(db_session, StockBatch, expired)).current_qty == 20

    with pytest.raises(ValidationError):
        async with unit_of_work(db_session, "transfer out"):
            await ledger.debit(seed.ward_card_id, 5, from_reservation=False, batch_id=expired)


@pytest.mark.asyncio
async def test_debit_with_unknown_lot_is_rejected(ledger: StockLedger, db_session: AsyncSession, seed):
    with pytest.raises(ValidationError):
        async with unit_of_work(db_session, "transfer out"):
            await ledger.debit(seed.para_card_id, 5, from_reservation=False, batch_id="missing-lot")


@pytest.mark.asyncio
async def test_adjust_records_increase_and_decrease(ledger: StockLedger, db_session: AsyncSession, seed):
    async with unit_of_work(db_session, "adjust"):
        up = await ledger.adjust(seed.amox_card_id, 5)
    async with unit_of_work(db_session, "adjust"):
        down = await ledger.adjust(seed.amox_card_id, -15)

    assert up.transaction.transaction_type == TransactionType.ADJUST_INCREASE
    assert down.transaction.transaction_type == TransactionType.ADJUST_DECREASE
    assert down.transaction.stock_before == 55
    assert down.transaction.stock_after == 40

    card = await fetch(db_session, StockCard, seed.amox_card_id)
    assert card.current_stock == 40


@pytest.mark.asyncio
async def test_adjust_zero_records_nothing(ledger: StockLedger, db_session: AsyncSession, seed):
    async with unit_of_work(db_session, "adjust"):
        assert await ledger.adjust(seed.amox_card_id, 0) is None

    assert await card_transactions(db_session, seed.amox_card_id) == []


@pytest.mark.asyncio
async def test_adjust_cannot_drop_below_reserved(ledger: StockLedger, db_session: AsyncSession, seed):
    async with unit_of_work(db_session, "reserve"):
        await ledger.reserve(seed.amox_card_id, 30)

    with pytest.raises(InsufficientStockError):
        async with unit_of_work(db_session, "adjust"):
            await ledger.adjust(seed.amox_card_id, -25)

    with pytest.raises(NegativeValueError):
        async with unit_of_work(db_session, "adjust"):
            await ledger.adjust(seed.amox_card_id, -60)

    card = await fetch(db_session, StockCard, seed.amox_card_id)
    assert card.current_stock == 50
    assert card.reserved_stock == 30


@pytest.mark.asyncio
async def test_alert_flags_follow_balances(ledger: StockLedger, db_session: AsyncSession, seed):
    """Low stock is judged on available stock, over stock on on-hand stock"""
    async with unit_of_work(db_session, "revalue"):
        await ledger.revalue(seed.para_card_id, max_stock=150)
    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.low_stock_alert is False
    assert card.over_stock_alert is False

    async with unit_of_work(db_session, "reserve"):
        await ledger.reserve(seed.para_card_id, 80)
    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.available_stock == 20
    assert card.low_stock_alert is True

    async with unit_of_work(db_session, "receive"):
        await ledger.credit(seed.para_card_id, 60, Decimal("2.50"))
    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.low_stock_alert is False
    assert card.over_stock_alert is True


@pytest.mark.asyncio
async def test_dispose_writes_off_lot(ledger: StockLedger, db_session: AsyncSession, seed):
    batch_id = await receive_lot(ledger, db_session, seed.ward_card_id, 25, "LOT-OLD", date(2020, 1, 1), cost="2.00")

    async with unit_of_work(db_session, "dispose"):
        entry = await ledger.dispose(batch_id, Reference(document="DISPOSAL"))

    batch = await fetch(db_session, StockBatch, batch_id)
    card = await fetch(db_session, StockCard, seed.ward_card_id)
    assert batch.status == BatchStatus.DISPOSED
    assert batch.current_qty == 0
    assert card.current_stock == 0
    assert entry.transaction.transaction_type == TransactionType.DISPOSE
    assert entry.transaction.quantity == -25
    assert entry.transaction.total_cost == Decimal("50")

    with pytest.raises(ValidationError):
        async with unit_of_work(db_session, "dispose"):
            await ledger.dispose(batch_id)


@pytest.mark.asyncio
async def test_dispose_empty_lot_is_rejected(ledger: StockLedger, db_session: AsyncSession, seed):
    batch_id = await receive_lot(ledger, db_session, seed.ward_card_id, 10, "LOT-USED", date(2030, 6, 30))
    async with unit_of_work(db_session, "transfer out"):
        await ledger.debit(seed.ward_card_id, 10, from_reservation=False, batch_id=batch_id)
    before = len(await card_transactions(db_session, seed.ward_card_id))

    with pytest.raises(ValidationError):
        async with unit_of_work(db_session, "dispose"):
            await ledger.dispose(batch_id)

    assert len(await card_transactions(db_session, seed.ward_card_id)) == before
    assert (await fetch(db_session, StockBatch, batch_id)).status == BatchStatus.ACTIVE


@pytest.mark.asyncio
async def test_revalue_refuses_negative_values(ledger: StockLedger, db_session: AsyncSession, seed):
    with pytest.raises(NegativeValueError):
        await ledger.revalue(seed.para_card_id, reorder_point=-1)
