import pytest
from datetime import date, timedelta
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import HOSPITAL_ID, OTHER_HOSPITAL_ID, APPROVER_ID, fetch
from pharmstock.core.exceptions import (
    InsufficientStockError, NegativeValueError, NotFoundError,
    StockCardNotFoundError, ValidationError
)
from pharmstock.domain.stock.ledger import BatchInput
from pharmstock.domain.stock.models import BatchStatus, StockBatch, StockCard, TransactionType
from pharmstock.domain.stock.service import StockAdjustment, StockService

pytestmark = pytest.mark.stock


@pytest.fixture
def stock_service(db_session: AsyncSession) -> StockService:
    """Stock service fixture"""
    return StockService(db_session)


@pytest.mark.asyncio
async def test_adjust_stock_reports_changes(stock_service: StockService, db_session: AsyncSession, seed):
    """Dashboard edit of stock, reorder point and price in one call"""
    result = await stock_service.adjust_stock(
        seed.para_card_id, HOSPITAL_ID, APPROVER_ID,
        StockAdjustment(new_current_stock=80, new_reorder_point=30, new_price_per_unit=Decimal("3.00")),
    )

    assert result["changes"]["stock_difference"] == -20
    assert result["changes"]["reorder_point_change"] == 10
    assert result["changes"]["value_change"] == Decimal("-10")

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.current_stock == 80
    assert card.reorder_point == 30
    assert card.average_cost == Decimal("3.00")
    assert card.total_value == Decimal("240")

    transactions, total = await stock_service.list_transactions(HOSPITAL_ID, stock_card_id=card.id)
    assert total == 1
    assert transactions[0].transaction_type == TransactionType.ADJUST_DECREASE
    assert transactions[0].reference_document == "MANUAL_ADJUSTMENT"
    assert transactions[0].performed_by == APPROVER_ID


@pytest.mark.asyncio
async def test_adjust_stock_refuses_negative_values(stock_service: StockService, db_session: AsyncSession, seed):
    with pytest.raises(NegativeValueError) as exc_info:
        await stock_service.adjust_stock(
            seed.para_card_id, HOSPITAL_ID, APPROVER_ID, StockAdjustment(new_current_stock=-1)
        )
    assert exc_info.value.error_code == "NEGATIVE_VALUE"

    with pytest.raises(NegativeValueError):
        await stock_service.adjust_stock(
            seed.para_card_id, HOSPITAL_ID, APPROVER_ID,
            StockAdjustment(new_current_stock=100, new_price_per_unit=Decimal("-0.01")),
        )

    card = await fetch(db_session, StockCard, seed.para_card_id)
    assert card.current_stock == 100
    assert card.average_cost == Decimal("2.50")


@pytest.mark.asyncio
async def test_adjust_stock_is_scoped_to_hospital(stock_service: StockService, seed):
    with pytest.raises(StockCardNotFoundError):
        await stock_service.adjust_stock(
            seed.para_card_id, OTHER_HOSPITAL_ID, APPROVER_ID, StockAdjustment(new_current_stock=10)
        )


@pytest.mark.asyncio
async def test_receive_with_near_expiry_lot_raises_alert(stock_service: StockService, db_session: AsyncSession, seed):
    card = await stock_service.receive(
        seed.ward_card_id, HOSPITAL_ID, APPROVER_ID, 40, Decimal("2.00"),
        batch=BatchInput(batch_number="LOT-SOON", expiry_date=date.today() + timedelta(days=30)),
        reference_document="GRN-0001",
    )

    assert card.current_stock == 40
    assert card.expiry_alert is True
    assert card.low_stock_alert is False

    detail = await stock_service.get_card_detail(seed.ward_card_id, HOSPITAL_ID)
    assert detail["batch_total"] == 40
    assert detail["reconciliation_difference"] == 0
    assert detail["batches"][0]["days_to_expiry"] == 30
    assert detail["recent_transactions"][0].reference_document == "GRN-0001"


@pytest.mark.asyncio
async def test_return_stock_records_return(stock_service: StockService, seed):
    card = await stock_service.return_stock(
        seed.amox_card_id, HOSPITAL_ID, APPROVER_ID, 5, reference_id="req-returned"
    )

    assert card.current_stock == 55
    # Returned at the running average, so the average is unchanged
    assert card.average_cost == Decimal("4.00")

    transactions, _ = await stock_service.list_transactions(HOSPITAL_ID, reference_id="req-returned")
    assert [t.transaction_type for t in transactions] == [TransactionType.RETURN]


@pytest.mark.asyncio
async def test_transfer_moves_stock_and_lot(stock_service: StockService, db_session: AsyncSession, seed):
    await stock_service.receive(
        seed.para_card_id, HOSPITAL_ID, APPROVER_ID, 20, Decimal("2.50"),
        batch=BatchInput(batch_number="LOT-T", expiry_date=date(2031, 3, 31)),
    )
    source = await fetch(db_session, StockCard, seed.para_card_id)
    lot_id = (await stock_service.get_card_detail(source.id, HOSPITAL_ID))["batches"][0]["batch"].id

    result = await stock_service.transfer(
        seed.para_card_id, seed.ward_store_id, HOSPITAL_ID, APPROVER_ID, 15, batch_id=lot_id
    )

    assert result["source"].current_stock == 105
    assert result["destination"].current_stock == 15
    assert result["destination"].average_cost == Decimal("2.50")

    ward_detail = await stock_service.get_card_detail(seed.ward_card_id, HOSPITAL_ID)
    assert [row["batch"].batch_number for row in ward_detail["batches"]] == ["LOT-T"]
    assert ward_detail["batches"][0]["batch"].expiry_date == date(2031, 3, 31)
    assert (await fetch(db_session, StockBatch, lot_id)).current_qty == 5

    outgoing, _ = await stock_service.list_transactions(
        HOSPITAL_ID, stock_card_id=seed.para_card_id, transaction_type=TransactionType.TRANSFER_OUT
    )
    incoming, _ = await stock_service.list_transactions(
        HOSPITAL_ID, stock_card_id=seed.ward_card_id, transaction_type=TransactionType.TRANSFER_IN
    )
    assert outgoing[0].quantity == -15
    assert incoming[0].quantity == 15
    assert incoming[0].reference_id == seed.para_card_id


@pytest.mark.asyncio
async def test_transfer_validation(stock_service: StockService, db_session: AsyncSession, seed):
    with pytest.raises(ValidationError):
        await stock_service.transfer(seed.para_card_id, seed.pharmacy_id, HOSPITAL_ID, APPROVER_ID, 5)

    # No amoxicillin card in the ward store
    with pytest.raises(StockCardNotFoundError):
        await stock_service.transfer(seed.amox_card_id, seed.ward_store_id, HOSPITAL_ID, APPROVER_ID, 5)

    with pytest.raises(InsufficientStockError):
        await stock_service.transfer(seed.para_card_id, seed.ward_store_id, HOSPITAL_ID, APPROVER_ID, 101)

    source = await fetch(db_session, StockCard, seed.para_card_id)
    destination = await fetch(db_session, StockCard, seed.ward_card_id)
    assert source.current_stock == 100
    assert destination.current_stock == 0


@pytest.mark.asyncio
async def test_expire_and_dispose_batches(stock_service: StockService, db_session: AsyncSession, seed):
    today = date.today()
    await stock_service.receive(
        seed.ward_card_id, HOSPITAL_ID, APPROVER_ID, 12, Decimal("2.00"),
        batch=BatchInput(batch_number="LOT-OLD", expiry_date=today - timedelta(days=1)),
    )
    await stock_service.receive(
        seed.ward_card_id, HOSPITAL_ID, APPROVER_ID, 8, Decimal("2.00"),
        batch=BatchInput(batch_number="LOT-NEW", expiry_date=today + timedelta(days=400)),
    )

    assert await stock_service.expire_batches(today, HOSPITAL_ID) == 1
    assert await stock_service.expire_batches(today, HOSPITAL_ID) == 0

    detail = await stock_service.get_card_detail(seed.ward_card_id, HOSPITAL_ID)
    # Expired lots stay on the card until disposed
    assert detail["card"].current_stock == 20
    assert detail["card"].expiry_alert is False
    assert detail["batch_total"] == 8
    assert detail["reconciliation_difference"] == 12

    expired = await stock_service.repo.list_batches(seed.ward_card_id, include_inactive=True)
    old_lot = next(b for b in expired if b.batch_number == "LOT-OLD")
    assert old_lot.status == BatchStatus.EXPIRED

    card = await stock_service.dispose_batch(old_lot.id, HOSPITAL_ID, APPROVER_ID, "Expired stock destroyed")
    assert card.current_stock == 8
    assert (await fetch(db_session, StockBatch, old_lot.id)).status == BatchStatus.DISPOSED


@pytest.mark.asyncio
async def test_dispose_unknown_batch(stock_service: StockService, seed):
    with pytest.raises(NotFoundError):
        await stock_service.dispose_batch("missing", HOSPITAL_ID, APPROVER_ID)


@pytest.mark.asyncio
async def test_list_cards_filters(stock_service: StockService, seed):
    cards, total = await stock_service.list_cards(HOSPITAL_ID, warehouse_id=seed.pharmacy_id)
    assert total == 2
    assert [c.drug.code for c in cards] == ["AMOX250", "PARA500"]

    # Empty ward card sits below its reorder point
    low, low_total = await stock_service.list_cards(HOSPITAL_ID, low_stock_only=True)
    assert low_total == 1
    assert low[0].id == seed.ward_card_id

    found, _ = await stock_service.list_cards(HOSPITAL_ID, search="amox")
    assert [c.id for c in found] == [seed.amox_card_id]

    _, other_total = await stock_service.list_cards(OTHER_HOSPITAL_ID)
    assert other_total == 0
