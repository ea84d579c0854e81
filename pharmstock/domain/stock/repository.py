"""
Stock Repository Layer

Read-side data access for stock cards, batches and transactions. Writes
to balances go through StockLedger, never through this class.
"""

from typing import Optional, List, Tuple
from datetime import date
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, case

from pharmstock.domain.stock.models import (
    BatchStatus, Drug, StockBatch, StockCard, StockTransaction, TransactionType, Warehouse
)


class StockRepository:
    """Repository for stock card, batch and transaction queries"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_card(self, card_id: str, hospital_id: str) -> Optional[StockCard]:
        result = await self.db.execute(
            select(StockCard).where(
                StockCard.id == card_id,
                StockCard.hospital_id == hospital_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_card(self, hospital_id: str, warehouse_id: str, drug_id: str) -> Optional[StockCard]:
        """Card for a (warehouse, drug) pair"""
        result = await self.db.execute(
            select(StockCard).where(
                StockCard.hospital_id == hospital_id,
                StockCard.warehouse_id == warehouse_id,
                StockCard.drug_id == drug_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_cards(
        self,
        hospital_id: str,
        warehouse_id: Optional[str] = None,
        low_stock_only: bool = False,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockCard], int]:
        """Cards of a hospital with total count, ordered by drug name"""
        query = select(StockCard).join(Drug, StockCard.drug_id == Drug.id).where(
            StockCard.hospital_id == hospital_id
        )
        if warehouse_id:
            query = query.where(StockCard.warehouse_id == warehouse_id)
        if low_stock_only:
            query = query.where(StockCard.low_stock_alert.is_(True))
        if search:
            pattern = f"%{search}%"
            query = query.where(Drug.name.ilike(pattern) | Drug.code.ilike(pattern))

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(Drug.name.asc(), StockCard.id.asc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def get_warehouse(self, warehouse_id: str, hospital_id: str) -> Optional[Warehouse]:
        result = await self.db.execute(
            select(Warehouse).where(
                Warehouse.id == warehouse_id,
                Warehouse.hospital_id == hospital_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_batch(self, batch_id: str) -> Optional[StockBatch]:
        result = await self.db.execute(select(StockBatch).where(StockBatch.id == batch_id))
        return result.scalar_one_or_none()

    async def list_batches(self, card_id: str, include_inactive: bool = False) -> List[StockBatch]:
        """Lots of a card, earliest expiry first"""
        undated_last = case((StockBatch.expiry_date.is_(None), 1), else_=0)
        query = select(StockBatch).where(StockBatch.stock_card_id == card_id)
        if not include_inactive:
            query = query.where(StockBatch.status == BatchStatus.ACTIVE)
        result = await self.db.execute(
            query.order_by(undated_last.asc(), StockBatch.expiry_date.asc(), StockBatch.received_at.asc())
        )
        return list(result.scalars().all())

    async def active_batch_total(self, card_id: str) -> int:
        total = await self.db.scalar(
            select(func.coalesce(func.sum(StockBatch.current_qty), 0)).where(
                StockBatch.stock_card_id == card_id,
                StockBatch.status == BatchStatus.ACTIVE,
            )
        )
        return int(total or 0)

    async def has_batch_expiring_by(self, card_id: str, horizon: date) -> bool:
        count = await self.db.scalar(
            select(func.count(StockBatch.id)).where(
                StockBatch.stock_card_id == card_id,
                StockBatch.status == BatchStatus.ACTIVE,
                StockBatch.current_qty > 0,
                StockBatch.expiry_date.is_not(None),
                StockBatch.expiry_date <= horizon,
            )
        )
        return bool(count)

    async def expired_batches(self, today: date, hospital_id: Optional[str] = None) -> List[StockBatch]:
        """ACTIVE lots whose expiry date has passed"""
        query = select(StockBatch).where(
            StockBatch.status == BatchStatus.ACTIVE,
            StockBatch.expiry_date.is_not(None),
            StockBatch.expiry_date < today,
        )
        if hospital_id:
            query = query.join(StockCard, StockBatch.stock_card_id == StockCard.id).where(
                StockCard.hospital_id == hospital_id
            )
        result = await self.db.execute(query.order_by(StockBatch.stock_card_id, StockBatch.expiry_date))
        return list(result.scalars().all())

    async def cards_with_active_batches(self, hospital_id: Optional[str] = None) -> List[str]:
        query = select(StockBatch.stock_card_id).where(StockBatch.status == BatchStatus.ACTIVE).distinct()
        if hospital_id:
            query = query.join(StockCard, StockBatch.stock_card_id == StockCard.id).where(
                StockCard.hospital_id == hospital_id
            )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_transactions(
        self,
        hospital_id: str,
        stock_card_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[StockTransaction], int]:
        """Ledger entries, newest first"""
        query = select(StockTransaction).where(StockTransaction.hospital_id == hospital_id)
        if stock_card_id:
            query = query.where(StockTransaction.stock_card_id == stock_card_id)
        if reference_id:
            query = query.where(StockTransaction.reference_id == reference_id)
        if transaction_type:
            query = query.where(StockTransaction.transaction_type == transaction_type)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(StockTransaction.transaction_date.desc(), StockTransaction.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0
