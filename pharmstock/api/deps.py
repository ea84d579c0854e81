from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pharmstock.infrastructure.database import get_db
from pharmstock.domain.requisitions.service import RequisitionService
from pharmstock.domain.stock.service import StockService


async def get_requisition_service(db: AsyncSession = Depends(get_db)) -> RequisitionService:
    return RequisitionService(db)


async def get_stock_service(db: AsyncSession = Depends(get_db)) -> StockService:
    return StockService(db)
