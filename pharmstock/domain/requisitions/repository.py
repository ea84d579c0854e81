"""
Requisition Repository Layer

Provides data access operations for requisitions, their items, workflow
history and fulfillment idempotency records.
"""

from typing import Optional, List, Tuple, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, case

from pharmstock.domain.requisitions.models import (
    FulfillmentRequest, Requisition, RequisitionItem, RequisitionPriority,
    RequisitionStatus, RequisitionType
)
from pharmstock.domain.stock.models import Department, Drug, Warehouse

PRIORITY_RANK = case(
    (Requisition.priority == RequisitionPriority.URGENT, 4),
    (Requisition.priority == RequisitionPriority.HIGH, 3),
    (Requisition.priority == RequisitionPriority.NORMAL, 2),
    else_=1,
)


class RequisitionRepository:
    """Repository for requisition data access operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, requisition_id: str, hospital_id: str, for_update: bool = False) -> Optional[Requisition]:
        """Requisition with items and workflow history.

        ``for_update`` locks the header row so concurrent workflow calls on
        the same requisition run one after another.
        """
        query = select(Requisition).where(
            Requisition.id == requisition_id,
            Requisition.hospital_id == hospital_id,
        )
        if for_update:
            await self.db.flush()
            query = query.with_for_update(of=Requisition).execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def number_exists(self, hospital_id: str, requisition_number: str) -> bool:
        count = await self.db.scalar(
            select(func.count(Requisition.id)).where(
                Requisition.hospital_id == hospital_id,
                Requisition.requisition_number == requisition_number,
            )
        )
        return bool(count)

    async def list(
        self,
        hospital_id: str,
        status: Optional[RequisitionStatus] = None,
        requisition_type: Optional[RequisitionType] = None,
        fulfillment_warehouse_id: Optional[str] = None,
        requesting_department_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Tuple[Requisition, int]], int]:
        """Requisitions with their item counts, priority DESC then createdAt DESC"""
        filters = [Requisition.hospital_id == hospital_id]
        if status:
            filters.append(Requisition.status == status)
        if requisition_type:
            filters.append(Requisition.type == requisition_type)
        if fulfillment_warehouse_id:
            filters.append(Requisition.fulfillment_warehouse_id == fulfillment_warehouse_id)
        if requesting_department_id:
            filters.append(Requisition.requesting_department_id == requesting_department_id)

        total = await self.db.scalar(select(func.count(Requisition.id)).where(*filters))

        item_counts = (
            select(RequisitionItem.requisition_id, func.count(RequisitionItem.id).label("item_count"))
            .group_by(RequisitionItem.requisition_id)
            .subquery()
        )
        query = (
            select(Requisition, func.coalesce(item_counts.c.item_count, 0))
            .outerjoin(item_counts, item_counts.c.requisition_id == Requisition.id)
            .where(*filters)
            .order_by(PRIORITY_RANK.desc(), Requisition.created_at.desc(), Requisition.id.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return [(row[0], int(row[1])) for row in result.all()], total or 0

    async def get_department(self, department_id: str, hospital_id: str) -> Optional[Department]:
        result = await self.db.execute(
            select(Department).where(
                Department.id == department_id,
                Department.hospital_id == hospital_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_warehouse(self, warehouse_id: str, hospital_id: str) -> Optional[Warehouse]:
        result = await self.db.execute(
            select(Warehouse).where(
                Warehouse.id == warehouse_id,
                Warehouse.hospital_id == hospital_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_drugs(self, drug_ids: List[str], hospital_id: str) -> Dict[str, Drug]:
        result = await self.db.execute(
            select(Drug).where(Drug.id.in_(drug_ids), Drug.hospital_id == hospital_id)
        )
        return {drug.id: drug for drug in result.scalars().all()}

    async def get_fulfillment_request(self, requisition_id: str, idempotency_key: str) -> Optional[FulfillmentRequest]:
        result = await self.db.execute(
            select(FulfillmentRequest).where(
                FulfillmentRequest.requisition_id == requisition_id,
                FulfillmentRequest.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    def add_fulfillment_request(self, requisition_id: str, idempotency_key: str,
                                outcome: Dict[str, Any], performed_by: str) -> FulfillmentRequest:
        request = FulfillmentRequest(
            requisition_id=requisition_id,
            idempotency_key=idempotency_key,
            outcome=outcome,
            performed_by=performed_by,
        )
        self.db.add(request)
        return request
