"""
Requisition Service Layer

Workflow engine for requisitions: creation and numbering, submit, approve
(all-or-nothing stock reservation), reject, cancel (reservation release),
fulfillment and the read model. Each public method is one unit of work;
cache invalidation and event publishing happen only after it commits.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pharmstock.core import events
from pharmstock.core.config import settings
from pharmstock.core.events import EventPublisher, event_publisher
from pharmstock.core.exceptions import (
    DuplicateNumberError, InsufficientAvailableError, MissingReasonError,
    NotFoundError, StockCardNotFoundError, ValidationError
)
from pharmstock.domain.requisitions import workflow
from pharmstock.domain.requisitions.fulfillment import (
    FulfillmentLine, FulfillmentProcessor, FulfillmentResult
)
from pharmstock.domain.requisitions.models import (
    ItemStatus, Requisition, RequisitionItem, RequisitionPriority,
    RequisitionStatus, RequisitionType, WorkflowAction
)
from pharmstock.domain.requisitions.numbering import next_requisition_number
from pharmstock.domain.requisitions.repository import RequisitionRepository
from pharmstock.domain.stock.ledger import StockLedger
from pharmstock.domain.stock.recorder import Reference
from pharmstock.domain.stock.repository import StockRepository
from pharmstock.infrastructure.database import unit_of_work, utcnow
from pharmstock.infrastructure.redis import CacheService, get_cache_service, requisition_cache_key

logger = logging.getLogger(__name__)


@dataclass
class ItemInput:
    drug_id: str
    requested_quantity: int
    notes: Optional[str] = None


@dataclass
class RequisitionInput:
    requesting_department_id: str
    fulfillment_warehouse_id: str
    items: List[ItemInput] = field(default_factory=list)
    type: RequisitionType = RequisitionType.REGULAR
    priority: RequisitionPriority = RequisitionPriority.NORMAL
    required_date: Optional[date] = None
    notes: Optional[str] = None
    requisition_number: Optional[str] = None
    save_as_draft: bool = False


@dataclass
class ApprovalLine:
    item_id: str
    approved_quantity: int
    notes: Optional[str] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dec(value) -> str:
    return str(Decimal(value or 0))


def requisition_snapshot(requisition: Requisition) -> Dict[str, Any]:
    """JSON-ready view of the aggregate with its items, history and totals"""
    items = list(requisition.items)
    return {
        "id": requisition.id,
        "hospital_id": requisition.hospital_id,
        "requisition_number": requisition.requisition_number,
        "type": requisition.type.value,
        "priority": requisition.priority.value,
        "status": requisition.status.value,
        "requesting_department_id": requisition.requesting_department_id,
        "fulfillment_warehouse_id": requisition.fulfillment_warehouse_id,
        "requester_id": requisition.requester_id,
        "approver_id": requisition.approver_id,
        "fulfiller_id": requisition.fulfiller_id,
        "requested_date": _iso(requisition.requested_date),
        "required_date": _iso(requisition.required_date),
        "submitted_date": _iso(requisition.submitted_date),
        "approved_date": _iso(requisition.approved_date),
        "fulfilled_date": _iso(requisition.fulfilled_date),
        "cancelled_date": _iso(requisition.cancelled_date),
        "request_notes": requisition.request_notes,
        "approver_comments": requisition.approver_comments,
        "fulfiller_comments": requisition.fulfiller_comments,
        "rejection_reason": requisition.rejection_reason,
        "cancellation_reason": requisition.cancellation_reason,
        "total_dispensed_value": _dec(requisition.total_dispensed_value),
        "created_at": _iso(requisition.created_at),
        "items": [
            {
                "id": item.id,
                "line_number": item.line_number,
                "drug_id": item.drug_id,
                "stock_card_id": item.stock_card_id,
                "requested_quantity": item.requested_quantity,
                "approved_quantity": item.approved_quantity,
                "fulfilled_quantity": item.fulfilled_quantity,
                "outstanding_quantity": item.outstanding_quantity,
                "status": item.status.value,
                "unit_cost": _dec(item.unit_cost) if item.unit_cost is not None else None,
                "total_cost": _dec(item.total_cost) if item.total_cost is not None else None,
                "request_notes": item.request_notes,
                "approver_notes": item.approver_notes,
                "dispenser_notes": item.dispenser_notes,
                "last_batch_id": item.last_batch_id,
                "last_dispensed_at": _iso(item.last_dispensed_at),
            }
            for item in items
        ],
        "workflow": [
            {
                "action": entry.action.value,
                "from_status": entry.from_status.value if entry.from_status else None,
                "to_status": entry.to_status.value,
                "user_id": entry.user_id,
                "comments": entry.comments,
                "processed_at": _iso(entry.processed_at),
            }
            for entry in requisition.workflow
        ],
        "totals": {
            "item_count": len(items),
            "completed_item_count": sum(1 for item in items if item.status == ItemStatus.FULFILLED),
            "requested_quantity": sum(item.requested_quantity for item in items),
            "approved_quantity": sum(item.approved_quantity or 0 for item in items),
            "fulfilled_quantity": sum(item.fulfilled_quantity for item in items),
            "approved_value": _dec(sum((Decimal(item.total_cost or 0) for item in items), Decimal("0"))),
            "dispensed_value": _dec(requisition.total_dispensed_value),
        },
    }


class RequisitionService:
    """Service layer for the requisition workflow"""

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.db = db
        self.repo = RequisitionRepository(db)
        self.stock_repo = StockRepository(db)
        self.ledger = StockLedger(db)
        self.fulfillment = FulfillmentProcessor(db, self.ledger, self.repo)
        self.cache = cache if cache is not None else get_cache_service()
        self.publisher = publisher or event_publisher

    # ==================== Create / submit ====================

    async def create(self, hospital_id: str, requester_id: str, data: RequisitionInput) -> Requisition:
        """Create a requisition as DRAFT or SUBMITTED; nothing is reserved yet"""
        if not data.items:
            raise ValidationError("A requisition needs at least one item")
        for index, item in enumerate(data.items, start=1):
            if item.requested_quantity is None or item.requested_quantity <= 0:
                raise ValidationError(
                    "Requested quantity must be greater than zero",
                    details={"line_number": index, "drug_id": item.drug_id},
                )

        if await self.repo.get_department(data.requesting_department_id, hospital_id) is None:
            raise NotFoundError("Department not found", details={"department_id": data.requesting_department_id})
        if await self.repo.get_warehouse(data.fulfillment_warehouse_id, hospital_id) is None:
            raise NotFoundError("Warehouse not found", details={"warehouse_id": data.fulfillment_warehouse_id})

        drugs = await self.repo.get_drugs([item.drug_id for item in data.items], hospital_id)
        card_ids = []
        for item in data.items:
            if item.drug_id not in drugs:
                raise NotFoundError("Drug not found", details={"drug_id": item.drug_id})
            card = await self.stock_repo.find_card(hospital_id, data.fulfillment_warehouse_id, item.drug_id)
            if card is None:
                raise StockCardNotFoundError(details={
                    "drug_id": item.drug_id,
                    "warehouse_id": data.fulfillment_warehouse_id,
                })
            card_ids.append(card.id)

        supplied_number = data.requisition_number.strip() if data.requisition_number else None
        if supplied_number and await self.repo.number_exists(hospital_id, supplied_number):
            raise DuplicateNumberError(details={"requisition_number": supplied_number})

        attempts = 1 if supplied_number else max(settings.REQUISITION_NUMBER_RETRIES, 1)
        for attempt in range(1, attempts + 1):
            try:
                async with unit_of_work(self.db, "create requisition"):
                    requisition = await self._insert(hospital_id, requester_id, data, card_ids, supplied_number)
                break
            except DuplicateNumberError:
                if supplied_number or attempt == attempts:
                    raise
                logger.warning(f"Requisition number collision for hospital {hospital_id}, retry {attempt}")

        return requisition

    async def _insert(
        self, hospital_id: str, requester_id: str, data: RequisitionInput,
        card_ids: List[str], supplied_number: Optional[str],
    ) -> Requisition:
        number = supplied_number or await next_requisition_number(self.db, hospital_id, data.type)
        now = utcnow()
        status = RequisitionStatus.DRAFT if data.save_as_draft else RequisitionStatus.SUBMITTED

        requisition = Requisition(
            hospital_id=hospital_id,
            requisition_number=number,
            type=data.type,
            priority=data.priority,
            status=status,
            requesting_department_id=data.requesting_department_id,
            fulfillment_warehouse_id=data.fulfillment_warehouse_id,
            requester_id=requester_id,
            requested_date=now,
            required_date=data.required_date,
            submitted_date=None if data.save_as_draft else now,
            request_notes=data.notes,
            total_dispensed_value=Decimal("0"),
            items=[
                RequisitionItem(
                    line_number=index,
                    drug_id=item.drug_id,
                    stock_card_id=card_id,
                    requested_quantity=item.requested_quantity,
                    fulfilled_quantity=0,
                    status=ItemStatus.PENDING,
                    request_notes=item.notes,
                )
                for index, (item, card_id) in enumerate(zip(data.items, card_ids), start=1)
            ],
            workflow=[],
        )
        self.db.add(requisition)
        workflow.record(
            requisition,
            WorkflowAction.CREATE,
            None if data.save_as_draft else RequisitionStatus.DRAFT,
            status,
            requester_id,
            data.notes,
        )

        try:
            await self.db.flush()
        except IntegrityError as e:
            raise DuplicateNumberError(details={"requisition_number": number}) from e

        logger.info(f"Requisition {number} created as {status.value} by {requester_id}")
        return requisition

    async def submit(self, requisition_id: str, hospital_id: str, user_id: str,
                     comments: Optional[str] = None) -> Requisition:
        async with unit_of_work(self.db, "submit requisition"):
            requisition = await self._get_locked(requisition_id, hospital_id)
            workflow.ensure_allowed(requisition, WorkflowAction.SUBMIT)
            requisition.submitted_date = utcnow()
            workflow.transition(requisition, WorkflowAction.SUBMIT, RequisitionStatus.SUBMITTED, user_id, comments)

        await self._after_commit(requisition)
        return requisition

    # ==================== Approve / reject / cancel ====================

    async def approve(
        self,
        requisition_id: str,
        hospital_id: str,
        approver_id: str,
        overrides: Optional[List[ApprovalLine]] = None,
        comments: Optional[str] = None,
    ) -> Requisition:
        """Reserve stock for every item or for none of them"""
        async with unit_of_work(self.db, "approve requisition"):
            requisition = await self._get_locked(requisition_id, hospital_id)
            workflow.ensure_allowed(requisition, WorkflowAction.APPROVE)
            lines = self._approval_lines(requisition, overrides or [])

            for item in requisition.items:
                line = lines.get(item.id)
                quantity = line.approved_quantity if line else item.requested_quantity
                if line and line.notes is not None:
                    item.approver_notes = line.notes

                item.approved_quantity = quantity
                if quantity == 0:
                    item.status = ItemStatus.REJECTED
                    continue

                try:
                    entry = await self.ledger.reserve(
                        item.stock_card_id,
                        quantity,
                        Reference(
                            document=requisition.requisition_number,
                            reference_id=requisition.id,
                            performed_by=approver_id,
                        ),
                        hospital_id=hospital_id,
                    )
                except InsufficientAvailableError as e:
                    e.details.update({"item_id": item.id, "line_number": item.line_number})
                    raise

                item.status = ItemStatus.APPROVED
                item.unit_cost = Decimal(entry.card.average_cost or 0)
                item.total_cost = item.unit_cost * quantity

            requisition.approver_id = approver_id
            requisition.approved_date = utcnow()
            requisition.approver_comments = comments
            workflow.transition(requisition, WorkflowAction.APPROVE, RequisitionStatus.APPROVED, approver_id, comments)

        await self._after_commit(requisition, events.REQUISITION_APPROVED, approver_id, comments)
        return requisition

    @staticmethod
    def _approval_lines(requisition: Requisition, overrides: List[ApprovalLine]) -> Dict[str, ApprovalLine]:
        items = {item.id: item for item in requisition.items}
        lines: Dict[str, ApprovalLine] = {}
        for line in overrides:
            item = items.get(line.item_id)
            if item is None:
                raise ValidationError(
                    "Item does not belong to this requisition",
                    details={"item_id": line.item_id, "requisition_id": requisition.id},
                )
            if line.approved_quantity is None or not 0 <= line.approved_quantity <= item.requested_quantity:
                raise ValidationError(
                    "Approved quantity must be between 0 and the requested quantity",
                    details={
                        "item_id": item.id,
                        "approved_quantity": line.approved_quantity,
                        "requested_quantity": item.requested_quantity,
                    },
                )
            lines[item.id] = line

        if all(item.id in lines and lines[item.id].approved_quantity == 0 for item in requisition.items):
            raise ValidationError("Every line is approved at zero; reject the requisition instead")
        return lines

    async def reject(self, requisition_id: str, hospital_id: str, approver_id: str, reason: Optional[str]) -> Requisition:
        if not reason or not reason.strip():
            raise MissingReasonError("A rejection reason is required")

        async with unit_of_work(self.db, "reject requisition"):
            requisition = await self._get_locked(requisition_id, hospital_id)
            workflow.ensure_allowed(requisition, WorkflowAction.REJECT)

            for item in requisition.items:
                item.status = ItemStatus.REJECTED
            requisition.approver_id = approver_id
            requisition.rejection_reason = reason.strip()
            workflow.transition(
                requisition, WorkflowAction.REJECT, RequisitionStatus.REJECTED, approver_id, reason.strip()
            )

        await self._after_commit(requisition, events.REQUISITION_REJECTED, approver_id, reason.strip())
        return requisition

    async def cancel(self, requisition_id: str, hospital_id: str, user_id: str,
                     reason: Optional[str] = None) -> Requisition:
        """Cancel and release whatever is still reserved"""
        async with unit_of_work(self.db, "cancel requisition"):
            requisition = await self._get_locked(requisition_id, hospital_id)
            workflow.ensure_allowed(requisition, WorkflowAction.CANCEL)

            if requisition.status in workflow.RESERVING_STATUSES:
                for item in requisition.items:
                    outstanding = item.outstanding_quantity
                    if outstanding > 0:
                        await self.ledger.release(
                            item.stock_card_id,
                            outstanding,
                            Reference(
                                document=requisition.requisition_number,
                                reference_id=requisition.id,
                                performed_by=user_id,
                                notes=reason,
                            ),
                            hospital_id=hospital_id,
                        )

            for item in requisition.items:
                if item.status not in (ItemStatus.FULFILLED, ItemStatus.REJECTED):
                    item.status = ItemStatus.CANCELLED
            requisition.cancellation_reason = reason
            requisition.cancelled_date = utcnow()
            workflow.transition(requisition, WorkflowAction.CANCEL, RequisitionStatus.CANCELLED, user_id, reason)

        await self._after_commit(requisition, events.REQUISITION_CANCELLED, user_id, reason)
        return requisition

    # ==================== Fulfill ====================

    async def fulfill(
        self,
        requisition_id: str,
        hospital_id: str,
        fulfiller_id: str,
        lines: List[FulfillmentLine],
        comments: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> FulfillmentResult:
        async with unit_of_work(self.db, "fulfill requisition"):
            result = await self.fulfillment.fulfill(
                requisition_id, hospital_id, fulfiller_id, lines, comments, idempotency_key
            )
            requisition = await self.repo.get(requisition_id, hospital_id)

        if not result.replayed:
            event = (
                events.REQUISITION_COMPLETED if result.action == "completed"
                else events.REQUISITION_PARTIALLY_FILLED
            )
            await self._after_commit(requisition, event, fulfiller_id, comments)
        return result

    # ==================== Reads ====================

    async def get(self, requisition_id: str, hospital_id: str) -> Dict[str, Any]:
        """Full aggregate; served from cache until the next mutation"""
        key = requisition_cache_key(hospital_id, requisition_id)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        requisition = await self.repo.get(requisition_id, hospital_id)
        if requisition is None:
            raise NotFoundError("Requisition not found", details={"requisition_id": requisition_id})

        snapshot = requisition_snapshot(requisition)
        if self.cache is not None:
            await self.cache.set(key, snapshot, settings.REQUISITION_CACHE_TTL)
        return snapshot

    async def list(
        self,
        hospital_id: str,
        status: Optional[RequisitionStatus] = None,
        requisition_type: Optional[RequisitionType] = None,
        fulfillment_warehouse_id: Optional[str] = None,
        requesting_department_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Tuple[Requisition, int]], int]:
        return await self.repo.list(
            hospital_id,
            status=status,
            requisition_type=requisition_type,
            fulfillment_warehouse_id=fulfillment_warehouse_id,
            requesting_department_id=requesting_department_id,
            skip=(page - 1) * limit,
            limit=limit,
        )

    # ==================== Internals ====================

    async def _get_locked(self, requisition_id: str, hospital_id: str) -> Requisition:
        requisition = await self.repo.get(requisition_id, hospital_id, for_update=True)
        if requisition is None:
            raise NotFoundError("Requisition not found", details={"requisition_id": requisition_id})
        return requisition

    async def _after_commit(self, requisition: Requisition, event: Optional[str] = None,
                            actor_id: Optional[str] = None, comments: Optional[str] = None) -> None:
        if self.cache is not None:
            await self.cache.delete(requisition_cache_key(requisition.hospital_id, requisition.id))
        if event:
            self.publisher.publish(event, requisition, actor_id, comments)
