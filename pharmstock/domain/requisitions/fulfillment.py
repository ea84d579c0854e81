"""
Fulfillment Processor

Dispenses against an approved requisition: consumes the reservation on each
item's stock card, advances item and header completion and writes one
workflow row per call.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Optional, List, Dict, Any
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from pharmstock.core.exceptions import NotFoundError, ValidationError
from pharmstock.domain.requisitions import workflow
from pharmstock.domain.requisitions.models import (
    ItemStatus, Requisition, RequisitionStatus, WorkflowAction
)
from pharmstock.domain.requisitions.repository import RequisitionRepository
from pharmstock.domain.stock.ledger import StockLedger
from pharmstock.domain.stock.models import TransactionType
from pharmstock.domain.stock.recorder import Reference
from pharmstock.infrastructure.database import utcnow

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentLine:
    item_id: str
    dispensed_quantity: int
    batch_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class FulfillmentResult:
    requisition_id: str
    action: str  # "partial" or "completed"
    status: str
    dispensed_value: str
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], replayed: bool = False) -> "FulfillmentResult":
        return cls(
            requisition_id=data["requisition_id"],
            action=data["action"],
            status=data["status"],
            dispensed_value=data["dispensed_value"],
            replayed=replayed,
        )


class FulfillmentProcessor:
    """Applies dispensing lines inside the caller's unit of work"""

    def __init__(self, db: AsyncSession, ledger: Optional[StockLedger] = None,
                 repo: Optional[RequisitionRepository] = None):
        self.db = db
        self.ledger = ledger or StockLedger(db)
        self.repo = repo or RequisitionRepository(db)

    async def fulfill(
        self,
        requisition_id: str,
        hospital_id: str,
        fulfiller_id: str,
        lines: List[FulfillmentLine],
        comments: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> FulfillmentResult:
        requisition = await self.repo.get(requisition_id, hospital_id, for_update=True)
        if requisition is None:
            raise NotFoundError("Requisition not found", details={"requisition_id": requisition_id})

        if idempotency_key:
            previous = await self.repo.get_fulfillment_request(requisition.id, idempotency_key)
            if previous is not None:
                logger.info(
                    f"Requisition {requisition.requisition_number}: fulfillment key "
                    f"{idempotency_key} already applied, returning stored outcome"
                )
                return FulfillmentResult.from_dict(previous.outcome, replayed=True)

        workflow.ensure_allowed(requisition, WorkflowAction.FULFILL)
        self._validate_lines(requisition, lines)

        items = {item.id: item for item in requisition.items}
        now = utcnow()
        dispensed_value = Decimal("0")

        # Input order; zero lines are skipped
        for line in lines:
            if line.dispensed_quantity == 0:
                continue
            item = items[line.item_id]
            entry = await self.ledger.debit(
                item.stock_card_id,
                line.dispensed_quantity,
                reference=Reference(
                    document=requisition.requisition_number,
                    reference_id=requisition.id,
                    performed_by=fulfiller_id,
                    notes=line.notes,
                ),
                transaction_type=TransactionType.DISPENSE,
                from_reservation=True,
                batch_id=line.batch_id,
                hospital_id=hospital_id,
            )
            dispensed_value += Decimal(line.dispensed_quantity) * Decimal(entry.transaction.unit_cost)

            item.fulfilled_quantity += line.dispensed_quantity
            item.last_dispensed_at = now
            if line.notes is not None:
                item.dispenser_notes = line.notes
            if entry.allocations:
                item.last_batch_id = entry.allocations[0][0].id
            if item.is_complete:
                item.status = ItemStatus.FULFILLED

        # Every item is re-evaluated, not just the ones touched here
        completed = all(item.is_complete for item in requisition.items)
        new_status = RequisitionStatus.COMPLETED if completed else RequisitionStatus.PARTIALLY_FILLED

        requisition.total_dispensed_value = Decimal(requisition.total_dispensed_value or 0) + dispensed_value
        requisition.fulfiller_id = fulfiller_id
        if comments is not None:
            requisition.fulfiller_comments = comments
        if completed:
            requisition.fulfilled_date = now
        workflow.transition(requisition, WorkflowAction.FULFILL, new_status, fulfiller_id, comments)

        result = FulfillmentResult(
            requisition_id=requisition.id,
            action="completed" if completed else "partial",
            status=new_status.value,
            dispensed_value=str(dispensed_value),
        )
        if idempotency_key:
            self.repo.add_fulfillment_request(requisition.id, idempotency_key, result.to_dict(), fulfiller_id)
        return result

    @staticmethod
    def _validate_lines(requisition: Requisition, lines: List[FulfillmentLine]) -> None:
        if not lines:
            raise ValidationError("At least one fulfillment line is required")

        items = {item.id: item for item in requisition.items}
        requested: Dict[str, int] = {}
        for line in lines:
            if line.item_id not in items:
                raise ValidationError(
                    "Item does not belong to this requisition",
                    details={"item_id": line.item_id, "requisition_id": requisition.id},
                )
            if line.dispensed_quantity is None or line.dispensed_quantity < 0:
                raise ValidationError(
                    "Dispensed quantity must not be negative",
                    details={"item_id": line.item_id, "dispensed_quantity": line.dispensed_quantity},
                )
            requested[line.item_id] = requested.get(line.item_id, 0) + line.dispensed_quantity

        if not any(requested.values()):
            raise ValidationError("Nothing to dispense: every line has zero quantity")

        for item_id, quantity in requested.items():
            item = items[item_id]
            if quantity > item.outstanding_quantity:
                raise ValidationError(
                    "Dispensed quantity exceeds the approved amount still outstanding",
                    details={
                        "item_id": item_id,
                        "requested": quantity,
                        "outstanding": item.outstanding_quantity,
                        "approved_quantity": item.approved_quantity,
                        "fulfilled_quantity": item.fulfilled_quantity,
                    },
                )
