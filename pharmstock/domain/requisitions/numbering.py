"""
Requisition numbering: ``{type prefix}{sequence:06d}``, sequential per hospital.

The sequence comes from a per-hospital counter row read FOR UPDATE, so two
concurrent creates serialize on that row instead of both counting existing
requisitions.

Numbers already taken, such as ones supplied by a caller, are skipped while
the lock is held so the counter never hands out a used number.
"""

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pharmstock.core.exceptions import DuplicateNumberError
from pharmstock.domain.requisitions.models import Requisition, RequisitionCounter, RequisitionType

TYPE_PREFIXES = {
    RequisitionType.REGULAR: "",
    RequisitionType.EMERGENCY: "E",
    RequisitionType.SCHEDULED: "S",
    RequisitionType.RETURN: "R",
}


def format_number(requisition_type: RequisitionType, sequence: int) -> str:
    return f"{TYPE_PREFIXES[requisition_type]}{sequence:06d}"


async def _number_taken(db: AsyncSession, hospital_id: str, number: str) -> bool:
    count = await db.scalar(
        select(func.count(Requisition.id)).where(
            Requisition.hospital_id == hospital_id,
            Requisition.requisition_number == number,
        )
    )
    return bool(count)


async def next_requisition_number(db: AsyncSession, hospital_id: str, requisition_type: RequisitionType) -> str:
    """Take the next sequence for a hospital inside the caller's transaction.

    Raises DuplicateNumberError when a concurrent request created the
    hospital's counter row first; the caller retries with a fresh transaction.
    """
    result = await db.execute(
        select(RequisitionCounter)
        .where(RequisitionCounter.hospital_id == hospital_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    counter = result.scalar_one_or_none()
    if counter is None:
        counter = RequisitionCounter(hospital_id=hospital_id, next_seq=1)
        db.add(counter)

    sequence = counter.next_seq
    while await _number_taken(db, hospital_id, format_number(requisition_type, sequence)):
        sequence += 1
    counter.next_seq = sequence + 1
    try:
        await db.flush()
    except IntegrityError as e:
        raise DuplicateNumberError(
            "Requisition counter was created concurrently",
            details={"hospital_id": hospital_id, "retryable": True},
        ) from e
    return format_number(requisition_type, sequence)
