import pytest
from types import SimpleNamespace
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import HOSPITAL_ID, REQUESTER_ID, APPROVER_ID
from pharmstock.core import events
from pharmstock.core.events import EventPublisher, build_event
from pharmstock.domain.requisitions.models import RequisitionStatus
from pharmstock.domain.requisitions.service import ItemInput, RequisitionInput, RequisitionService
from pharmstock.infrastructure.redis import CacheService, requisition_cache_key
from pharmstock.workers import tasks


class FakeRedis:
    """In-memory stand-in for the async Redis client"""

    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


class BrokenRedis:
    async def get(self, key):
        raise ConnectionError("redis down")

    async def setex(self, key, ttl, value):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")


def fake_requisition():
    return SimpleNamespace(
        id="req-1",
        requisition_number="000042",
        hospital_id=HOSPITAL_ID,
        status=RequisitionStatus.APPROVED,
        requester_id=REQUESTER_ID,
    )


# ==================== Cache ====================

@pytest.mark.asyncio
async def test_cache_service_round_trip():
    cache = CacheService(FakeRedis())

    assert await cache.get("missing") is None
    assert await cache.set("key", {"total": 3, "status": "APPROVED"}) is True
    assert await cache.get("key") == {"total": 3, "status": "APPROVED"}
    assert await cache.delete("key") is True
    assert await cache.delete("key") is False


@pytest.mark.asyncio
async def test_cache_failures_degrade_to_miss():
    cache = CacheService(BrokenRedis())

    assert await cache.get("key") is None
    assert await cache.set("key", {"a": 1}) is False
    assert await cache.delete("key") is False


@pytest.mark.asyncio
async def test_requisition_read_is_cached_until_mutation(db_session: AsyncSession, seed):
    redis = FakeRedis()
    service = RequisitionService(db_session, cache=CacheService(redis), publisher=EventPublisher(enabled=False))
    requisition = await service.create(
        HOSPITAL_ID, REQUESTER_ID,
        RequisitionInput(
            requesting_department_id=seed.department_id,
            fulfillment_warehouse_id=seed.pharmacy_id,
            items=[ItemInput(seed.paracetamol_id, 5)],
        ),
    )
    key = requisition_cache_key(HOSPITAL_ID, requisition.id)

    first = await service.get(requisition.id, HOSPITAL_ID)
    assert key in redis.store
    assert first["status"] == "SUBMITTED"

    await service.approve(requisition.id, HOSPITAL_ID, APPROVER_ID)
    assert key not in redis.store

    second = await service.get(requisition.id, HOSPITAL_ID)
    assert second["status"] == "APPROVED"


# ==================== Events ====================

def test_build_event_fields():
    payload = build_event(events.REQUISITION_APPROVED, fake_requisition(), APPROVER_ID, "Looks fine")

    assert payload["event"] == "requisition.approved"
    assert payload["requisition_number"] == "000042"
    assert payload["status"] == "APPROVED"
    assert payload["actor_id"] == APPROVER_ID
    assert payload["comments"] == "Looks fine"
    assert payload["occurred_at"]


def test_disabled_publisher_sends_nothing(monkeypatch):
    sent = []
    monkeypatch.setattr(tasks.deliver_requisition_event, "delay", lambda payload: sent.append(payload))

    assert EventPublisher(enabled=False).publish(events.REQUISITION_APPROVED, fake_requisition(), APPROVER_ID) is False
    assert sent == []


def test_publisher_queues_delivery(monkeypatch):
    sent = []
    monkeypatch.setattr(tasks.deliver_requisition_event, "delay", lambda payload: sent.append(payload))

    assert EventPublisher(enabled=True).publish(events.REQUISITION_COMPLETED, fake_requisition(), "user-1") is True
    assert [p["event"] for p in sent] == ["requisition.completed"]


def test_broker_failure_is_swallowed(monkeypatch):
    def broken_delay(payload):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(tasks.deliver_requisition_event, "delay", broken_delay)

    assert EventPublisher(enabled=True).publish(events.REQUISITION_REJECTED, fake_requisition(), "user-1") is False


@pytest.mark.asyncio
async def test_broker_failure_does_not_undo_transition(db_session: AsyncSession, seed, monkeypatch):
    def broken_delay(payload):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(tasks.deliver_requisition_event, "delay", broken_delay)
    service = RequisitionService(db_session, publisher=EventPublisher(enabled=True))
    requisition = await service.create(
        HOSPITAL_ID, REQUESTER_ID,
        RequisitionInput(
            requesting_department_id=seed.department_id,
            fulfillment_warehouse_id=seed.pharmacy_id,
            items=[ItemInput(seed.amoxicillin_id, 5)],
        ),
    )

    approved = await service.approve(requisition.id, HOSPITAL_ID, APPROVER_ID)
    assert approved.status == RequisitionStatus.APPROVED
