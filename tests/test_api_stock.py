import pytest
from httpx import AsyncClient

from conftest import auth_headers
from pharmstock.core.permissions import Permissions

BASE = "/api/v1/stock"


@pytest.mark.stock
@pytest.mark.integration
@pytest.mark.asyncio
class TestStockEndpoints:
    """Stock cards, lots and the movement ledger over HTTP."""

    async def test_list_cards(self, client: AsyncClient, seed) -> None:
        headers = auth_headers([Permissions.STOCK_READ])
        response = await client.get(f"{BASE}/cards", params={"warehouse_id": seed.pharmacy_id}, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["pages"] == 1
        assert {card["drug"]["code"] for card in data["items"]} == {"PARA500", "AMOX250"}

        low = (await client.get(f"{BASE}/cards", params={"low_stock_only": True}, headers=headers)).json()
        assert [card["id"] for card in low["items"]] == [seed.ward_card_id]
        assert low["items"][0]["low_stock_alert"] is True

    async def test_read_requires_permission(self, client: AsyncClient, seed) -> None:
        headers = auth_headers([Permissions.REQUISITIONS_CREATE])
        response = await client.get(f"{BASE}/cards", headers=headers)
        assert response.status_code == 403

    async def test_card_from_other_hospital_is_not_found(self, client: AsyncClient, seed) -> None:
        headers = auth_headers(hospital_id="hospital-0002")
        response = await client.get(f"{BASE}/cards/{seed.para_card_id}", headers=headers)

        assert response.status_code == 404
        assert response.json()["error_code"] == "STOCK_CARD_NOT_FOUND"

    async def test_adjust_card(self, client: AsyncClient, admin_headers, seed) -> None:
        response = await client.put(
            f"{BASE}/cards/{seed.amox_card_id}",
            json={"current_stock": 8, "reorder_point": 12, "notes": "Cycle count"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["card"]["current_stock"] == 8
        assert data["card"]["low_stock_alert"] is True
        assert data["changes"]["stock_difference"] == -42
        assert data["changes"]["reorder_point_change"] == 2

        ledger = (await client.get(
            f"{BASE}/transactions", params={"stock_card_id": seed.amox_card_id}, headers=admin_headers
        )).json()
        assert ledger["total"] == 1
        assert ledger["items"][0]["transaction_type"] == "ADJUST_DECREASE"
        assert ledger["items"][0]["stock_before"] == 50
        assert ledger["items"][0]["stock_after"] == 8
        assert ledger["items"][0]["notes"] == "Cycle count"

    async def test_adjust_negative_is_rejected(self, client: AsyncClient, admin_headers, seed) -> None:
        response = await client.put(
            f"{BASE}/cards/{seed.amox_card_id}", json={"current_stock": -5}, headers=admin_headers
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "NEGATIVE_VALUE"

    async def test_adjust_requires_adjust_permission(self, client: AsyncClient, seed) -> None:
        headers = auth_headers([Permissions.STOCK_READ, Permissions.STOCK_RECEIVE])
        response = await client.put(
            f"{BASE}/cards/{seed.amox_card_id}", json={"current_stock": 5}, headers=headers
        )
        assert response.status_code == 403

    async def test_receive_lot_and_read_detail(self, client: AsyncClient, admin_headers, seed) -> None:
        response = await client.post(
            f"{BASE}/cards/{seed.para_card_id}/receive",
            json={
                "quantity": 100,
                "unit_cost": "3.50",
                "batch": {"batch_number": "LOT-2031-A", "expiry_date": "2031-01-31"},
                "reference_document": "GRN-0042",
            },
            headers=admin_headers,
        )

        assert response.status_code == 200
        card = response.json()
        assert card["current_stock"] == 200
        # (100 x 2.50 + 100 x 3.50) / 200
        assert float(card["average_cost"]) == pytest.approx(3.0)
        assert float(card["last_cost"]) == pytest.approx(3.5)

        detail = (await client.get(f"{BASE}/cards/{seed.para_card_id}", headers=admin_headers)).json()
        assert [b["batch_number"] for b in detail["batches"]] == ["LOT-2031-A"]
        assert detail["batches"][0]["days_to_expiry"] > 0
        assert detail["batch_total"] == 100
        assert detail["reconciliation_difference"] == 100
        assert detail["recent_transactions"][0]["transaction_type"] == "RECEIVE"

    async def test_receive_return(self, client: AsyncClient, admin_headers, seed) -> None:
        response = await client.post(
            f"{BASE}/cards/{seed.amox_card_id}/receive",
            json={"quantity": 4, "unit_cost": "4.00", "is_return": True},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["current_stock"] == 54

        ledger = (await client.get(
            f"{BASE}/transactions", params={"transaction_type": "RETURN"}, headers=admin_headers
        )).json()
        assert ledger["total"] == 1

    async def test_transfer_and_dispose(self, client: AsyncClient, admin_headers, seed) -> None:
        await client.post(
            f"{BASE}/cards/{seed.para_card_id}/receive",
            json={"quantity": 10, "unit_cost": "2.50", "batch": {"batch_number": "LOT-W"}},
            headers=admin_headers,
        )
        detail = (await client.get(f"{BASE}/cards/{seed.para_card_id}", headers=admin_headers)).json()
        lot_id = detail["batches"][0]["id"]

        response = await client.post(
            f"{BASE}/cards/{seed.para_card_id}/transfer",
            json={"destination_warehouse_id": seed.ward_store_id, "quantity": 10, "batch_id": lot_id},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["source"]["current_stock"] == 100
        assert data["destination"]["current_stock"] == 10

        ward = (await client.get(f"{BASE}/cards/{seed.ward_card_id}", headers=admin_headers)).json()
        ward_lot_id = ward["batches"][0]["id"]

        response = await client.post(
            f"{BASE}/batches/{ward_lot_id}/dispose", json={"notes": "Broken blister packs"}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["current_stock"] == 0

    async def test_transfer_more_than_available(self, client: AsyncClient, admin_headers, seed) -> None:
        response = await client.post(
            f"{BASE}/cards/{seed.para_card_id}/transfer",
            json={"destination_warehouse_id": seed.ward_store_id, "quantity": 500},
            headers=admin_headers,
        )
        assert response.status_code == 409
        assert response.json()["error_code"] == "INSUFFICIENT_STOCK"
