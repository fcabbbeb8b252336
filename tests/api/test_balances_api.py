import pytest
from decimal import Decimal
from httpx import AsyncClient

from lingua_school_backend.database import models as db_models
from tests.constants import OTHER_ORGANIZATION_ID, UNKNOWN_ID


@pytest.mark.anyio
class TestBalancesAPI:

    async def test_adjust_and_read_balance(self, client: AsyncClient, tenant_headers: dict, student: db_models.Students):
        response = await client.post(
            f"/balances/students/{student.id}/adjustments",
            json={"amount": "-25.00", "description": "Books"},
            headers=tenant_headers
        )
        assert response.status_code == 201, response.json()
        assert Decimal(response.json()["previous_balance"]) == Decimal("0")
        assert Decimal(response.json()["new_balance"]) == Decimal("-25.00")

        response = await client.get(f"/balances/students/{student.id}", headers=tenant_headers)
        assert response.status_code == 200, response.json()
        data = response.json()
        assert Decimal(data["balance"]) == Decimal("-25.00")
        assert len(data["recent_transactions"]) == 1
        assert data["recent_transactions"][0]["type"] == "ADJUSTMENT"
        assert data["recent_transactions"][0]["created_by_user_id"] == tenant_headers["X-User-Id"]
        print("Adjusted and read balance.")

    async def test_history_filters_by_type(self, client: AsyncClient, tenant_headers: dict, student: db_models.Students):
        for amount in ("10.00", "-4.00"):
            response = await client.post(
                f"/balances/students/{student.id}/adjustments",
                json={"amount": amount, "description": "Correction"},
                headers=tenant_headers
            )
            assert response.status_code == 201, response.json()

        response = await client.get(
            f"/balances/students/{student.id}/history",
            params={"type": "ADJUSTMENT", "limit": 1},
            headers=tenant_headers
        )
        assert response.status_code == 200, response.json()
        data = response.json()
        assert data["total"] == 2
        assert data["has_more"] is True
        assert Decimal(data["transactions"][0]["amount"]) == Decimal("-4.00")

        response = await client.get(
            f"/balances/students/{student.id}/history", params={"type": "CHARGE"}, headers=tenant_headers
        )
        assert response.json()["transactions"] == []

    async def test_zero_adjustment_is_rejected(self, client: AsyncClient, tenant_headers: dict, student: db_models.Students):
        response = await client.post(
            f"/balances/students/{student.id}/adjustments",
            json={"amount": "0", "description": "Nothing"},
            headers=tenant_headers
        )
        assert response.status_code == 422

    async def test_adjustment_needs_acting_user(self, client: AsyncClient, tenant_headers: dict, student: db_models.Students):
        headers = {"X-Organization-Id": tenant_headers["X-Organization-Id"]}
        response = await client.post(
            f"/balances/students/{student.id}/adjustments",
            json={"amount": "5.00", "description": "Anonymous"},
            headers=headers
        )
        assert response.status_code == 422

    async def test_unknown_student(self, client: AsyncClient, tenant_headers: dict, organization):
        response = await client.get(f"/balances/students/{UNKNOWN_ID}", headers=tenant_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    async def test_other_tenant_cannot_read(self, client: AsyncClient, tenant_headers: dict, student: db_models.Students):
        headers = dict(tenant_headers, **{"X-Organization-Id": str(OTHER_ORGANIZATION_ID)})
        response = await client.get(f"/balances/students/{student.id}", headers=headers)
        assert response.status_code == 404

    async def test_reconcile(self, client: AsyncClient, tenant_headers: dict, student: db_models.Students):
        await client.post(
            f"/balances/students/{student.id}/adjustments",
            json={"amount": "12.50", "description": "Credit"},
            headers=tenant_headers
        )
        response = await client.post(f"/balances/students/{student.id}/reconcile", headers=tenant_headers)
        assert response.status_code == 200, response.json()
        data = response.json()
        assert data["repaired"] is False
        assert Decimal(data["ledger_balance"]) == Decimal("12.50")
        assert Decimal(data["drift"]) == Decimal("0")

    async def test_history_dates_without_offset_are_rejected(
        self, client: AsyncClient, tenant_headers: dict, student: db_models.Students
    ):
        response = await client.get(
            f"/balances/students/{student.id}/history",
            params={"date_from": "2024-01-01T00:00:00"},
            headers=tenant_headers
        )
        assert response.status_code == 422

        response = await client.get(
            f"/balances/students/{student.id}/history",
            params={"date_from": "2024-01-01T00:00:00+02:00"},
            headers=tenant_headers
        )
        assert response.status_code == 200, response.json()
