import pytest
from datetime import datetime, timezone
from decimal import Decimal
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from lingua_school_backend.database import models as db_models
from lingua_school_backend.database.db_enums import LessonStatusEnum
from tests.constants import UNKNOWN_ID
from tests.database.factories import LessonFactory

PERIOD = {"period_start": "2024-05-01T00:00:00Z", "period_end": "2024-06-01T00:00:00Z"}


@pytest.fixture
async def completed_lesson(
    db_session: AsyncSession, student: db_models.Students, teacher: db_models.Teachers
) -> db_models.Lessons:
    lesson = LessonFactory(
        student_id=student.id,
        teacher_id=teacher.id,
        status=LessonStatusEnum.COMPLETED.value,
        scheduled_at=datetime(2024, 5, 14, 15, 0, tzinfo=timezone.utc),
        duration_minutes=45
    )
    await db_session.flush()
    return lesson


@pytest.mark.anyio
class TestPayoutsAPI:

    async def test_preview_create_and_pay(
        self, client: AsyncClient, tenant_headers: dict, teacher: db_models.Teachers, completed_lesson: db_models.Lessons
    ):
        response = await client.get(f"/payouts/teachers/{teacher.id}/preview", params=PERIOD, headers=tenant_headers)
        assert response.status_code == 200, response.json()
        preview = response.json()
        assert [q["id"] for q in preview["qualified_lessons"]] == [str(completed_lesson.id)]
        assert Decimal(preview["total_amount"]) == Decimal("75.00")
        assert Decimal(preview["total_hours"]) == Decimal("0.75")

        response = await client.post("/payouts/", json={"teacher_id": str(teacher.id), **PERIOD}, headers=tenant_headers)
        assert response.status_code == 201, response.json()
        payout = response.json()["payout"]
        assert payout["status"] == "PENDING"
        assert payout["lessons_count"] == 1

        response = await client.post("/payouts/", json={"teacher_id": str(teacher.id), **PERIOD}, headers=tenant_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "NoQualifiedLessonsError"

        response = await client.patch(f"/payouts/{payout['id']}/status", json={"status": "PAID"}, headers=tenant_headers)
        assert response.status_code == 200, response.json()
        assert response.json()["paid_at"] is not None

        response = await client.patch(f"/payouts/{payout['id']}/status", json={"status": "APPROVED"}, headers=tenant_headers)
        assert response.status_code == 409

        response = await client.delete(f"/payouts/{payout['id']}", headers=tenant_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "OnlyPendingDeletableError"
        print("Payout created and paid.")

    async def test_delete_pending(
        self, client: AsyncClient, tenant_headers: dict, teacher: db_models.Teachers, completed_lesson: db_models.Lessons
    ):
        response = await client.post("/payouts/", json={"teacher_id": str(teacher.id), **PERIOD}, headers=tenant_headers)
        payout_id = response.json()["payout"]["id"]

        response = await client.delete(f"/payouts/{payout_id}", headers=tenant_headers)
        assert response.status_code == 200, response.json()

        response = await client.get(f"/payouts/{payout_id}", headers=tenant_headers)
        assert response.status_code == 404

    async def test_list_and_summary(
        self, client: AsyncClient, tenant_headers: dict, teacher: db_models.Teachers, completed_lesson: db_models.Lessons
    ):
        await client.post("/payouts/", json={"teacher_id": str(teacher.id), **PERIOD}, headers=tenant_headers)

        response = await client.get("/payouts/", params={"teacher_id": str(teacher.id), "status": "PENDING"}, headers=tenant_headers)
        assert response.status_code == 200, response.json()
        assert len(response.json()) == 1

        response = await client.get("/payouts/teachers-summary", headers=tenant_headers)
        assert response.status_code == 200, response.json()
        row = next(r for r in response.json() if r["id"] == str(teacher.id))
        assert row["pending_payouts_count"] == 1
        assert Decimal(row["pending_payouts_total"]) == Decimal("75.00")

    async def test_teacher_lessons(
        self, client: AsyncClient, tenant_headers: dict, teacher: db_models.Teachers, completed_lesson: db_models.Lessons
    ):
        response = await client.get(f"/payouts/teachers/{teacher.id}/lessons", params={"day": "2024-05-14"}, headers=tenant_headers)
        assert response.status_code == 200, response.json()
        lessons = response.json()
        assert [l["id"] for l in lessons] == [str(completed_lesson.id)]
        assert lessons[0]["qualifies_for_payout"] is True
        assert lessons[0]["payout"] is None

        response = await client.get(f"/payouts/teachers/{teacher.id}/lessons", headers=tenant_headers)
        assert response.status_code == 422

    async def test_unknown_teacher(self, client: AsyncClient, tenant_headers: dict, organization):
        response = await client.get(f"/payouts/teachers/{UNKNOWN_ID}/preview", params=PERIOD, headers=tenant_headers)
        assert response.status_code == 404

    async def test_timestamps_without_offset_are_rejected(
        self, client: AsyncClient, tenant_headers: dict, teacher: db_models.Teachers, completed_lesson: db_models.Lessons
    ):
        naive = {"period_start": "2024-05-01T00:00:00", "period_end": "2024-06-01T00:00:00"}
        response = await client.post("/payouts/", json={"teacher_id": str(teacher.id), **naive}, headers=tenant_headers)
        assert response.status_code == 422

        response = await client.get(f"/payouts/teachers/{teacher.id}/preview", params=naive, headers=tenant_headers)
        assert response.status_code == 422

        # the lesson is still available to a correctly dated payout
        response = await client.post("/payouts/", json={"teacher_id": str(teacher.id), **PERIOD}, headers=tenant_headers)
        assert response.status_code == 201, response.json()
