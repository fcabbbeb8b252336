'''
API endpoints for teacher payouts.
'''
from datetime import date
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, status, Query
from pydantic import AwareDatetime

from ..common.exceptions import InvalidPeriodError
from ..database.db_enums import PayoutStatusEnum
from ..models import payout as payout_models
from ..services.payout_service import PayoutService
from .deps import get_organization_id

class PayoutsAPI:
    """
    A class to encapsulate endpoints for teacher payouts.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/payouts",
            tags=["Payouts"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/teachers-summary",
                self.get_teachers_summary,
                methods=["GET"],
                response_model=list[payout_models.TeacherPayoutSummary])
        self.router.add_api_route(
                "/teachers/{teacher_id}/preview",
                self.preview_payout,
                methods=["GET"],
                response_model=payout_models.PayoutPreview)
        self.router.add_api_route(
                "/teachers/{teacher_id}/lessons",
                self.get_teacher_lessons,
                methods=["GET"],
                response_model=list[payout_models.LessonPayoutView])
        self.router.add_api_route(
                "/",
                self.list_payouts,
                methods=["GET"],
                response_model=list[payout_models.PayoutRead])
        self.router.add_api_route(
                "/",
                self.create_payout,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=payout_models.PayoutCreateResult)
        self.router.add_api_route(
                "/{payout_id}",
                self.get_payout,
                methods=["GET"],
                response_model=payout_models.PayoutRead)
        self.router.add_api_route(
                "/{payout_id}/status",
                self.update_payout_status,
                methods=["PATCH"],
                response_model=payout_models.PayoutRead)
        self.router.add_api_route(
                "/{payout_id}",
                self.delete_payout,
                methods=["DELETE"])

    async def get_teachers_summary(
        self,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payout_service: Annotated[PayoutService, Depends(PayoutService)]
    ) -> Any:
        return await payout_service.get_teachers_summary(organization_id)

    async def preview_payout(
        self,
        teacher_id: UUID,
        period_start: AwareDatetime,
        period_end: AwareDatetime,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payout_service: Annotated[PayoutService, Depends(PayoutService)]
    ) -> Any:
        """
        Qualifying lessons and totals for the period, without saving anything.
        """
        return await payout_service.preview_payout(teacher_id, organization_id, period_start, period_end)

    async def get_teacher_lessons(
        self,
        teacher_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payout_service: Annotated[PayoutService, Depends(PayoutService)],
        day: Annotated[date | None, Query(description="A single day in the organization timezone")] = None,
        range_start: Annotated[AwareDatetime | None, Query()] = None,
        range_end: Annotated[AwareDatetime | None, Query()] = None
    ) -> Any:
        """
        The teacher's lessons for a day or a range, annotated with payout eligibility.
        """
        if day is not None:
            return await payout_service.get_lessons_for_day(teacher_id, organization_id, day)
        if range_start is None or range_end is None:
            raise InvalidPeriodError("Pass either 'day' or both 'range_start' and 'range_end'.")
        return await payout_service.get_lessons_for_range(teacher_id, organization_id, range_start, range_end)

    async def list_payouts(
        self,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payout_service: Annotated[PayoutService, Depends(PayoutService)],
        teacher_id: Annotated[UUID | None, Query(description="Optional filter for Teacher ID")] = None,
        payout_status: Annotated[PayoutStatusEnum | None, Query(alias="status")] = None,
        date_from: Annotated[AwareDatetime | None, Query()] = None,
        date_to: Annotated[AwareDatetime | None, Query()] = None
    ) -> Any:
        return await payout_service.list_payouts(
            organization_id,
            teacher_id=teacher_id,
            status=payout_status,
            date_from=date_from,
            date_to=date_to
        )

    async def create_payout(
        self,
        payout_data: payout_models.PayoutCreate,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payout_service: Annotated[PayoutService, Depends(PayoutService)]
    ) -> Any:
        return await payout_service.create_payout(payout_data, organization_id)

    async def get_payout(
        self,
        payout_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payout_service: Annotated[PayoutService, Depends(PayoutService)]
    ) -> Any:
        return await payout_service.get_payout(payout_id, organization_id)

    async def update_payout_status(
        self,
        payout_id: UUID,
        update: payout_models.PayoutStatusUpdate,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payout_service: Annotated[PayoutService, Depends(PayoutService)]
    ) -> Any:
        """
        Moves the payout through its lifecycle. PAID and CANCELLED are final.
        """
        return await payout_service.update_payout_status(payout_id, organization_id, update.status, update.notes)

    async def delete_payout(
        self,
        payout_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payout_service: Annotated[PayoutService, Depends(PayoutService)]
    ):
        """
        Deletes a payout. Only PENDING payouts can be deleted.
        """
        await payout_service.delete_payout(payout_id, organization_id)
        return {"message": "Payout deleted successfully."}

# Instantiate the class and export its router
payouts_api = PayoutsAPI()
router = payouts_api.router
