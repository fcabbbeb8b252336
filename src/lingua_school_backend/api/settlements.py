'''
API endpoints for student settlements.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, status

from ..models import settlement as settlement_models
from ..services.settlement_service import SettlementService
from .deps import get_organization_id

class SettlementsAPI:
    """
    A class to encapsulate endpoints for settlements.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/settlements",
            tags=["Settlements"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/overview",
                self.get_overview,
                methods=["GET"],
                response_model=list[settlement_models.StudentSettlementOverview])
        self.router.add_api_route(
                "/preview",
                self.preview_settlement,
                methods=["POST"],
                response_model=settlement_models.SettlementPreview)
        self.router.add_api_route(
                "/",
                self.create_settlement,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=settlement_models.SettlementRead)
        self.router.add_api_route(
                "/students/{student_id}",
                self.list_student_settlements,
                methods=["GET"],
                response_model=list[settlement_models.SettlementRead])
        self.router.add_api_route(
                "/students/{student_id}/last-date",
                self.get_last_settlement_date,
                methods=["GET"])
        self.router.add_api_route(
                "/students/{student_id}/forecast",
                self.get_balance_forecast,
                methods=["GET"],
                response_model=settlement_models.BalanceForecast)
        self.router.add_api_route(
                "/{settlement_id}",
                self.get_settlement,
                methods=["GET"],
                response_model=settlement_models.SettlementRead)
        self.router.add_api_route(
                "/{settlement_id}",
                self.delete_settlement,
                methods=["DELETE"])

    async def get_overview(
        self,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        settlement_service: Annotated[SettlementService, Depends(SettlementService)]
    ) -> Any:
        """
        Active students with balance, last settlement and pending payments.
        """
        return await settlement_service.get_students_with_balance(organization_id)

    async def preview_settlement(
        self,
        period: settlement_models.SettlementPeriod,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        settlement_service: Annotated[SettlementService, Depends(SettlementService)]
    ) -> Any:
        """
        Computes a settlement for the period without saving it.
        """
        return await settlement_service.preview_settlement(
            period.student_id, organization_id, period.period_start, period.period_end
        )

    async def create_settlement(
        self,
        settlement_data: settlement_models.SettlementCreate,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        settlement_service: Annotated[SettlementService, Depends(SettlementService)]
    ) -> Any:
        return await settlement_service.create_settlement(
            settlement_data.student_id,
            organization_id,
            settlement_data.period_start,
            settlement_data.period_end,
            settlement_data.notes
        )

    async def list_student_settlements(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        settlement_service: Annotated[SettlementService, Depends(SettlementService)]
    ) -> Any:
        return await settlement_service.list_student_settlements(student_id, organization_id)

    async def get_last_settlement_date(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        settlement_service: Annotated[SettlementService, Depends(SettlementService)]
    ):
        last_date = await settlement_service.get_last_settlement_date(student_id, organization_id)
        return {"student_id": student_id, "last_settlement_date": last_date}

    async def get_balance_forecast(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        settlement_service: Annotated[SettlementService, Depends(SettlementService)]
    ) -> Any:
        return await settlement_service.get_balance_forecast(student_id, organization_id)

    async def get_settlement(
        self,
        settlement_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        settlement_service: Annotated[SettlementService, Depends(SettlementService)]
    ) -> Any:
        return await settlement_service.get_settlement(settlement_id, organization_id)

    async def delete_settlement(
        self,
        settlement_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        settlement_service: Annotated[SettlementService, Depends(SettlementService)]
    ):
        """
        Deletes a settlement. Only the student's most recent one can be deleted.
        """
        await settlement_service.delete_settlement(settlement_id, organization_id)
        return {"message": "Settlement deleted successfully."}

# Instantiate the class and export its router
settlements_api = SettlementsAPI()
router = settlements_api.router
