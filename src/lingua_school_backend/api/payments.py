'''
API endpoints for student payments and the debtor list.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, status, Query
from pydantic import AwareDatetime

from ..database.db_enums import PaymentStatusEnum
from ..models import payment as payment_models
from ..services.payment_service import PaymentService
from .deps import get_organization_id

class PaymentsAPI:
    """
    A class to encapsulate endpoints for student payments.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/payments",
            tags=["Payments"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/debtors",
                self.list_debtors,
                methods=["GET"],
                response_model=list[payment_models.DebtorRead])
        self.router.add_api_route(
                "/students/{student_id}",
                self.list_student_payments,
                methods=["GET"],
                response_model=list[payment_models.PaymentRead])
        self.router.add_api_route(
                "/",
                self.create_manual_payment,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=payment_models.PaymentRead)
        self.router.add_api_route(
                "/{payment_id}/complete",
                self.complete_payment,
                methods=["PATCH"],
                response_model=payment_models.PaymentRead)
        self.router.add_api_route(
                "/{payment_id}/cancel",
                self.cancel_payment,
                methods=["PATCH"],
                response_model=payment_models.PaymentRead)

    async def list_debtors(
        self,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payment_service: Annotated[PaymentService, Depends(PaymentService)],
        as_of: Annotated[AwareDatetime | None, Query(description="Defaults to now")] = None
    ) -> Any:
        """
        Students with overdue pending payments, largest debt first.
        """
        return await payment_service.get_debtors(organization_id, as_of)

    async def list_student_payments(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payment_service: Annotated[PaymentService, Depends(PaymentService)],
        payment_status: Annotated[PaymentStatusEnum | None, Query(alias="status", description="Optional filter by status")] = None
    ) -> Any:
        return await payment_service.list_student_payments(student_id, organization_id, payment_status)

    async def create_manual_payment(
        self,
        payment_data: payment_models.ManualPaymentCreate,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        return await payment_service.create_manual_payment(
            payment_data.student_id, organization_id, payment_data.amount, payment_data.notes
        )

    async def complete_payment(
        self,
        payment_id: UUID,
        completion: payment_models.PaymentComplete,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        """
        Marks a pending payment as paid and credits the student's balance.
        """
        return await payment_service.complete_payment(payment_id, organization_id, completion.paid_at)

    async def cancel_payment(
        self,
        payment_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        return await payment_service.cancel_payment(payment_id, organization_id)

# Instantiate the class and export its router
payments_api = PaymentsAPI()
router = payments_api.router
