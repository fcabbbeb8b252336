'''
API endpoints for the billing side of the lesson lifecycle.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from pydantic import AwareDatetime

from ..models import payment as payment_models
from ..models import policy as policy_models
from ..services.cancellation_service import CancellationService
from ..services.payment_service import PaymentService
from .deps import get_organization_id

class LessonsAPI:
    """
    A class to encapsulate lesson completion and cancellation endpoints.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/lessons",
            tags=["Lessons"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/cancellation-fees",
                self.apply_cancellation_fees,
                methods=["POST"],
                response_model=list[policy_models.LessonCancellationResult])
        self.router.add_api_route(
                "/{lesson_id}/complete",
                self.complete_lesson,
                methods=["POST"],
                response_model=payment_models.LessonCompletionResult)
        self.router.add_api_route(
                "/{lesson_id}/uncomplete",
                self.uncomplete_lesson,
                methods=["POST"],
                response_model=payment_models.LessonCompletionResult)
        self.router.add_api_route(
                "/{lesson_id}/cancel",
                self.cancel_lesson,
                methods=["POST"],
                response_model=policy_models.LessonCancellationResult)
        self.router.add_api_route(
                "/{lesson_id}/cancellation-fee-preview",
                self.preview_cancellation_fee,
                methods=["GET"],
                response_model=policy_models.CancellationFeeDecision)

    async def complete_lesson(
        self,
        lesson_id: UUID,
        completion: payment_models.LessonComplete,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        """
        Marks the lesson COMPLETED, creates its payment and charges the student.
        """
        return await payment_service.complete_lesson(lesson_id, organization_id, completion.completed_at)

    async def uncomplete_lesson(
        self,
        lesson_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        payment_service: Annotated[PaymentService, Depends(PaymentService)]
    ) -> Any:
        return await payment_service.uncomplete_lesson(lesson_id, organization_id)

    async def cancel_lesson(
        self,
        lesson_id: UUID,
        cancellation: policy_models.LessonCancel,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        cancellation_service: Annotated[CancellationService, Depends(CancellationService)]
    ) -> Any:
        """
        Cancels the lesson and charges a late-cancellation fee when the policy applies.
        """
        return await cancellation_service.cancel_lesson(
            lesson_id, organization_id, cancellation.cancelled_at, cancellation.reason
        )

    async def preview_cancellation_fee(
        self,
        lesson_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        cancellation_service: Annotated[CancellationService, Depends(CancellationService)],
        cancelled_at: Annotated[AwareDatetime | None, Query(description="Defaults to now")] = None
    ) -> Any:
        return await cancellation_service.preview_cancellation_fee(lesson_id, organization_id, cancelled_at)

    async def apply_cancellation_fees(
        self,
        lesson_ids: list[UUID],
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        cancellation_service: Annotated[CancellationService, Depends(CancellationService)]
    ) -> Any:
        """
        Charges outstanding fees for already-cancelled lessons, all or nothing.
        """
        return await cancellation_service.apply_cancellation_fees(lesson_ids, organization_id)

# Instantiate the class and export its router
lessons_api = LessonsAPI()
router = lessons_api.router
