'''
API endpoints for student billing policies and teacher payout settings.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from pydantic import AwareDatetime

from ..models import policy as policy_models
from ..services.cancellation_service import CancellationService
from ..services.policy_service import PolicyService
from .deps import get_organization_id

class PoliciesAPI:
    """
    A class to encapsulate endpoints for billing policies.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/policies",
            tags=["Billing Policies"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/students/{student_id}",
                self.get_student_policy,
                methods=["GET"],
                response_model=policy_models.StudentBillingPolicy)
        self.router.add_api_route(
                "/students/{student_id}",
                self.update_student_policy,
                methods=["PATCH"],
                response_model=policy_models.PolicyUpdateResult)
        self.router.add_api_route(
                "/students/{student_id}/cancellation-limit",
                self.get_cancellation_limit,
                methods=["GET"],
                response_model=policy_models.CancellationLimitStatus)
        self.router.add_api_route(
                "/teachers/{teacher_id}",
                self.get_teacher_settings,
                methods=["GET"],
                response_model=policy_models.TeacherPayoutSettings)
        self.router.add_api_route(
                "/teachers/{teacher_id}",
                self.update_teacher_settings,
                methods=["PATCH"],
                response_model=policy_models.TeacherPayoutSettings)

    async def get_student_policy(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        policy_service: Annotated[PolicyService, Depends(PolicyService)]
    ) -> Any:
        return await policy_service.get_policy(student_id, organization_id)

    async def update_student_policy(
        self,
        student_id: UUID,
        changes: policy_models.StudentBillingPolicyUpdate,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        policy_service: Annotated[PolicyService, Depends(PolicyService)]
    ) -> Any:
        """
        Partially updates a student's billing policy.
        Changing a due-date rule re-dates all of the student's pending payments.
        """
        return await policy_service.update_policy(student_id, organization_id, changes)

    async def get_cancellation_limit(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        cancellation_service: Annotated[CancellationService, Depends(CancellationService)],
        as_of: Annotated[AwareDatetime | None, Query(description="Defaults to now")] = None
    ) -> Any:
        """
        Advisory check of the student's cancellation allowance.
        """
        return await cancellation_service.check_cancellation_limit(student_id, organization_id, as_of)

    async def get_teacher_settings(
        self,
        teacher_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        policy_service: Annotated[PolicyService, Depends(PolicyService)]
    ) -> Any:
        return await policy_service.get_teacher_payout_settings(teacher_id, organization_id)

    async def update_teacher_settings(
        self,
        teacher_id: UUID,
        changes: policy_models.TeacherPayoutSettingsUpdate,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        policy_service: Annotated[PolicyService, Depends(PolicyService)]
    ) -> Any:
        return await policy_service.update_teacher_payout_settings(teacher_id, organization_id, changes)

# Instantiate the class and export its router
policies_api = PoliciesAPI()
router = policies_api.router
