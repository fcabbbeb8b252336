'''
API endpoints for student balances and the balance ledger.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, status, Query
from pydantic import AwareDatetime

from ..common.config import settings
from ..database.db_enums import BalanceTransactionTypeEnum
from ..models import ledger as ledger_models
from ..services.ledger_service import LedgerService
from .deps import get_organization_id, get_current_user_id

class BalancesAPI:
    """
    A class to encapsulate endpoints for student balances.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/balances",
            tags=["Balances"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
                "/students/{student_id}",
                self.get_student_balance,
                methods=["GET"],
                response_model=ledger_models.StudentBalanceRead)
        self.router.add_api_route(
                "/students/{student_id}/history",
                self.get_history,
                methods=["GET"],
                response_model=ledger_models.TransactionHistory)
        self.router.add_api_route(
                "/students/{student_id}/adjustments",
                self.adjust_balance,
                methods=["POST"],
                status_code=status.HTTP_201_CREATED,
                response_model=ledger_models.BalanceUpdateResult)
        self.router.add_api_route(
                "/students/{student_id}/reconcile",
                self.reconcile_balance,
                methods=["POST"],
                response_model=ledger_models.BalanceReconciliation)

    async def get_student_balance(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        ledger_service: Annotated[LedgerService, Depends(LedgerService)]
    ) -> Any:
        """
        Current balance of a student with the latest transactions.
        """
        return await ledger_service.get_student_balance(student_id, organization_id)

    async def get_history(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        ledger_service: Annotated[LedgerService, Depends(LedgerService)],
        limit: Annotated[int, Query(ge=1, le=500)] = settings.DEFAULT_HISTORY_LIMIT,
        offset: Annotated[int, Query(ge=0)] = 0,
        type: Annotated[BalanceTransactionTypeEnum | None, Query(description="Optional filter by transaction type")] = None,
        date_from: Annotated[AwareDatetime | None, Query()] = None,
        date_to: Annotated[AwareDatetime | None, Query()] = None
    ) -> Any:
        """
        Paginated transaction history, newest first.
        """
        return await ledger_service.get_history(
            student_id,
            limit=limit,
            offset=offset,
            tx_type=type,
            date_from=date_from,
            date_to=date_to,
            organization_id=organization_id
        )

    async def adjust_balance(
        self,
        student_id: UUID,
        adjustment: ledger_models.BalanceAdjustmentCreate,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        user_id: Annotated[UUID, Depends(get_current_user_id)],
        ledger_service: Annotated[LedgerService, Depends(LedgerService)]
    ) -> Any:
        """
        Manual balance correction. Positive credits the student, negative debits.
        """
        return await ledger_service.adjust_balance(
            student_id,
            adjustment.amount,
            adjustment.description,
            performed_by_user_id=user_id,
            organization_id=organization_id
        )

    async def reconcile_balance(
        self,
        student_id: UUID,
        organization_id: Annotated[UUID, Depends(get_organization_id)],
        ledger_service: Annotated[LedgerService, Depends(LedgerService)]
    ) -> Any:
        """
        Re-derives the balance from the ledger and repairs the cached value if needed.
        """
        return await ledger_service.reconcile_balance(student_id, organization_id)

# Instantiate the class and export its router
balances_api = BalancesAPI()
router = balances_api.router
