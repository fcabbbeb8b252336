'''
Keeps the due dates of pending payments in line with each student's policy.
'''
from datetime import datetime
from typing import Optional, Annotated
from uuid import UUID
from zoneinfo import ZoneInfo

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..common.logger import log
from ..core.due_dates import compute_due_date, organization_zone
from ..database import models as db_models
from ..database.db_enums import PaymentStatusEnum
from ..database.engine import get_db_session, atomic


class DueDateService:
    def __init__(self, db: Annotated[AsyncSession, Depends(get_db_session)]):
        self.db = db

    async def zone_for(self, organization_id: UUID) -> ZoneInfo:
        """The organization's own timezone, falling back to the configured default."""
        organization = await self.db.get(db_models.Organizations, organization_id)
        return organization_zone(organization.timezone if organization else None)

    async def due_date_for(self, student: db_models.Students, reference: datetime, policy=None) -> datetime:
        zone = await self.zone_for(student.organization_id)
        return compute_due_date(reference, policy or student, zone)

    async def recalculate_pending_due_dates(self, student_id: UUID, new_policy=None) -> int:
        """
        Recomputes due_at for every PENDING payment of the student.

        The clock of a lesson payment starts when the lesson was completed,
        any other payment's clock starts at its creation. Returns the number
        of payments whose due date changed.
        """
        student = await self.db.get(db_models.Students, student_id)
        if student is None:
            return 0
        policy = new_policy or student
        zone = await self.zone_for(student.organization_id)

        async with atomic(self.db):
            stmt = select(db_models.Payments).options(
                selectinload(db_models.Payments.lesson)
            ).where(
                db_models.Payments.student_id == student_id,
                db_models.Payments.status == PaymentStatusEnum.PENDING.value
            )
            payments = (await self.db.execute(stmt)).scalars().all()

            updated = 0
            for payment in payments:
                reference: Optional[datetime] = None
                if payment.lesson is not None and payment.lesson.completed_at is not None:
                    reference = payment.lesson.completed_at
                else:
                    reference = payment.created_at
                new_due_at = compute_due_date(reference, policy, zone)
                if payment.due_at != new_due_at:
                    payment.due_at = new_due_at
                    updated += 1
            await self.db.flush()

        log.info(f"Recalculated due dates of {updated} of {len(payments)} pending payments for student {student_id}.")
        return updated
