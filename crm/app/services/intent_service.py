"""
Wealth CRM Workflow Intent Service
Saga bookkeeping around external calls made by the deal workflow
"""

from typing import List, Optional
from uuid import UUID
from datetime import datetime, timedelta, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
import structlog

from ..models.intents import WorkflowIntent, IntentStatus

logger = structlog.get_logger()


class IntentService:
    """Records intents before external calls and settles them afterwards"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(self, deal_id: UUID, action: str) -> WorkflowIntent:
        """Persist a PENDING intent; committed before the external call"""
        intent = WorkflowIntent(deal_id=deal_id, action=action, status=IntentStatus.PENDING.value)
        self.db.add(intent)
        await self.db.commit()
        logger.debug("Workflow intent recorded", intent_id=str(intent.id), deal_id=str(deal_id), action=action)
        return intent

    def fulfil(self, intent: WorkflowIntent, external_reference: Optional[str] = None):
        """Mark fulfilled; committed together with the deal state write"""
        intent.status = IntentStatus.FULFILLED.value
        intent.external_reference = external_reference
        intent.settled_at = datetime.now(timezone.utc)

    async def fail(self, intent: WorkflowIntent, error_message: str):
        """Mark failed with the collaborator's error"""
        intent.status = IntentStatus.FAILED.value
        intent.error_message = error_message
        intent.settled_at = datetime.now(timezone.utc)
        await self.db.commit()
        logger.warning(
            "Workflow intent failed",
            intent_id=str(intent.id),
            deal_id=str(intent.deal_id),
            action=intent.action,
            error=error_message
        )

    async def list_unreconciled_intents(
        self,
        older_than: timedelta = timedelta(minutes=15),
        now: Optional[datetime] = None
    ) -> List[WorkflowIntent]:
        """
        Intents still PENDING after ``older_than``.

        These are external calls whose outcome never reached the deal row,
        for example a sent KYC email followed by a lost conditional write.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = (now - older_than).astimezone(timezone.utc)
        result = await self.db.execute(
            select(WorkflowIntent)
            .where(and_(
                WorkflowIntent.status == IntentStatus.PENDING.value,
                WorkflowIntent.created_at <= cutoff
            ))
            .order_by(WorkflowIntent.created_at)
        )
        return list(result.scalars().all())
