"""
Wealth CRM Deal Service
Deal records, pipeline views and serialization
"""

from typing import Dict, Any, List, Optional
from uuid import UUID
from decimal import Decimal
from datetime import date
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm import selectinload
import structlog

from ..models.deals import Deal, DealStage, KYCStatus
from ..models.contacts import Contact, Company
from ..core.errors import NotFoundError
from .nats_client import publish_event_safely

logger = structlog.get_logger()


def document_to_dict(document) -> Dict[str, Any]:
    return {
        "id": str(document.id),
        "file_name": document.file_name,
        "file_type": document.file_type,
        "status": document.status,
        "e_signature_status": document.e_signature_status,
        "archived_at": document.archived_at.isoformat() if document.archived_at else None,
        "archive_location": document.archive_location,
    }


def deal_to_dict(deal: Deal) -> Dict[str, Any]:
    """Serialize a deal loaded with contact, company and documents"""
    return {
        "id": str(deal.id),
        "name": deal.name,
        "stage": deal.stage,
        "kyc_status": deal.kyc_status,
        "deal_value": float(deal.deal_value) if deal.deal_value is not None else None,
        "currency": deal.currency,
        "expected_close_date": deal.expected_close_date.isoformat() if deal.expected_close_date else None,
        "due_diligence_notes": deal.due_diligence_notes,
        "ai_analysis": deal.ai_analysis,
        "owner_user_id": str(deal.owner_user_id) if deal.owner_user_id else None,
        "contact": {
            "id": str(deal.contact.id),
            "full_name": deal.contact.full_name,
            "email": deal.contact.email,
        } if deal.contact else None,
        "company": {
            "id": str(deal.company.id),
            "name": deal.company.name,
        } if deal.company else None,
        "documents": [document_to_dict(document) for document in deal.documents],
        "created_at": deal.created_at.isoformat() if deal.created_at else None,
        "updated_at": deal.updated_at.isoformat() if deal.updated_at else None,
    }


class DealService:
    """Service for deal records and pipeline views"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_deal(
        self,
        name: str,
        contact_id: Optional[UUID] = None,
        company_id: Optional[UUID] = None,
        owner_user_id: Optional[UUID] = None,
        deal_value: Optional[Decimal] = None,
        currency: str = "USD",
        expected_close_date: Optional[date] = None
    ) -> Deal:
        """Create a deal in NEW_LEAD with KYC PENDING"""

        if contact_id and not await self.db.get(Contact, contact_id):
            raise NotFoundError(f"Contact {contact_id} not found")
        if company_id and not await self.db.get(Company, company_id):
            raise NotFoundError(f"Company {company_id} not found")

        deal = Deal(
            name=name,
            stage=DealStage.NEW_LEAD.value,
            kyc_status=KYCStatus.PENDING.value,
            contact_id=contact_id,
            company_id=company_id,
            owner_user_id=owner_user_id,
            deal_value=deal_value,
            currency=currency,
            expected_close_date=expected_close_date,
        )
        self.db.add(deal)
        await self.db.commit()

        deal = await self.get_deal(deal.id)
        logger.info("Deal created", deal_id=str(deal.id), name=name, contact_id=str(contact_id) if contact_id else None)
        await publish_event_safely("deals.created", {
            "deal_id": str(deal.id),
            "name": deal.name,
            "stage": deal.stage,
            "contact_id": str(contact_id) if contact_id else None,
        })
        return deal

    async def get_deal(self, deal_id: UUID) -> Deal:
        result = await self.db.execute(
            self._deal_query()
            .where(Deal.id == deal_id)
            .execution_options(populate_existing=True)
        )
        deal = result.scalar_one_or_none()
        if not deal:
            raise NotFoundError(f"Deal {deal_id} not found")
        return deal

    async def list_deals(
        self,
        stage: Optional[DealStage] = None,
        owner_user_id: Optional[UUID] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Deal]:
        query = self._deal_query().order_by(Deal.created_at.desc())
        if stage:
            query = query.where(Deal.stage == DealStage(stage).value)
        if owner_user_id:
            query = query.where(Deal.owner_user_id == owner_user_id)

        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def update_details(self, deal_id: UUID, **changes) -> Deal:
        """Edit descriptive fields; stage and KYC status go through the workflow"""
        editable = {"name", "deal_value", "currency", "expected_close_date", "due_diligence_notes", "ai_analysis"}
        unknown = set(changes) - editable
        if unknown:
            raise ValueError(f"Fields not editable here: {', '.join(sorted(unknown))}")

        deal = await self.get_deal(deal_id)
        for name, value in changes.items():
            setattr(deal, name, value)
        await self.db.commit()

        logger.info("Deal updated", deal_id=str(deal_id), fields=sorted(changes))
        return await self.get_deal(deal_id)

    async def get_pipeline(self, owner_user_id: Optional[UUID] = None) -> Dict[str, Any]:
        """Deals grouped by stage with counts and total value"""

        deals = await self.list_deals(owner_user_id=owner_user_id, limit=10000)

        stages: Dict[str, Dict[str, Any]] = {
            stage.value: {"count": 0, "total_value": 0.0, "deals": []}
            for stage in DealStage
        }
        for deal in deals:
            bucket = stages[deal.stage]
            bucket["count"] += 1
            bucket["total_value"] += float(deal.deal_value or 0)
            bucket["deals"].append({
                "id": str(deal.id),
                "name": deal.name,
                "kyc_status": deal.kyc_status,
                "deal_value": float(deal.deal_value) if deal.deal_value is not None else None,
                "contact_name": deal.contact.full_name if deal.contact else None,
            })

        open_value = sum(
            bucket["total_value"] for stage, bucket in stages.items()
            if stage not in (DealStage.ONBOARDED.value, DealStage.REJECTED.value)
        )

        return {
            "stages": stages,
            "total_deals": len(deals),
            "open_pipeline_value": open_value,
        }

    @staticmethod
    def _deal_query():
        return select(Deal).options(
            selectinload(Deal.contact),
            selectinload(Deal.company),
            selectinload(Deal.documents)
        )
