"""
Wealth CRM Deal API Endpoints
Deal records, pipeline and onboarding workflow
"""

from typing import Optional
from uuid import UUID
from datetime import date
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
import structlog

from ..core.database import get_db
from ..core.errors import CRMError, to_http_exception
from ..models.deals import DealStage, KYCStatus
from ..services.deal_service import DealService, deal_to_dict
from ..services.deal_workflow import (
    DealWorkflow,
    NEXT_STAGE,
    PROGRESSION_REQUIREMENTS,
    STAGE_DESCRIPTIONS,
    STAGE_TRANSITIONS,
)
from .dependencies import get_notifier, get_archiver

logger = structlog.get_logger()
router = APIRouter(prefix="/deals", tags=["deals"])


class CreateDealRequest(BaseModel):
    """Request model for creating a deal"""
    name: str = Field(..., min_length=1, max_length=200)
    contact_id: Optional[UUID] = None
    company_id: Optional[UUID] = None
    owner_user_id: Optional[UUID] = None
    deal_value: Optional[Decimal] = Field(None, ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    expected_close_date: Optional[date] = None


class UpdateDealRequest(BaseModel):
    """Request model for editing descriptive deal fields"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    deal_value: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    expected_close_date: Optional[date] = None
    due_diligence_notes: Optional[str] = None
    ai_analysis: Optional[str] = None


class SetStageRequest(BaseModel):
    """Request model for a manual stage override"""
    stage: DealStage


class UpdateKYCRequest(BaseModel):
    """Request model for a KYC decision"""
    kyc_status: KYCStatus


class RejectDealRequest(BaseModel):
    """Request model for rejecting a deal"""
    reason: Optional[str] = Field(None, max_length=500)


def _workflow_response(result, message: Optional[str] = None):
    return {
        "status": "success" if result.changed else "unchanged",
        "message": message or result.message,
        "data": {**result.to_dict(), "deal": deal_to_dict(result.deal)}
    }


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_deal(
    request: CreateDealRequest,
    db: AsyncSession = Depends(get_db)
):
    """Create a deal in NEW_LEAD"""
    try:
        deal = await DealService(db).create_deal(**request.model_dump())
        return {
            "status": "success",
            "message": "Deal created",
            "data": deal_to_dict(deal)
        }

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("Deal creation failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create deal"
        )


@router.get("/")
async def list_deals(
    stage: Optional[DealStage] = Query(None, description="Filter by stage"),
    owner_user_id: Optional[UUID] = Query(None, description="Filter by owner"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db)
):
    """List deals, newest first"""
    try:
        deals = await DealService(db).list_deals(stage=stage, owner_user_id=owner_user_id, limit=limit, offset=offset)
        return {
            "status": "success",
            "data": {
                "deals": [deal_to_dict(deal) for deal in deals],
                "count": len(deals),
                "limit": limit,
                "offset": offset
            }
        }

    except Exception as e:
        logger.error("Deal listing failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list deals"
        )


@router.get("/pipeline")
async def get_pipeline(
    owner_user_id: Optional[UUID] = Query(None, description="Filter by owner"),
    db: AsyncSession = Depends(get_db)
):
    """Deals grouped by stage"""
    try:
        pipeline = await DealService(db).get_pipeline(owner_user_id=owner_user_id)
        return {"status": "success", "data": pipeline}

    except Exception as e:
        logger.error("Pipeline retrieval failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get pipeline"
        )


@router.get("/stages/definitions")
async def get_stage_definitions():
    """Stage definitions, allowed transitions and progression criteria"""
    stages = []
    for stage in DealStage:
        next_stage = NEXT_STAGE[stage]
        stages.append({
            "stage": stage.value,
            "description": STAGE_DESCRIPTIONS[stage],
            "next_stage": next_stage.value if next_stage else None,
            "allowed_transitions": sorted(target.value for target in STAGE_TRANSITIONS[stage]),
            "is_terminal": not STAGE_TRANSITIONS[stage],
            "progression_requirement": PROGRESSION_REQUIREMENTS.get(stage),
        })

    return {
        "status": "success",
        "data": {
            "stages": stages,
            "kyc_statuses": [kyc.value for kyc in KYCStatus],
        }
    }


@router.get("/{deal_id}")
async def get_deal(
    deal_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Get a deal with contact, company and documents"""
    try:
        deal = await DealService(db).get_deal(deal_id)
        return {"status": "success", "data": deal_to_dict(deal)}

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("Deal retrieval failed", deal_id=str(deal_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get deal"
        )


@router.patch("/{deal_id}")
async def update_deal(
    deal_id: UUID,
    request: UpdateDealRequest,
    db: AsyncSession = Depends(get_db)
):
    """Edit descriptive fields such as due diligence notes"""
    try:
        deal = await DealService(db).update_details(deal_id, **request.model_dump(exclude_unset=True))
        return {
            "status": "success",
            "message": "Deal updated",
            "data": deal_to_dict(deal)
        }

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error("Deal update failed", deal_id=str(deal_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update deal"
        )


@router.post("/{deal_id}/send-kyc")
async def send_kyc_request(
    deal_id: UUID,
    db: AsyncSession = Depends(get_db),
    notifier=Depends(get_notifier)
):
    """Email the KYC/AML request and move the deal into KYC"""
    try:
        result = await DealWorkflow(db, notifier=notifier).send_kyc_request(deal_id)
        return _workflow_response(result)

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("KYC request failed", deal_id=str(deal_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send KYC request"
        )


@router.post("/{deal_id}/archive-drive")
async def archive_verified_documents(
    deal_id: UUID,
    db: AsyncSession = Depends(get_db),
    archiver=Depends(get_archiver)
):
    """Archive verified KYC documents and move the deal to due diligence"""
    try:
        result = await DealWorkflow(db, archiver=archiver).archive_verified_documents(deal_id)
        return _workflow_response(result)

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("Document archive failed", deal_id=str(deal_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to archive documents"
        )


@router.post("/{deal_id}/auto-progress")
async def auto_progress_deal(
    deal_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Advance one stage when the current stage's criteria are met"""
    try:
        result = await DealWorkflow(db).auto_progress(deal_id)
        return _workflow_response(result)

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("Auto-progression failed", deal_id=str(deal_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to progress deal"
        )


@router.patch("/{deal_id}/stage")
async def set_deal_stage(
    deal_id: UUID,
    request: SetStageRequest,
    db: AsyncSession = Depends(get_db)
):
    """Manually override the deal stage"""
    try:
        result = await DealWorkflow(db).set_stage(deal_id, request.stage)
        return _workflow_response(result)

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error("Stage override failed", deal_id=str(deal_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update stage"
        )


@router.patch("/{deal_id}/kyc-status")
async def update_kyc_status(
    deal_id: UUID,
    request: UpdateKYCRequest,
    db: AsyncSession = Depends(get_db)
):
    """Record a KYC decision"""
    try:
        result = await DealWorkflow(db).update_kyc_status(deal_id, request.kyc_status)
        return _workflow_response(result)

    except CRMError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error("KYC status update failed", deal_id=str(deal_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update KYC status"
        )


@router.post("/{deal_id}/reject")
async def reject_deal(
    deal_id: UUID,
    request: RejectDealRequest,
    db: AsyncSession = Depends(get_db)
):
    """Close the deal as REJECTED"""
    try:
        result = await DealWorkflow(db).reject_deal(deal_id, reason=request.reason)
        return _workflow_response(result)

    except CRMError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error("Deal rejection failed", deal_id=str(deal_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reject deal"
        )
