"""
Wealth CRM Email Tracking Endpoints
"""

import base64
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
import structlog

from ..core.database import get_db
from ..services.communication_service import CommunicationService

logger = structlog.get_logger()
router = APIRouter(prefix="/tracking", tags=["tracking"])

# 1x1 transparent GIF
PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


@router.get("/pixel/{tracking_id}")
async def tracking_pixel(
    tracking_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Record an email open; always answers with the pixel"""
    try:
        communication = await CommunicationService(db).record_open(tracking_id)
        if communication is None:
            logger.debug("Unknown tracking id", tracking_id=tracking_id)
    except SQLAlchemyError as e:
        logger.warning("Email open not recorded", tracking_id=tracking_id, error=str(e))

    return Response(
        content=PIXEL_GIF,
        media_type="image/gif",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        }
    )
