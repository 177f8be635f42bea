"""
Wealth CRM API Dependencies
Collaborators injected into routers, overridable in tests
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..services.communication_service import CommunicationService
from ..services.archive_service import ArchiveService


async def get_notifier(db: AsyncSession = Depends(get_db)) -> CommunicationService:
    return CommunicationService(db)


async def get_archiver() -> ArchiveService:
    return ArchiveService()
