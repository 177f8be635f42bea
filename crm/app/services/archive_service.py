"""
Wealth CRM Archive Service
Pushes verified KYC documents to the document archive (drive)
"""

from typing import Dict, List
from uuid import UUID
import structlog
import httpx

from ..core.config import settings
from ..core.errors import ArchiveError

logger = structlog.get_logger()


class ArchiveService:
    """Archive collaborator: archive_documents(deal_id, document_ids) -> location"""

    async def archive_documents(self, deal_id: UUID, document_ids: List[UUID]) -> str:
        """Archive documents for a deal and return the archive folder location"""

        if not document_ids:
            raise ArchiveError(f"No documents supplied for deal {deal_id}")

        if not settings.archive_api_url:
            location = f"{settings.archive_folder_base_url.rstrip('/')}/deal-{deal_id}"
            logger.info(
                "Document archive simulated",
                deal_id=str(deal_id),
                document_count=len(document_ids),
                location=location
            )
            return location

        payload = {
            "deal_id": str(deal_id),
            "document_ids": [str(document_id) for document_id in document_ids],
        }
        headers: Dict[str, str] = {}
        if settings.archive_api_key:
            headers["Authorization"] = f"Bearer {settings.archive_api_key}"

        try:
            async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
                response = await client.post(settings.archive_api_url, json=payload, headers=headers)
                response.raise_for_status()
                location = response.json().get("location")
        except httpx.HTTPStatusError as e:
            raise ArchiveError(
                f"Archive provider rejected deal {deal_id}: HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ArchiveError(f"Archive provider unreachable for deal {deal_id}: {e}") from e

        if not location:
            raise ArchiveError(f"Archive provider returned no location for deal {deal_id}")

        logger.info("Documents archived", deal_id=str(deal_id), document_count=len(document_ids), location=location)
        return location
