"""
Wealth CRM Communication Service
Outbound email delivery with open tracking
"""

import uuid
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import structlog
import httpx

from ..models.communications import Communication, CommunicationType, CommunicationStatus
from ..core.config import settings
from ..core.errors import DeliveryError

logger = structlog.get_logger()


def tracking_pixel_url(tracking_id: str) -> str:
    return f"{settings.app_url.rstrip('/')}{settings.api_v1_prefix}/tracking/pixel/{tracking_id}"


def add_tracking_pixel(content: str, tracking_id: str) -> str:
    """Append a 1x1 open-tracking image to an HTML or plain body"""
    pixel = (
        f'<img src="{tracking_pixel_url(tracking_id)}" width="1" height="1" '
        f'alt="" style="display:none" />'
    )
    if "</body>" in content:
        return content.replace("</body>", f"{pixel}</body>")
    return f"{content}\n{pixel}"


class CommunicationService:
    """Notification collaborator: sends email and records every attempt"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def send_email(
        self,
        to_email: str,
        subject: str,
        content: str,
        communication_type: CommunicationType = CommunicationType.GENERAL,
        deal_id: Optional[uuid.UUID] = None,
        contact_id: Optional[uuid.UUID] = None,
        booking_id: Optional[uuid.UUID] = None,
        attachments: Optional[List[Dict[str, str]]] = None
    ) -> Communication:
        """
        Send an email and persist the attempt.

        The Communication row is committed whether or not delivery works, so
        failed sends stay on record. Raises DeliveryError on failure.
        """
        tracking_id = uuid.uuid4().hex
        tracked_content = add_tracking_pixel(content, tracking_id)

        communication = Communication(
            deal_id=deal_id,
            contact_id=contact_id,
            booking_id=booking_id,
            type=communication_type.value,
            recipient=to_email,
            subject=subject,
            content=tracked_content,
            status=CommunicationStatus.DRAFT.value,
            tracking_id=tracking_id,
            open_count=0,
        )
        self.db.add(communication)

        try:
            delivery = await self._deliver_email(to_email, subject, tracked_content, tracking_id, attachments)
        except DeliveryError as e:
            communication.status = CommunicationStatus.FAILED.value
            communication.error_message = e.message
            await self.db.commit()
            logger.error("Email delivery failed", to_email=to_email, subject=subject, error=e.message)
            raise

        communication.status = CommunicationStatus.SENT.value
        communication.provider = delivery["provider"]
        communication.provider_message_id = delivery.get("provider_message_id")
        communication.sent_at = datetime.now(timezone.utc)
        await self.db.commit()

        logger.info(
            "Email sent",
            communication_id=str(communication.id),
            to_email=to_email,
            type=communication.type,
            provider=communication.provider
        )
        return communication

    async def record_open(self, tracking_id: str) -> Optional[Communication]:
        """Register an open from the tracking pixel"""
        result = await self.db.execute(
            select(Communication).where(Communication.tracking_id == tracking_id)
        )
        communication = result.scalar_one_or_none()
        if not communication:
            return None

        now = datetime.now(timezone.utc)
        if communication.opened_at is None:
            communication.opened_at = now
        communication.last_opened_at = now
        communication.open_count = (communication.open_count or 0) + 1
        await self.db.commit()

        logger.info("Email opened", tracking_id=tracking_id, open_count=communication.open_count)
        return communication

    async def _deliver_email(
        self,
        to_email: str,
        subject: str,
        content: str,
        tracking_id: str,
        attachments: Optional[List[Dict[str, str]]] = None
    ) -> Dict[str, Any]:
        """Deliver through the configured HTTP email API"""

        if not settings.email_api_url:
            # No provider configured: log-only delivery for development
            logger.info("Email delivery simulated", to_email=to_email, subject=subject, tracking_id=tracking_id)
            return {"provider": "log", "provider_message_id": f"log_{tracking_id}"}

        payload = {
            "from": settings.email_from,
            "to": [to_email],
            "subject": subject,
            "html": content,
            "attachments": attachments or [],
            "headers": {"X-Tracking-Id": tracking_id},
        }
        headers = {}
        if settings.email_api_key:
            headers["Authorization"] = f"Bearer {settings.email_api_key}"

        try:
            async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
                response = await client.post(settings.email_api_url, json=payload, headers=headers)
                response.raise_for_status()
                body = response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                f"Email provider rejected message to {to_email}: HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryError(f"Email provider unreachable for {to_email}: {e}") from e

        return {"provider": "http", "provider_message_id": body.get("id")}
