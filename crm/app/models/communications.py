"""
Wealth CRM Communication Models
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Integer, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid
from enum import Enum

from ..core.database import Base


class CommunicationType(str, Enum):
    """Communication type enumeration"""
    KYC_REQUEST = "kyc_request"
    BOOKING_CONFIRMATION = "booking_confirmation"
    BOOKING_HOST_NOTICE = "booking_host_notice"
    GENERAL = "general"


class CommunicationStatus(str, Enum):
    """Communication status enumeration"""
    DRAFT = "draft"
    SENT = "sent"
    FAILED = "failed"


class Communication(Base):
    """Outbound email record with open tracking"""
    __tablename__ = "communications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id"), index=True)
    contact_id = Column(Uuid, ForeignKey("contacts.id"), index=True)
    booking_id = Column(Uuid, ForeignKey("bookings.id"))
    type = Column(String(30), nullable=False, default=CommunicationType.GENERAL.value)
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255))
    content = Column(Text)
    status = Column(String(20), nullable=False, default=CommunicationStatus.DRAFT.value)
    tracking_id = Column(String(64), unique=True, index=True, nullable=False)
    provider = Column(String(50))
    provider_message_id = Column(String(255))
    error_message = Column(Text)
    sent_at = Column(DateTime(timezone=True))
    opened_at = Column(DateTime(timezone=True))
    last_opened_at = Column(DateTime(timezone=True))
    open_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    deal = relationship("Deal", backref="communications")
    contact = relationship("Contact", backref="communications")

    @property
    def is_sent(self) -> bool:
        return self.status == CommunicationStatus.SENT.value

    @property
    def is_opened(self) -> bool:
        """Check if communication was opened"""
        return self.opened_at is not None

    def __repr__(self):
        return f"<Communication(type='{self.type}', recipient='{self.recipient}', status='{self.status}')>"
