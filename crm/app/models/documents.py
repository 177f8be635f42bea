"""
Wealth CRM Document Models
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid
from enum import Enum

from ..core.database import Base


class DocumentType(str, Enum):
    """Document type enumeration"""
    KYC_ID = "KYC_ID"
    PROOF_OF_ADDRESS = "PROOF_OF_ADDRESS"
    SOURCE_OF_FUNDS = "SOURCE_OF_FUNDS"
    PITCH_DECK = "PITCH_DECK"
    CONTRACT = "CONTRACT"
    OTHER = "OTHER"


class DocumentStatus(str, Enum):
    """Compliance review status"""
    PENDING_REVIEW = "PENDING_REVIEW"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class SignatureStatus(str, Enum):
    """E-signature status"""
    NOT_SENT = "NOT_SENT"
    SENT = "SENT"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"


class Document(Base):
    """Document attached to a deal"""
    __tablename__ = "documents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(30), nullable=False, default=DocumentType.OTHER.value)
    storage_path = Column(Text)
    status = Column(String(20), nullable=False, default=DocumentStatus.PENDING_REVIEW.value)
    e_signature_status = Column(String(20), nullable=False, default=SignatureStatus.NOT_SENT.value)
    archived_at = Column(DateTime(timezone=True))
    archive_location = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    deal = relationship("Deal", back_populates="documents")

    @property
    def is_verified(self) -> bool:
        return self.status == DocumentStatus.VERIFIED.value

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @property
    def is_signed_contract(self) -> bool:
        return (
            self.file_type == DocumentType.CONTRACT.value
            and self.e_signature_status == SignatureStatus.SIGNED.value
        )

    def __repr__(self):
        return f"<Document(file_name='{self.file_name}', type='{self.file_type}', status='{self.status}')>"
