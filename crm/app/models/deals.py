"""
Wealth CRM Deal Models
"""

from sqlalchemy import Column, String, Numeric, DateTime, Text, ForeignKey, Date, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid
from enum import Enum

from ..core.database import Base


class DealStage(str, Enum):
    """Deal pipeline stage enumeration"""
    NEW_LEAD = "NEW_LEAD"
    KYC_IN_PROGRESS = "KYC_IN_PROGRESS"
    DUE_DILIGENCE = "DUE_DILIGENCE"
    CONTRACT_SIGNING = "CONTRACT_SIGNING"
    ONBOARDED = "ONBOARDED"
    REJECTED = "REJECTED"


class KYCStatus(str, Enum):
    """KYC/AML verification status enumeration"""
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


TERMINAL_STAGES = frozenset({DealStage.ONBOARDED, DealStage.REJECTED})


class Deal(Base):
    """Deal model for tracking investment opportunities"""
    __tablename__ = "deals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    stage = Column(String(30), nullable=False, default=DealStage.NEW_LEAD.value, index=True)
    kyc_status = Column(String(20), nullable=False, default=KYCStatus.PENDING.value)
    deal_value = Column(Numeric(14, 2))
    currency = Column(String(3), default="USD")
    expected_close_date = Column(Date)
    due_diligence_notes = Column(Text)
    ai_analysis = Column(Text)
    owner_user_id = Column(Uuid, ForeignKey("users.id"))
    contact_id = Column(Uuid, ForeignKey("contacts.id"))
    company_id = Column(Uuid, ForeignKey("companies.id"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    owner = relationship("User", backref="deals")
    contact = relationship("Contact", backref="deals")
    company = relationship("Company", backref="deals")
    documents = relationship("Document", back_populates="deal", order_by="Document.created_at")
    tasks = relationship("Task", back_populates="deal")

    @property
    def current_stage(self) -> DealStage:
        return DealStage(self.stage)

    @property
    def current_kyc_status(self) -> KYCStatus:
        return KYCStatus(self.kyc_status)

    @property
    def is_terminal(self) -> bool:
        """Check if deal reached ONBOARDED or REJECTED"""
        return self.current_stage in TERMINAL_STAGES

    def __repr__(self):
        return f"<Deal(name='{self.name}', stage='{self.stage}', kyc_status='{self.kyc_status}')>"
