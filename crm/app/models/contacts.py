"""
Wealth CRM Contact and Company Models
"""

from sqlalchemy import Column, String, DateTime, Text, Uuid
from sqlalchemy.sql import func
import uuid
from enum import Enum

from ..core.database import Base


class InvestorType(str, Enum):
    """Investor classification"""
    INDIVIDUAL = "INDIVIDUAL"
    INSTITUTIONAL = "INSTITUTIONAL"
    FAMILY_OFFICE = "FAMILY_OFFICE"
    CORPORATE = "CORPORATE"


class Contact(Base):
    """Contact model for investors and booking guests"""
    __tablename__ = "contacts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone_number = Column(String(30))
    investor_type = Column(String(30), default=InvestorType.INDIVIDUAL.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Contact(full_name='{self.full_name}', email='{self.email}')>"


class Company(Base):
    """Company associated with deals"""
    __tablename__ = "companies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    industry = Column(String(100))
    website = Column(String(255))
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Company(name='{self.name}')>"
