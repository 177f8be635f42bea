"""
Wealth CRM User Models
"""

from sqlalchemy import Column, String, DateTime, Uuid
from sqlalchemy.sql import func
import uuid

from ..core.database import Base


class User(Base):
    """Advisor or staff member owning deals and booking templates"""
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def full_name(self) -> str:
        """Get user's display name"""
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.email

    def __repr__(self):
        return f"<User(email='{self.email}')>"
