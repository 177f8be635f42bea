"""
Wealth CRM Task Models
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Uuid
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid
from enum import Enum

from ..core.database import Base


class TaskStatus(str, Enum):
    """Task status enumeration"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class Task(Base):
    """Follow-up task, usually created by a workflow transition"""
    __tablename__ = "tasks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    due_date = Column(DateTime(timezone=True))
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    assigned_to_user_id = Column(Uuid, ForeignKey("users.id"))
    deal_id = Column(Uuid, ForeignKey("deals.id"), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    deal = relationship("Deal", back_populates="tasks")
    assignee = relationship("User", backref="tasks")

    def __repr__(self):
        return f"<Task(title='{self.title}', status='{self.status}')>"
