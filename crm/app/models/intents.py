"""
Wealth CRM Workflow Intent Models
Saga records for side-effecting deal workflow operations
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Uuid
from sqlalchemy.sql import func
import uuid
from enum import Enum

from ..core.database import Base


class IntentStatus(str, Enum):
    """Intent lifecycle status"""
    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    FAILED = "FAILED"


class WorkflowIntent(Base):
    """Recorded before an external call, settled after the state write"""
    __tablename__ = "workflow_intents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=IntentStatus.PENDING.value, index=True)
    external_reference = Column(Text)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    settled_at = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<WorkflowIntent(action='{self.action}', deal_id='{self.deal_id}', status='{self.status}')>"
