"""
Wealth CRM Models
"""

from .users import User
from .contacts import Contact, Company, InvestorType
from .deals import Deal, DealStage, KYCStatus, TERMINAL_STAGES
from .documents import Document, DocumentType, DocumentStatus, SignatureStatus
from .tasks import Task, TaskStatus
from .booking import AvailabilityTemplate, AvailabilityRule, Booking, BookingStatus
from .communications import Communication, CommunicationType, CommunicationStatus
from .intents import WorkflowIntent, IntentStatus

__all__ = [
    "User",
    "Contact",
    "Company",
    "InvestorType",
    "Deal",
    "DealStage",
    "KYCStatus",
    "TERMINAL_STAGES",
    "Document",
    "DocumentType",
    "DocumentStatus",
    "SignatureStatus",
    "Task",
    "TaskStatus",
    "AvailabilityTemplate",
    "AvailabilityRule",
    "Booking",
    "BookingStatus",
    "Communication",
    "CommunicationType",
    "CommunicationStatus",
    "WorkflowIntent",
    "IntentStatus",
]
