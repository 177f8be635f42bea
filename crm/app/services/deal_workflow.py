"""
Wealth CRM Deal Workflow
Stage and KYC state machine for investor onboarding deals

Stage: NEW_LEAD -> KYC_IN_PROGRESS -> DUE_DILIGENCE -> CONTRACT_SIGNING -> ONBOARDED,
plus REJECTED from any non-terminal stage.
KYC:   PENDING -> SUBMITTED -> VERIFIED, plus REJECTED from PENDING or SUBMITTED.

Guarded operations make at most one external call (email or archive) and
only write deal state when that call succeeds. The write is conditional on
the stage and KYC status read at the start of the operation.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, Union
from uuid import UUID
from datetime import datetime, timedelta, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from sqlalchemy.orm import selectinload
import structlog

from ..models.deals import Deal, DealStage, KYCStatus, TERMINAL_STAGES
from ..models.documents import Document
from ..models.tasks import Task, TaskStatus
from ..models.communications import CommunicationType
from ..core.config import settings
from ..core.errors import (
    NotFoundError,
    InvalidStateError,
    ConcurrentModificationError,
    DeliveryError,
    ArchiveError,
)
from .communication_service import CommunicationService
from .archive_service import ArchiveService
from .intent_service import IntentService
from .nats_client import publish_event_safely

logger = structlog.get_logger()


STAGE_TRANSITIONS: Dict[DealStage, FrozenSet[DealStage]] = {
    DealStage.NEW_LEAD: frozenset({DealStage.KYC_IN_PROGRESS, DealStage.REJECTED}),
    DealStage.KYC_IN_PROGRESS: frozenset({DealStage.DUE_DILIGENCE, DealStage.REJECTED}),
    DealStage.DUE_DILIGENCE: frozenset({DealStage.CONTRACT_SIGNING, DealStage.REJECTED}),
    DealStage.CONTRACT_SIGNING: frozenset({DealStage.ONBOARDED, DealStage.REJECTED}),
    DealStage.ONBOARDED: frozenset(),
    DealStage.REJECTED: frozenset(),
}

KYC_TRANSITIONS: Dict[KYCStatus, FrozenSet[KYCStatus]] = {
    KYCStatus.PENDING: frozenset({KYCStatus.SUBMITTED, KYCStatus.REJECTED}),
    KYCStatus.SUBMITTED: frozenset({KYCStatus.VERIFIED, KYCStatus.REJECTED}),
    KYCStatus.VERIFIED: frozenset(),
    KYCStatus.REJECTED: frozenset(),
}

# Forward path used by auto-progression
NEXT_STAGE: Dict[DealStage, Optional[DealStage]] = {
    DealStage.NEW_LEAD: DealStage.KYC_IN_PROGRESS,
    DealStage.KYC_IN_PROGRESS: DealStage.DUE_DILIGENCE,
    DealStage.DUE_DILIGENCE: DealStage.CONTRACT_SIGNING,
    DealStage.CONTRACT_SIGNING: DealStage.ONBOARDED,
    DealStage.ONBOARDED: None,
    DealStage.REJECTED: None,
}

KYC_REQUEST_STAGES = frozenset({DealStage.NEW_LEAD, DealStage.KYC_IN_PROGRESS})

STAGE_DESCRIPTIONS: Dict[DealStage, str] = {
    DealStage.NEW_LEAD: "Prospect captured; KYC not yet requested",
    DealStage.KYC_IN_PROGRESS: "KYC/AML documents requested and under review",
    DealStage.DUE_DILIGENCE: "Verified documents archived; diligence review under way",
    DealStage.CONTRACT_SIGNING: "Diligence complete; subscription contract out for signature",
    DealStage.ONBOARDED: "Contract signed; investor onboarded",
    DealStage.REJECTED: "Deal closed without onboarding",
}


def _check_exhaustive(table: Dict, enum_type, name: str):
    missing = set(enum_type) - set(table)
    if missing:
        raise RuntimeError(f"{name} has no entry for {sorted(member.value for member in missing)}")


for _table, _enum, _name in (
    (STAGE_TRANSITIONS, DealStage, "STAGE_TRANSITIONS"),
    (KYC_TRANSITIONS, KYCStatus, "KYC_TRANSITIONS"),
    (NEXT_STAGE, DealStage, "NEXT_STAGE"),
    (STAGE_DESCRIPTIONS, DealStage, "STAGE_DESCRIPTIONS"),
):
    _check_exhaustive(_table, _enum, _name)


def can_transition_stage(current: DealStage, target: DealStage) -> bool:
    return target in STAGE_TRANSITIONS[current]


def can_transition_kyc(current: KYCStatus, target: KYCStatus) -> bool:
    return target in KYC_TRANSITIONS[current]


# Progression criteria: each returns (met, explanation)

def _contact_has_email(deal: Deal) -> Tuple[bool, str]:
    if deal.contact is not None and deal.contact.email:
        return True, "Contact email on file; ready for KYC"
    return False, "Deal needs a contact with an email address before KYC can start"


def _kyc_verified_and_archived(deal: Deal) -> Tuple[bool, str]:
    if deal.current_kyc_status != KYCStatus.VERIFIED:
        return False, f"KYC must be VERIFIED to start due diligence (currently {deal.kyc_status})"
    if not any(document.is_archived for document in deal.documents):
        return False, "At least one verified document must be archived before due diligence"
    return True, "KYC verified and documents archived"


def _diligence_notes_present(deal: Deal) -> Tuple[bool, str]:
    if deal.due_diligence_notes and deal.due_diligence_notes.strip():
        return True, "Due diligence notes recorded"
    return False, "Due diligence notes are required before contract signing"


def _contract_signed(deal: Deal) -> Tuple[bool, str]:
    if any(document.is_signed_contract for document in deal.documents):
        return True, "Signed contract on file"
    return False, "A signed CONTRACT document is required before onboarding"


PROGRESSION_CRITERIA: Dict[DealStage, Callable[[Deal], Tuple[bool, str]]] = {
    DealStage.NEW_LEAD: _contact_has_email,
    DealStage.KYC_IN_PROGRESS: _kyc_verified_and_archived,
    DealStage.DUE_DILIGENCE: _diligence_notes_present,
    DealStage.CONTRACT_SIGNING: _contract_signed,
}

PROGRESSION_REQUIREMENTS: Dict[DealStage, str] = {
    DealStage.NEW_LEAD: "Contact has an email address",
    DealStage.KYC_IN_PROGRESS: "KYC VERIFIED and at least one archived document",
    DealStage.DUE_DILIGENCE: "Due diligence notes recorded",
    DealStage.CONTRACT_SIGNING: "CONTRACT document with signature SIGNED",
}


def _follow_up_task(stage: DealStage, deal_name: str) -> Optional[Tuple[str, str, int]]:
    """Task (title, description, due days) created when a deal enters ``stage``"""
    if stage == DealStage.KYC_IN_PROGRESS:
        return (
            f"Send KYC Request - {deal_name}",
            "Deal entered KYC. Send the KYC/AML document request to the investor.",
            settings.kyc_request_task_due_days,
        )
    if stage == DealStage.DUE_DILIGENCE:
        return (
            f"Due Diligence Review - {deal_name}",
            "Verified documents archived. Complete the due diligence review.",
            settings.diligence_task_due_days,
        )
    if stage == DealStage.CONTRACT_SIGNING:
        return (
            f"Prepare Contract - {deal_name}",
            "Due diligence complete. Prepare and send the subscription contract.",
            settings.contract_task_due_days,
        )
    if stage == DealStage.ONBOARDED:
        return (
            f"Onboarding Complete - {deal_name}",
            "Contract signed. Send the welcome pack and schedule the onboarding call.",
            settings.onboarding_task_due_days,
        )
    return None


def build_kyc_request_email(deal: Deal) -> Tuple[str, str]:
    """Subject and HTML body of the KYC/AML document request"""
    contact_name = deal.contact.full_name if deal.contact else "Investor"
    subject = f"KYC Documentation Required - {deal.name}"
    content = f"""<html><body>
<p>Dear {contact_name},</p>
<p>Thank you for your interest in investing with us. To proceed with your investment in
<strong>{deal.name}</strong>, we need to complete our Know Your Customer (KYC) and
Anti-Money Laundering (AML) verification process.</p>
<p>Please provide the following documents:</p>
<ol>
<li>Government-issued photo ID (passport or driver's license)</li>
<li>Proof of address (utility bill or bank statement, less than 3 months old)</li>
<li>Source of funds documentation</li>
</ol>
<p>Please reply to this email with the documents attached or upload them through our
secure portal.</p>
<p>If you have any questions, please don't hesitate to contact us.</p>
<p>Best regards,<br/>The Investment Team</p>
</body></html>"""
    return subject, content


@dataclass
class WorkflowResult:
    """Outcome of a workflow operation"""
    deal: Deal
    changed: bool
    message: str
    previous_stage: DealStage
    previous_kyc_status: KYCStatus
    task: Optional[Task] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deal_id": str(self.deal.id),
            "changed": self.changed,
            "message": self.message,
            "previous_stage": self.previous_stage.value,
            "stage": self.deal.stage,
            "previous_kyc_status": self.previous_kyc_status.value,
            "kyc_status": self.deal.kyc_status,
            "task_id": str(self.task.id) if self.task else None,
            **self.details,
        }


class DealWorkflow:
    """Runs guarded stage transitions for a deal"""

    def __init__(self, db: AsyncSession, notifier=None, archiver=None):
        self.db = db
        self.notifier = notifier or CommunicationService(db)
        self.archiver = archiver or ArchiveService()
        self.intents = IntentService(db)

    async def send_kyc_request(self, deal_id: UUID) -> WorkflowResult:
        """Email the KYC/AML request and move the deal into KYC_IN_PROGRESS"""

        deal = await self._load_deal(deal_id)
        stage, kyc_status = deal.current_stage, deal.current_kyc_status

        if stage not in KYC_REQUEST_STAGES:
            raise InvalidStateError(
                f"KYC can only be requested for deals in NEW_LEAD or KYC_IN_PROGRESS (deal is {stage.value})",
                current=self._state(deal),
                required={"stage": sorted(s.value for s in KYC_REQUEST_STAGES)},
            )
        if deal.contact is None or not deal.contact.email:
            raise InvalidStateError(
                "Deal has no contact email to send the KYC request to",
                current=self._state(deal),
                required={"contact_email": "present"},
            )

        intent = await self.intents.record(deal.id, "send_kyc_request")
        subject, content = build_kyc_request_email(deal)

        try:
            communication = await self.notifier.send_email(
                to_email=deal.contact.email,
                subject=subject,
                content=content,
                communication_type=CommunicationType.KYC_REQUEST,
                deal_id=deal.id,
                contact_id=deal.contact.id,
            )
        except DeliveryError as e:
            await self.intents.fail(intent, e.message)
            raise

        new_kyc = KYCStatus.SUBMITTED if kyc_status == KYCStatus.PENDING else kyc_status
        await self._conditional_update(
            deal, stage, kyc_status,
            stage=DealStage.KYC_IN_PROGRESS.value,
            kyc_status=new_kyc.value,
        )
        task = self._add_task(
            deal,
            f"KYC Documents Requested - {deal.name}",
            "KYC request sent to the investor. Follow up if documents are not received.",
            settings.kyc_task_due_days,
        )
        self.intents.fulfil(intent, external_reference=str(communication.id))
        await self.db.commit()

        deal = await self._load_deal(deal.id)
        logger.info(
            "KYC request sent",
            deal_id=str(deal.id),
            previous_stage=stage.value,
            kyc_status=deal.kyc_status,
            communication_id=str(communication.id)
        )
        await publish_event_safely("deals.kyc_requested", {
            "deal_id": str(deal.id),
            "previous_stage": stage.value,
            "stage": deal.stage,
            "kyc_status": deal.kyc_status,
            "communication_id": str(communication.id),
        })

        return WorkflowResult(
            deal=deal,
            changed=True,
            message=f"KYC request sent to {deal.contact.email}",
            previous_stage=stage,
            previous_kyc_status=kyc_status,
            task=task,
            details={"communication_id": str(communication.id)},
        )

    async def archive_verified_documents(self, deal_id: UUID) -> WorkflowResult:
        """Push verified KYC documents to the archive and open due diligence"""

        deal = await self._load_deal(deal_id)
        stage, kyc_status = deal.current_stage, deal.current_kyc_status

        if kyc_status != KYCStatus.VERIFIED or stage != DealStage.KYC_IN_PROGRESS:
            raise InvalidStateError(
                "KYC must be VERIFIED and the deal in KYC_IN_PROGRESS before documents can be archived "
                f"(deal is {stage.value} with KYC {kyc_status.value})",
                current=self._state(deal),
                required={"stage": DealStage.KYC_IN_PROGRESS.value, "kyc_status": KYCStatus.VERIFIED.value},
            )

        documents: List[Document] = [document for document in deal.documents if document.is_verified]
        if not documents:
            raise InvalidStateError(
                "Deal has no verified documents to archive",
                current=self._state(deal),
                required={"verified_documents": ">= 1"},
            )

        intent = await self.intents.record(deal.id, "archive_verified_documents")

        try:
            location = await self.archiver.archive_documents(deal.id, [document.id for document in documents])
        except ArchiveError as e:
            await self.intents.fail(intent, e.message)
            raise

        await self._conditional_update(deal, stage, kyc_status, stage=DealStage.DUE_DILIGENCE.value)
        archived_at = datetime.now(timezone.utc)
        for document in documents:
            document.archived_at = archived_at
            document.archive_location = location
        title, description, due_days = _follow_up_task(DealStage.DUE_DILIGENCE, deal.name)
        task = self._add_task(deal, title, description, due_days)
        self.intents.fulfil(intent, external_reference=location)
        await self.db.commit()

        deal = await self._load_deal(deal.id)
        logger.info(
            "Verified documents archived",
            deal_id=str(deal.id),
            document_count=len(documents),
            location=location
        )
        await publish_event_safely("deals.documents_archived", {
            "deal_id": str(deal.id),
            "previous_stage": stage.value,
            "stage": deal.stage,
            "document_ids": [str(document.id) for document in documents],
            "location": location,
        })

        return WorkflowResult(
            deal=deal,
            changed=True,
            message=f"{len(documents)} verified document(s) archived",
            previous_stage=stage,
            previous_kyc_status=kyc_status,
            task=task,
            details={"archive_location": location, "archived_documents": len(documents)},
        )

    async def auto_progress(self, deal_id: UUID) -> WorkflowResult:
        """
        Advance the deal one stage when the current stage's criteria hold.

        Unmet criteria are not an error: the deal is returned unchanged with
        the reason. Terminal deals raise InvalidStateError.
        """

        deal = await self._load_deal(deal_id)
        stage, kyc_status = deal.current_stage, deal.current_kyc_status

        if deal.is_terminal:
            raise InvalidStateError(
                f"Deal is {stage.value}; terminal deals do not progress automatically",
                current=self._state(deal),
                required={"stage": [s.value for s in DealStage if s not in TERMINAL_STAGES]},
            )

        target = NEXT_STAGE[stage]
        met, reason = PROGRESSION_CRITERIA[stage](deal)

        if not met:
            logger.info("Deal progression criteria not met", deal_id=str(deal.id), stage=stage.value, reason=reason)
            return WorkflowResult(
                deal=deal,
                changed=False,
                message=reason,
                previous_stage=stage,
                previous_kyc_status=kyc_status,
            )

        await self._conditional_update(deal, stage, kyc_status, stage=target.value)
        title, description, due_days = _follow_up_task(target, deal.name)
        task = self._add_task(deal, title, description, due_days)
        await self.db.commit()

        deal = await self._load_deal(deal.id)
        logger.info("Deal progressed", deal_id=str(deal.id), old_stage=stage.value, new_stage=target.value)
        await publish_event_safely("deals.progressed", {
            "deal_id": str(deal.id),
            "old_stage": stage.value,
            "new_stage": target.value,
            "reason": reason,
        })

        return WorkflowResult(
            deal=deal,
            changed=True,
            message=f"Deal progressed from {stage.value} to {target.value}: {reason}",
            previous_stage=stage,
            previous_kyc_status=kyc_status,
            task=task,
        )

    async def set_stage(self, deal_id: UUID, new_stage: Union[DealStage, str]) -> WorkflowResult:
        """Manual stage override; any stage may be set"""

        try:
            target = DealStage(new_stage)
        except ValueError:
            raise ValueError(f"Unknown deal stage: {new_stage}") from None

        deal = await self._load_deal(deal_id)
        stage, kyc_status = deal.current_stage, deal.current_kyc_status

        if target == stage:
            return WorkflowResult(
                deal=deal,
                changed=False,
                message=f"Deal already in {stage.value}",
                previous_stage=stage,
                previous_kyc_status=kyc_status,
            )

        await self.db.execute(
            update(Deal)
            .where(Deal.id == deal.id)
            .values(stage=target.value, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        deal = await self._load_deal(deal.id)
        logger.warning("Deal stage overridden", deal_id=str(deal.id), old_stage=stage.value, new_stage=target.value)
        await publish_event_safely("deals.stage_overridden", {
            "deal_id": str(deal.id),
            "old_stage": stage.value,
            "new_stage": target.value,
        })

        return WorkflowResult(
            deal=deal,
            changed=True,
            message=f"Stage set to {target.value}",
            previous_stage=stage,
            previous_kyc_status=kyc_status,
        )

    async def update_kyc_status(self, deal_id: UUID, new_status: Union[KYCStatus, str]) -> WorkflowResult:
        """Record a compliance decision on the deal's KYC"""

        try:
            target = KYCStatus(new_status)
        except ValueError:
            raise ValueError(f"Unknown KYC status: {new_status}") from None

        deal = await self._load_deal(deal_id)
        stage, kyc_status = deal.current_stage, deal.current_kyc_status

        if not can_transition_kyc(kyc_status, target):
            raise InvalidStateError(
                f"KYC status cannot move from {kyc_status.value} to {target.value}",
                current=self._state(deal),
                required={"kyc_status": sorted(s.value for s in KYCStatus if target in KYC_TRANSITIONS[s])},
            )

        await self._conditional_update(deal, stage, kyc_status, kyc_status=target.value)
        await self.db.commit()

        deal = await self._load_deal(deal.id)
        logger.info("KYC status updated", deal_id=str(deal.id), old_status=kyc_status.value, new_status=target.value)
        await publish_event_safely("deals.kyc_status_changed", {
            "deal_id": str(deal.id),
            "old_status": kyc_status.value,
            "new_status": target.value,
        })

        return WorkflowResult(
            deal=deal,
            changed=True,
            message=f"KYC status updated to {target.value}",
            previous_stage=stage,
            previous_kyc_status=kyc_status,
        )

    async def reject_deal(self, deal_id: UUID, reason: Optional[str] = None) -> WorkflowResult:
        """Close a non-terminal deal as REJECTED"""

        deal = await self._load_deal(deal_id)
        stage, kyc_status = deal.current_stage, deal.current_kyc_status

        if not can_transition_stage(stage, DealStage.REJECTED):
            raise InvalidStateError(
                f"Deal is {stage.value} and cannot be rejected",
                current=self._state(deal),
                required={"stage": [s.value for s in DealStage if s not in TERMINAL_STAGES]},
            )

        await self._conditional_update(deal, stage, kyc_status, stage=DealStage.REJECTED.value)
        await self.db.commit()

        deal = await self._load_deal(deal.id)
        logger.info("Deal rejected", deal_id=str(deal.id), old_stage=stage.value, reason=reason)
        await publish_event_safely("deals.rejected", {
            "deal_id": str(deal.id),
            "old_stage": stage.value,
            "reason": reason,
        })

        return WorkflowResult(
            deal=deal,
            changed=True,
            message="Deal rejected" + (f": {reason}" if reason else ""),
            previous_stage=stage,
            previous_kyc_status=kyc_status,
            details={"reason": reason},
        )

    async def _load_deal(self, deal_id: UUID) -> Deal:
        """Fresh read of the deal with contact, company and documents"""
        result = await self.db.execute(
            select(Deal)
            .where(Deal.id == deal_id)
            .options(selectinload(Deal.contact), selectinload(Deal.company), selectinload(Deal.documents))
            .execution_options(populate_existing=True)
        )
        deal = result.scalar_one_or_none()
        if not deal:
            raise NotFoundError(f"Deal {deal_id} not found")
        return deal

    async def _conditional_update(
        self,
        deal: Deal,
        expected_stage: DealStage,
        expected_kyc: KYCStatus,
        **values
    ):
        """Write ``values`` only if stage and KYC status are still as read"""
        result = await self.db.execute(
            update(Deal)
            .where(
                Deal.id == deal.id,
                Deal.stage == expected_stage.value,
                Deal.kyc_status == expected_kyc.value
            )
            .values(updated_at=func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.warning(
                "Deal changed concurrently",
                deal_id=str(deal.id),
                expected_stage=expected_stage.value,
                expected_kyc_status=expected_kyc.value
            )
            raise ConcurrentModificationError(
                f"Deal {deal.id} changed while the operation was running; reload and retry"
            )

    def _add_task(self, deal: Deal, title: str, description: str, due_days: int) -> Task:
        task = Task(
            title=title,
            description=description,
            due_date=datetime.now(timezone.utc) + timedelta(days=due_days),
            status=TaskStatus.PENDING.value,
            assigned_to_user_id=deal.owner_user_id,
            deal_id=deal.id,
        )
        self.db.add(task)
        return task

    @staticmethod
    def _state(deal: Deal) -> Dict[str, str]:
        return {"stage": deal.stage, "kyc_status": deal.kyc_status}
