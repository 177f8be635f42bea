"""
Test the deal stage and KYC workflow
"""

import pytest
from datetime import datetime, timedelta, timezone
from uuid import uuid4
from sqlalchemy import select, update

from crm.app.core.errors import (
    InvalidStateError,
    DeliveryError,
    ArchiveError,
    ConcurrentModificationError,
    NotFoundError,
)
from crm.app.models import (
    Deal,
    DealStage,
    KYCStatus,
    Document,
    DocumentType,
    DocumentStatus,
    SignatureStatus,
    Task,
    WorkflowIntent,
    IntentStatus,
    CommunicationType,
)
from crm.app.services.deal_workflow import (
    DealWorkflow,
    STAGE_TRANSITIONS,
    KYC_TRANSITIONS,
    can_transition_kyc,
    can_transition_stage,
)
from crm.app.services.intent_service import IntentService


async def reload(db, deal_id) -> Deal:
    return await db.get(Deal, deal_id, populate_existing=True)


async def intents_for(db, deal_id):
    result = await db.execute(
        select(WorkflowIntent)
        .where(WorkflowIntent.deal_id == deal_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def tasks_for(db, deal_id):
    result = await db.execute(select(Task).where(Task.deal_id == deal_id))
    return list(result.scalars().all())


@pytest.fixture
def workflow(test_db, notifier, archiver):
    return DealWorkflow(test_db, notifier=notifier, archiver=archiver)


def test_transition_tables_cover_every_state():
    assert set(STAGE_TRANSITIONS) == set(DealStage)
    assert set(KYC_TRANSITIONS) == set(KYCStatus)


def test_transition_edges():
    assert can_transition_stage(DealStage.NEW_LEAD, DealStage.KYC_IN_PROGRESS)
    assert can_transition_stage(DealStage.CONTRACT_SIGNING, DealStage.REJECTED)
    assert not can_transition_stage(DealStage.NEW_LEAD, DealStage.DUE_DILIGENCE)
    assert not can_transition_stage(DealStage.ONBOARDED, DealStage.REJECTED)

    assert can_transition_kyc(KYCStatus.PENDING, KYCStatus.SUBMITTED)
    assert can_transition_kyc(KYCStatus.SUBMITTED, KYCStatus.REJECTED)
    assert not can_transition_kyc(KYCStatus.VERIFIED, KYCStatus.REJECTED)
    assert not can_transition_kyc(KYCStatus.SUBMITTED, KYCStatus.PENDING)


# send_kyc_request

async def test_send_kyc_request_from_new_lead(test_db, workflow, notifier, make_deal):
    """KYC email goes to the contact and the deal enters KYC."""
    deal = await make_deal()
    deal_id = deal.id

    result = await workflow.send_kyc_request(deal_id)

    assert result.changed is True
    assert result.deal.stage == DealStage.KYC_IN_PROGRESS.value
    assert result.deal.kyc_status == KYCStatus.SUBMITTED.value

    assert len(notifier.sent) == 1
    email = notifier.sent[0]
    assert email.to_email == "grace@example.com"
    assert email.type == CommunicationType.KYC_REQUEST
    assert "Hopper Family Trust" in email.subject
    assert "Government-issued photo ID" in email.content

    tasks = await tasks_for(test_db, deal_id)
    assert [task.title for task in tasks] == ["KYC Documents Requested - Hopper Family Trust"]

    intents = await intents_for(test_db, deal_id)
    assert len(intents) == 1
    assert intents[0].status == IntentStatus.FULFILLED.value
    assert intents[0].external_reference == str(email.id)


async def test_send_kyc_request_keeps_advanced_kyc_status(workflow, make_deal):
    """Resending during KYC does not move KYC status backwards."""
    deal = await make_deal(stage=DealStage.KYC_IN_PROGRESS, kyc_status=KYCStatus.VERIFIED)

    result = await workflow.send_kyc_request(deal.id)

    assert result.deal.stage == DealStage.KYC_IN_PROGRESS.value
    assert result.deal.kyc_status == KYCStatus.VERIFIED.value


async def test_send_kyc_request_rejected_outside_kyc_stages(test_db, workflow, notifier, make_deal):
    """A deal in due diligence cannot be sent a KYC request."""
    deal = await make_deal(stage=DealStage.DUE_DILIGENCE, kyc_status=KYCStatus.VERIFIED)
    deal_id = deal.id

    with pytest.raises(InvalidStateError) as exc_info:
        await workflow.send_kyc_request(deal_id)

    assert exc_info.value.current["stage"] == DealStage.DUE_DILIGENCE.value
    assert notifier.sent == []
    assert await intents_for(test_db, deal_id) == []

    unchanged = await reload(test_db, deal_id)
    assert unchanged.stage == DealStage.DUE_DILIGENCE.value
    assert unchanged.kyc_status == KYCStatus.VERIFIED.value


async def test_send_kyc_request_requires_contact_email(workflow, notifier, make_deal):
    deal = await make_deal(with_contact=False)

    with pytest.raises(InvalidStateError):
        await workflow.send_kyc_request(deal.id)
    assert notifier.sent == []


async def test_send_kyc_request_delivery_failure_leaves_state(test_db, workflow, notifier, make_deal):
    """A failed send changes nothing and records the failure."""
    deal = await make_deal()
    deal_id = deal.id
    notifier.fail = True

    with pytest.raises(DeliveryError):
        await workflow.send_kyc_request(deal_id)

    unchanged = await reload(test_db, deal_id)
    assert unchanged.stage == DealStage.NEW_LEAD.value
    assert unchanged.kyc_status == KYCStatus.PENDING.value
    assert await tasks_for(test_db, deal_id) == []

    intents = await intents_for(test_db, deal_id)
    assert len(intents) == 1
    assert intents[0].status == IntentStatus.FAILED.value
    assert "Mailbox unavailable" in intents[0].error_message


async def test_send_kyc_request_unknown_deal(workflow):
    with pytest.raises(NotFoundError):
        await workflow.send_kyc_request(uuid4())


async def test_concurrent_change_is_detected(test_db, session_factory, archiver, make_deal):
    """A write between read and update raises and leaves the intent pending."""
    deal = await make_deal()
    deal_id = deal.id

    class RacingNotifier:
        async def send_email(self, **kwargs):
            async with session_factory() as other:
                await other.execute(
                    update(Deal).where(Deal.id == deal_id).values(stage=DealStage.REJECTED.value)
                )
                await other.commit()
            return type("Sent", (), {"id": "racing-1"})()

    workflow = DealWorkflow(test_db, notifier=RacingNotifier(), archiver=archiver)

    with pytest.raises(ConcurrentModificationError):
        await workflow.send_kyc_request(deal_id)

    final = await reload(test_db, deal_id)
    assert final.stage == DealStage.REJECTED.value
    assert final.kyc_status == KYCStatus.PENDING.value

    pending = await IntentService(test_db).list_unreconciled_intents(
        older_than=timedelta(0),
        now=datetime.now(timezone.utc) + timedelta(minutes=1)
    )
    assert [intent.deal_id for intent in pending] == [deal_id]
    assert pending[0].action == "send_kyc_request"


# archive_verified_documents

async def test_archive_verified_documents(test_db, workflow, archiver, make_deal, document_spec):
    """Verified documents are archived and only the stage changes."""
    deal = await make_deal(
        stage=DealStage.KYC_IN_PROGRESS,
        kyc_status=KYCStatus.VERIFIED,
        documents=[
            document_spec(DocumentType.KYC_ID),
            document_spec(DocumentType.PROOF_OF_ADDRESS),
            document_spec(DocumentType.SOURCE_OF_FUNDS, status=DocumentStatus.PENDING_REVIEW.value),
        ],
    )
    deal_id = deal.id

    result = await workflow.archive_verified_documents(deal_id)

    assert result.changed is True
    assert result.deal.stage == DealStage.DUE_DILIGENCE.value
    assert result.deal.kyc_status == KYCStatus.VERIFIED.value
    assert float(result.deal.deal_value) == 250000
    assert result.deal.due_diligence_notes is None

    assert len(archiver.calls) == 1
    archived_deal_id, document_ids = archiver.calls[0]
    assert archived_deal_id == deal_id
    assert len(document_ids) == 2

    documents = {document.file_type: document for document in result.deal.documents}
    location = f"https://drive.example.com/folders/deal-{deal_id}"
    assert documents[DocumentType.KYC_ID.value].archive_location == location
    assert documents[DocumentType.PROOF_OF_ADDRESS.value].archived_at is not None
    assert documents[DocumentType.SOURCE_OF_FUNDS.value].archived_at is None

    tasks = await tasks_for(test_db, deal_id)
    assert [task.title for task in tasks] == ["Due Diligence Review - Hopper Family Trust"]


@pytest.mark.parametrize("stage,kyc_status", [
    (DealStage.NEW_LEAD, KYCStatus.VERIFIED),
    (DealStage.KYC_IN_PROGRESS, KYCStatus.SUBMITTED),
    (DealStage.DUE_DILIGENCE, KYCStatus.VERIFIED),
])
async def test_archive_requires_verified_kyc_in_progress(
    test_db, workflow, archiver, make_deal, document_spec, stage, kyc_status
):
    deal = await make_deal(stage=stage, kyc_status=kyc_status, documents=[document_spec()])
    deal_id = deal.id

    with pytest.raises(InvalidStateError) as exc_info:
        await workflow.archive_verified_documents(deal_id)

    assert exc_info.value.required == {
        "stage": DealStage.KYC_IN_PROGRESS.value,
        "kyc_status": KYCStatus.VERIFIED.value,
    }
    assert archiver.calls == []
    assert (await reload(test_db, deal_id)).stage == stage.value


async def test_archive_requires_a_verified_document(workflow, archiver, make_deal, document_spec):
    deal = await make_deal(
        stage=DealStage.KYC_IN_PROGRESS,
        kyc_status=KYCStatus.VERIFIED,
        documents=[document_spec(status=DocumentStatus.REJECTED.value)],
    )

    with pytest.raises(InvalidStateError):
        await workflow.archive_verified_documents(deal.id)
    assert archiver.calls == []


async def test_archive_failure_leaves_stage(test_db, workflow, archiver, make_deal, document_spec):
    deal = await make_deal(stage=DealStage.KYC_IN_PROGRESS, kyc_status=KYCStatus.VERIFIED, documents=[document_spec()])
    deal_id = deal.id
    archiver.fail = True

    with pytest.raises(ArchiveError):
        await workflow.archive_verified_documents(deal_id)

    assert (await reload(test_db, deal_id)).stage == DealStage.KYC_IN_PROGRESS.value
    intents = await intents_for(test_db, deal_id)
    assert [intent.status for intent in intents] == [IntentStatus.FAILED.value]

    result = await test_db.execute(select(Document).where(Document.deal_id == deal_id))
    assert all(document.archived_at is None for document in result.scalars())


# auto_progress

async def test_auto_progress_new_lead_with_contact_email(test_db, workflow, make_deal):
    deal = await make_deal()

    result = await workflow.auto_progress(deal.id)

    assert result.changed is True
    assert result.deal.stage == DealStage.KYC_IN_PROGRESS.value
    assert result.task.title == "Send KYC Request - Hopper Family Trust"


async def test_auto_progress_new_lead_without_contact_is_noop(workflow, make_deal):
    deal = await make_deal(with_contact=False)

    result = await workflow.auto_progress(deal.id)

    assert result.changed is False
    assert result.deal.stage == DealStage.NEW_LEAD.value
    assert "email" in result.message


async def test_auto_progress_kyc_needs_archived_document(workflow, make_deal, document_spec):
    deal = await make_deal(stage=DealStage.KYC_IN_PROGRESS, kyc_status=KYCStatus.VERIFIED, documents=[document_spec()])

    result = await workflow.auto_progress(deal.id)
    assert result.changed is False
    assert "archived" in result.message


async def test_auto_progress_kyc_with_archived_document(workflow, make_deal, document_spec):
    deal = await make_deal(
        stage=DealStage.KYC_IN_PROGRESS,
        kyc_status=KYCStatus.VERIFIED,
        documents=[document_spec(archived_at=datetime(2030, 1, 2, tzinfo=timezone.utc))],
    )

    result = await workflow.auto_progress(deal.id)
    assert result.deal.stage == DealStage.DUE_DILIGENCE.value


async def test_auto_progress_kyc_not_verified_is_noop(workflow, make_deal):
    deal = await make_deal(stage=DealStage.KYC_IN_PROGRESS, kyc_status=KYCStatus.SUBMITTED)

    result = await workflow.auto_progress(deal.id)
    assert result.changed is False
    assert result.deal.stage == DealStage.KYC_IN_PROGRESS.value


@pytest.mark.parametrize("notes,expected", [
    (None, DealStage.DUE_DILIGENCE),
    ("   ", DealStage.DUE_DILIGENCE),
    ("Source of wealth confirmed; no adverse media.", DealStage.CONTRACT_SIGNING),
])
async def test_auto_progress_due_diligence_needs_notes(workflow, make_deal, notes, expected):
    deal = await make_deal(stage=DealStage.DUE_DILIGENCE, kyc_status=KYCStatus.VERIFIED, due_diligence_notes=notes)

    result = await workflow.auto_progress(deal.id)
    assert result.deal.stage == expected.value
    assert result.changed is (expected == DealStage.CONTRACT_SIGNING)


async def test_auto_progress_contract_needs_signature(workflow, make_deal, document_spec):
    deal = await make_deal(
        stage=DealStage.CONTRACT_SIGNING,
        kyc_status=KYCStatus.VERIFIED,
        documents=[document_spec(DocumentType.CONTRACT, e_signature_status=SignatureStatus.SENT.value)],
    )

    result = await workflow.auto_progress(deal.id)
    assert result.changed is False
    assert result.deal.stage == DealStage.CONTRACT_SIGNING.value


async def test_auto_progress_contract_signed_onboards(workflow, make_deal, document_spec):
    deal = await make_deal(
        stage=DealStage.CONTRACT_SIGNING,
        kyc_status=KYCStatus.VERIFIED,
        documents=[document_spec(DocumentType.CONTRACT, e_signature_status=SignatureStatus.SIGNED.value)],
    )

    result = await workflow.auto_progress(deal.id)
    assert result.deal.stage == DealStage.ONBOARDED.value
    assert result.task.title == "Onboarding Complete - Hopper Family Trust"


@pytest.mark.parametrize("stage", [DealStage.ONBOARDED, DealStage.REJECTED])
async def test_auto_progress_terminal_deal_raises(workflow, make_deal, stage):
    deal = await make_deal(stage=stage, kyc_status=KYCStatus.VERIFIED)

    with pytest.raises(InvalidStateError):
        await workflow.auto_progress(deal.id)


# set_stage, update_kyc_status, reject_deal

async def test_set_stage_allows_any_stage(workflow, make_deal):
    deal = await make_deal(stage=DealStage.ONBOARDED, kyc_status=KYCStatus.VERIFIED)

    result = await workflow.set_stage(deal.id, "NEW_LEAD")

    assert result.changed is True
    assert result.deal.stage == DealStage.NEW_LEAD.value
    assert result.deal.kyc_status == KYCStatus.VERIFIED.value


async def test_set_stage_same_stage_is_noop(workflow, make_deal):
    deal = await make_deal()

    result = await workflow.set_stage(deal.id, DealStage.NEW_LEAD)
    assert result.changed is False


async def test_set_stage_unknown_value(workflow, make_deal):
    deal = await make_deal()

    with pytest.raises(ValueError):
        await workflow.set_stage(deal.id, "CLOSED_WON")


async def test_update_kyc_status_follows_edges(workflow, make_deal):
    deal = await make_deal(stage=DealStage.KYC_IN_PROGRESS, kyc_status=KYCStatus.SUBMITTED)

    result = await workflow.update_kyc_status(deal.id, KYCStatus.VERIFIED)
    assert result.deal.kyc_status == KYCStatus.VERIFIED.value

    with pytest.raises(InvalidStateError):
        await workflow.update_kyc_status(deal.id, KYCStatus.PENDING)


async def test_reject_deal(workflow, make_deal):
    deal = await make_deal(stage=DealStage.DUE_DILIGENCE, kyc_status=KYCStatus.VERIFIED)

    result = await workflow.reject_deal(deal.id, reason="Source of funds unclear")

    assert result.deal.stage == DealStage.REJECTED.value
    assert "Source of funds unclear" in result.message


async def test_reject_terminal_deal_raises(workflow, make_deal):
    deal = await make_deal(stage=DealStage.ONBOARDED, kyc_status=KYCStatus.VERIFIED)

    with pytest.raises(InvalidStateError):
        await workflow.reject_deal(deal.id)
