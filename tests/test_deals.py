"""
Test deal and onboarding workflow endpoints
"""

import pytest
from uuid import uuid4
from httpx import AsyncClient

from crm.app.models import DealStage, KYCStatus, DocumentType

DEALS = "/api/v1/deals"


async def test_create_deal(client: AsyncClient, owner, contact):
    """Test deal creation."""
    response = await client.post(f"{DEALS}/", json={
        "name": "Hopper Endowment",
        "contact_id": str(contact.id),
        "owner_user_id": str(owner.id),
        "deal_value": 1200000,
        "currency": "GBP",
        "expected_close_date": "2030-03-31",
    })
    assert response.status_code == 201

    data = response.json()
    assert data["status"] == "success"
    deal = data["data"]
    assert deal["stage"] == "NEW_LEAD"
    assert deal["kyc_status"] == "PENDING"
    assert deal["deal_value"] == 1200000.0
    assert deal["contact"]["email"] == "grace@example.com"
    assert deal["documents"] == []


async def test_create_deal_unknown_contact(client: AsyncClient):
    response = await client.post(f"{DEALS}/", json={"name": "Ghost", "contact_id": str(uuid4())})
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "NotFoundError"


async def test_get_and_list_deals(client: AsyncClient, make_deal):
    deal = await make_deal()
    await make_deal(stage=DealStage.DUE_DILIGENCE, kyc_status=KYCStatus.VERIFIED)

    response = await client.get(f"{DEALS}/{deal.id}")
    assert response.status_code == 200
    assert response.json()["data"]["name"] == "Hopper Family Trust"

    response = await client.get(f"{DEALS}/", params={"stage": "DUE_DILIGENCE"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["count"] == 1
    assert data["deals"][0]["stage"] == "DUE_DILIGENCE"


async def test_get_unknown_deal(client: AsyncClient):
    response = await client.get(f"{DEALS}/{uuid4()}")
    assert response.status_code == 404


async def test_pipeline(client: AsyncClient, make_deal):
    await make_deal()
    await make_deal()
    await make_deal(stage=DealStage.REJECTED)

    response = await client.get(f"{DEALS}/pipeline")
    assert response.status_code == 200

    pipeline = response.json()["data"]
    assert pipeline["total_deals"] == 3
    assert pipeline["stages"]["NEW_LEAD"]["count"] == 2
    assert pipeline["stages"]["NEW_LEAD"]["total_value"] == 500000.0
    assert pipeline["stages"]["REJECTED"]["count"] == 1
    assert pipeline["open_pipeline_value"] == 500000.0


async def test_stage_definitions(client: AsyncClient):
    response = await client.get(f"{DEALS}/stages/definitions")
    assert response.status_code == 200

    data = response.json()["data"]
    stages = {entry["stage"]: entry for entry in data["stages"]}
    assert list(stages) == [stage.value for stage in DealStage]
    assert stages["NEW_LEAD"]["next_stage"] == "KYC_IN_PROGRESS"
    assert stages["NEW_LEAD"]["allowed_transitions"] == ["KYC_IN_PROGRESS", "REJECTED"]
    assert stages["ONBOARDED"]["is_terminal"] is True
    assert stages["ONBOARDED"]["next_stage"] is None
    assert data["kyc_statuses"] == ["PENDING", "SUBMITTED", "VERIFIED", "REJECTED"]


async def test_update_deal_notes(client: AsyncClient, make_deal):
    deal = await make_deal(stage=DealStage.DUE_DILIGENCE)

    response = await client.patch(f"{DEALS}/{deal.id}", json={"due_diligence_notes": "Source of wealth confirmed"})
    assert response.status_code == 200
    assert response.json()["data"]["due_diligence_notes"] == "Source of wealth confirmed"


async def test_send_kyc(client: AsyncClient, make_deal, notifier):
    deal = await make_deal()

    response = await client.post(f"{DEALS}/{deal.id}/send-kyc")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "success"
    assert data["data"]["previous_stage"] == "NEW_LEAD"
    assert data["data"]["stage"] == "KYC_IN_PROGRESS"
    assert data["data"]["kyc_status"] == "SUBMITTED"
    assert data["data"]["task_id"] is not None
    assert [message.to_email for message in notifier.sent] == ["grace@example.com"]


async def test_send_kyc_wrong_stage(client: AsyncClient, make_deal, notifier):
    deal = await make_deal(stage=DealStage.CONTRACT_SIGNING, kyc_status=KYCStatus.VERIFIED)

    response = await client.post(f"{DEALS}/{deal.id}/send-kyc")
    assert response.status_code == 400

    detail = response.json()["detail"]
    assert detail["error"] == "InvalidStateError"
    assert detail["current_state"]["stage"] == "CONTRACT_SIGNING"
    assert notifier.sent == []


async def test_send_kyc_delivery_failure(client: AsyncClient, make_deal, notifier):
    deal = await make_deal()
    notifier.fail = True

    response = await client.post(f"{DEALS}/{deal.id}/send-kyc")
    assert response.status_code == 502

    response = await client.get(f"{DEALS}/{deal.id}")
    assert response.json()["data"]["stage"] == "NEW_LEAD"


async def test_archive_drive(client: AsyncClient, make_deal, document_spec, archiver):
    deal = await make_deal(
        stage=DealStage.KYC_IN_PROGRESS,
        kyc_status=KYCStatus.VERIFIED,
        documents=[document_spec(), document_spec(DocumentType.PROOF_OF_ADDRESS)],
    )

    response = await client.post(f"{DEALS}/{deal.id}/archive-drive")
    assert response.status_code == 200

    data = response.json()["data"]
    assert data["stage"] == "DUE_DILIGENCE"
    assert data["archived_documents"] == 2
    assert data["archive_location"] == f"https://drive.example.com/folders/deal-{deal.id}"
    assert all(document["archive_location"] for document in data["deal"]["documents"])
    assert len(archiver.calls) == 1


async def test_archive_drive_requires_verified_kyc(client: AsyncClient, make_deal, document_spec, archiver):
    deal = await make_deal(
        stage=DealStage.KYC_IN_PROGRESS,
        kyc_status=KYCStatus.SUBMITTED,
        documents=[document_spec()],
    )

    response = await client.post(f"{DEALS}/{deal.id}/archive-drive")
    assert response.status_code == 400
    assert response.json()["detail"]["required_state"] == {"stage": "KYC_IN_PROGRESS", "kyc_status": "VERIFIED"}
    assert archiver.calls == []


async def test_archive_drive_failure(client: AsyncClient, make_deal, document_spec, archiver):
    deal = await make_deal(
        stage=DealStage.KYC_IN_PROGRESS,
        kyc_status=KYCStatus.VERIFIED,
        documents=[document_spec()],
    )
    archiver.fail = True

    response = await client.post(f"{DEALS}/{deal.id}/archive-drive")
    assert response.status_code == 502
    assert response.json()["detail"]["error"] == "ArchiveError"


async def test_auto_progress(client: AsyncClient, make_deal):
    deal = await make_deal(stage=DealStage.DUE_DILIGENCE, due_diligence_notes="Reviewed trust deed")

    response = await client.post(f"{DEALS}/{deal.id}/auto-progress")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "success"
    assert data["data"]["stage"] == "CONTRACT_SIGNING"


async def test_auto_progress_criteria_not_met(client: AsyncClient, make_deal):
    deal = await make_deal(stage=DealStage.DUE_DILIGENCE)

    response = await client.post(f"{DEALS}/{deal.id}/auto-progress")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "unchanged"
    assert data["data"]["changed"] is False
    assert data["data"]["stage"] == "DUE_DILIGENCE"


async def test_auto_progress_terminal(client: AsyncClient, make_deal):
    deal = await make_deal(stage=DealStage.ONBOARDED)

    response = await client.post(f"{DEALS}/{deal.id}/auto-progress")
    assert response.status_code == 400


async def test_set_stage(client: AsyncClient, make_deal):
    deal = await make_deal(stage=DealStage.REJECTED)

    response = await client.patch(f"{DEALS}/{deal.id}/stage", json={"stage": "NEW_LEAD"})
    assert response.status_code == 200
    assert response.json()["data"]["stage"] == "NEW_LEAD"

    response = await client.patch(f"{DEALS}/{deal.id}/stage", json={"stage": "SOMEWHERE"})
    assert response.status_code == 422


@pytest.mark.parametrize("current,target,expected_status", [
    (KYCStatus.SUBMITTED, "VERIFIED", 200),
    (KYCStatus.PENDING, "REJECTED", 200),
    (KYCStatus.PENDING, "VERIFIED", 400),
    (KYCStatus.VERIFIED, "SUBMITTED", 400),
])
async def test_update_kyc_status(client: AsyncClient, make_deal, current, target, expected_status):
    deal = await make_deal(stage=DealStage.KYC_IN_PROGRESS, kyc_status=current)

    response = await client.patch(f"{DEALS}/{deal.id}/kyc-status", json={"kyc_status": target})
    assert response.status_code == expected_status
    if expected_status == 200:
        assert response.json()["data"]["kyc_status"] == target


async def test_reject_deal(client: AsyncClient, make_deal):
    deal = await make_deal(stage=DealStage.DUE_DILIGENCE)

    response = await client.post(f"{DEALS}/{deal.id}/reject", json={"reason": "Sanctions screening hit"})
    assert response.status_code == 200

    data = response.json()["data"]
    assert data["stage"] == "REJECTED"
    assert data["reason"] == "Sanctions screening hit"

    response = await client.post(f"{DEALS}/{deal.id}/reject", json={})
    assert response.status_code == 400


@pytest.mark.parametrize("method,suffix", [
    ("post", "send-kyc"),
    ("post", "archive-drive"),
    ("post", "auto-progress"),
])
async def test_workflow_unknown_deal(client: AsyncClient, method, suffix):
    response = await getattr(client, method)(f"{DEALS}/{uuid4()}/{suffix}")
    assert response.status_code == 404
