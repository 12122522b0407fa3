import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services.analysis_dispatcher import (
    InMemoryAnalysisDispatcher,
    clear_analysis_dispatcher_cache,
    create_analysis_dispatcher,
)
from app.services.call_record_store import clear_call_record_store_cache
from app.services.user_directory import clear_user_directory_cache, create_user_directory

client = TestClient(app)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    monkeypatch = pytest.MonkeyPatch()
    monkeypatch.setenv("CALL_RECORDS_STORE", "memory")
    monkeypatch.setenv("USER_DIRECTORY_STORE", "memory")
    monkeypatch.setenv("ANALYSIS_DISPATCHER", "memory")
    monkeypatch.setenv("ANALYTICS_MIRROR_ENABLED", "false")
    monkeypatch.setenv("FIREFLIES_WEBHOOK_SECRET", "")
    monkeypatch.setenv("CLAAP_WEBHOOK_SECRET", "")
    get_settings.cache_clear()
    clear_call_record_store_cache()
    clear_user_directory_cache()
    clear_analysis_dispatcher_cache()
    yield
    monkeypatch.undo()
    get_settings.cache_clear()
    clear_call_record_store_cache()
    clear_user_directory_cache()
    clear_analysis_dispatcher_cache()


def _seed_webhook_owner() -> str:
    user_directory = create_user_directory(get_settings())
    owner = user_directory.add_user(
        organization_id="org-1",
        email="head@seller.io",
        first_name="Hana",
        last_name="Head",
        external_account_id="auth0-head",
        role="manager",
    )
    user_directory.add_user(
        organization_id="org-1",
        email="rep@seller.io",
        first_name="Rita",
        last_name="Rep",
    )
    return str(owner["_id"])


def _dispatched_events() -> list[dict[str, object]]:
    dispatcher = create_analysis_dispatcher(get_settings())
    assert isinstance(dispatcher, InMemoryAnalysisDispatcher)
    return dispatcher.events


def _legacy_payload() -> dict[str, object]:
    return {
        "id": "abc123",
        "meeting_title": "Discovery call with Acme",
        "meeting_scheduled_start_time": "2024-01-01T10:00:00Z",
        "meeting_scheduled_end_time": "2024-01-01T10:30:00Z",
        "meeting_invitees": "email: a@x.com\nname: A\nis_external: True",
        "fathom_user_emaill": "rep@seller.io",
        "fathom_user_name": "Rita Rep",
        "transcript_plaintext": "Rita Rep: Hello A.",
    }


def _recording_payload() -> dict[str, object]:
    return {
        "recording_id": 555,
        "title": "Discovery call with Acme",
        "scheduled_start_time": "2024-01-01T14:00:00Z",
        "scheduled_end_time": "2024-01-01T14:30:00Z",
        "recording_start_time": "2024-01-01T14:01:00Z",
        "recording_end_time": "2024-01-01T14:29:00Z",
        "recorded_by": {"email": "rep@seller.io", "name": "Rita Rep"},
        "calendar_invitees": [],
        "transcript": [{"speaker": {"display_name": "Rita Rep"}, "text": "Hello A.", "timestamp": "00:00:01"}],
    }


def _fireflies_payload() -> dict[str, object]:
    return {
        "transcript": {
            "id": "ff-webhook-1",
            "title": "Weekly pipeline review",
            "date": 1704103200000,
            "duration": 30,
            "host_email": "rep@seller.io",
            "sentences": [{"speaker_name": "Rita Rep", "text": "Let's go.", "start_time": 1}],
        },
    }


def test_unscoped_webhook_is_rejected() -> None:
    response = client.post("/api/webhooks/fathom", json=_legacy_payload())

    assert response.status_code == 422
    assert "user_id" in response.json()["detail"]


def test_unknown_platform_is_rejected() -> None:
    owner_id = _seed_webhook_owner()

    response = client.post(f"/api/webhooks/gong/{owner_id}", json=_legacy_payload())

    assert response.status_code == 422


def test_unparseable_body_is_rejected() -> None:
    owner_id = _seed_webhook_owner()

    invalid_json = client.post(
        f"/api/webhooks/fathom/{owner_id}",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    scalar_json = client.post(f"/api/webhooks/fathom/{owner_id}", json="just text")

    assert invalid_json.status_code == 422
    assert scalar_json.status_code == 422


def test_unknown_owner_returns_not_found() -> None:
    _seed_webhook_owner()

    response = client.post("/api/webhooks/fathom/user-404", json=_legacy_payload())

    assert response.status_code == 404


def test_legacy_fathom_webhook_creates_call_record() -> None:
    owner_id = _seed_webhook_owner()

    response = client.post(f"/api/webhooks/fathom/{owner_id}", json=_legacy_payload())

    assert response.status_code == 200
    data = response.json()
    assert data["provider"] == "fathom"
    assert data["owner_user_id"] == owner_id
    assert data["total_processed"] == 1
    assert data["successful"] == 1
    result = data["results"][0]
    assert result["status"] == "success"
    assert result["external_id"] == "abc123"
    assert result["resolved_by"] == "email"
    assert _dispatched_events() == [
        {"name": "call.process", "data": {"callRecordId": result["call_record_id"], "source": "fathom"}},
    ]


def test_repeated_delivery_is_idempotent() -> None:
    owner_id = _seed_webhook_owner()

    first = client.post(f"/api/webhooks/fathom/{owner_id}", json=_legacy_payload())
    second = client.post(f"/api/webhooks/fathom/{owner_id}", json=_legacy_payload())

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["skipped"] == 1
    assert second.json()["results"][0]["match_type"] == "identifier_match"
    assert second.json()["results"][0]["call_record_id"] == first.json()["results"][0]["call_record_id"]
    assert len(_dispatched_events()) == 1


def test_same_call_in_two_formats_is_composite_duplicate() -> None:
    owner_id = _seed_webhook_owner()

    newest = client.post(f"/api/webhooks/fathom/{owner_id}", json=_recording_payload())
    legacy = client.post(f"/api/webhooks/fathom/{owner_id}", json=_legacy_payload())

    assert newest.json()["successful"] == 1
    legacy_result = legacy.json()["results"][0]
    assert legacy_result["status"] == "skipped"
    assert legacy_result["match_type"] == "composite_key_match"
    assert legacy_result["call_record_id"] == newest.json()["results"][0]["call_record_id"]
    assert len(_dispatched_events()) == 1


def test_batch_delivery_reports_each_unit() -> None:
    owner_id = _seed_webhook_owner()

    response = client.post(
        f"/api/v1/webhooks/fathom/{owner_id}",
        json=[_legacy_payload(), 42, _legacy_payload()],
    )

    assert response.status_code == 200
    data = response.json()
    assert [result["status"] for result in data["results"]] == ["success", "error", "skipped"]
    assert (data["successful"], data["skipped"], data["errors"]) == (1, 1, 1)


def test_double_encoded_envelope_is_unwrapped() -> None:
    owner_id = _seed_webhook_owner()

    response = client.post(
        f"/api/webhooks/fireflies/{owner_id}",
        json={"data": json.dumps(_fireflies_payload())},
    )

    assert response.status_code == 200
    result = response.json()["results"][0]
    assert result["status"] == "success"
    assert result["external_id"] == "ff-webhook-1"


def test_owner_can_be_addressed_by_external_account_id() -> None:
    owner_id = _seed_webhook_owner()

    response = client.post("/api/webhooks/fireflies/auth0-head", json=_fireflies_payload())

    assert response.status_code == 200
    assert response.json()["owner_user_id"] == owner_id


def test_fireflies_webhook_accepts_valid_hmac_signature(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIREFLIES_WEBHOOK_SECRET", "correct-secret")
    get_settings.cache_clear()
    owner_id = _seed_webhook_owner()
    raw_body = json.dumps(_fireflies_payload()).encode("utf-8")
    signature = hmac.new(b"correct-secret", raw_body, hashlib.sha256).hexdigest()

    accepted = client.post(
        f"/api/webhooks/fireflies/{owner_id}",
        content=raw_body,
        headers={"Content-Type": "application/json", "X-Hub-Signature": f"sha256={signature}"},
    )
    rejected = client.post(
        f"/api/webhooks/fireflies/{owner_id}",
        content=raw_body,
        headers={"Content-Type": "application/json", "X-Hub-Signature": "sha256=deadbeef"},
    )

    assert accepted.status_code == 200
    assert accepted.json()["successful"] == 1
    assert rejected.status_code == 401


def test_claap_webhook_checks_shared_secret_header(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAAP_WEBHOOK_SECRET", "claap-secret")
    get_settings.cache_clear()
    owner_id = _seed_webhook_owner()
    payload = {
        "eventId": "evt-1",
        "event": {
            "type": "recording_added",
            "recording": {
                "id": "claap-1",
                "title": "Onboarding",
                "createdAt": "2024-05-06T14:00:00Z",
                "durationSeconds": 600,
                "recorder": {"email": "rep@seller.io", "name": "Rita Rep"},
            },
        },
    }

    rejected = client.post(
        f"/api/webhooks/claap/{owner_id}",
        json=payload,
        headers={"X-Claap-Webhook-Secret": "wrong"},
    )
    accepted = client.post(
        f"/api/webhooks/claap/{owner_id}",
        json=payload,
        headers={"X-Claap-Webhook-Secret": "claap-secret"},
    )

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json()["successful"] == 1


def test_encoded_batch_envelope_is_split_into_units() -> None:
    owner_id = _seed_webhook_owner()
    first_call = {**_legacy_payload(), "id": "batch-1", "meeting_title": "First call"}
    second_call = {**_legacy_payload(), "id": "batch-2", "meeting_title": "Second call"}
    for call in (first_call, second_call):
        call.pop("meeting_invitees")

    response = client.post(
        f"/api/webhooks/fathom/{owner_id}",
        json={"data": json.dumps([first_call, second_call])},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["total_processed"] == 2
    assert [result["external_id"] for result in data["results"]] == ["batch-1", "batch-2"]
    assert data["successful"] == 2
    assert len(_dispatched_events()) == 2


def test_empty_body_is_rejected() -> None:
    owner_id = _seed_webhook_owner()

    response = client.post(
        f"/api/webhooks/fireflies/{owner_id}",
        content=b"  ",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 422
    assert _dispatched_events() == []
