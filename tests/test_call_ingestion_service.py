import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

import pytest
from fastapi import HTTPException

from app.core.config import Settings
from app.schemas.call_webhook import CallSource, WebhookUnitStatus
from app.services.analysis_dispatcher import AnalysisDispatcher, InMemoryAnalysisDispatcher
from app.services.analytics_mirror import AnalyticsMirror
from app.services.call_ingestion_errors import AnalysisDispatchError, StorageError
from app.services.call_ingestion_service import CallIngestionService
from app.services.call_record_store import InMemoryCallRecordStore
from app.services.user_directory import InMemoryUserDirectory

ORGANIZATION_ID = "org-1"


class _BlindCallRecordStore(InMemoryCallRecordStore):
    """Store whose reads miss, as when a concurrent delivery has not committed yet."""

    def find_by_external_id(self, organization_id: str, external_id: str) -> dict[str, Any] | None:
        return None

    def find_by_sales_rep_between(self, organization_id, sales_rep_id, start, end) -> list[dict[str, Any]]:
        return []


class _FailingDispatcher(AnalysisDispatcher):
    def dispatch(self, call_record_id: str, source: str) -> None:
        raise AnalysisDispatchError("job bus unavailable")


class _RaisingMirror(AnalyticsMirror):
    def __init__(self) -> None:
        super().__init__(api_url="http://analytics.invalid", api_token="token", datasource="calls", enabled=True)

    def mirror_call_record(self, record_id: str, record: Mapping[str, Any]) -> bool:
        raise RuntimeError("analytics exploded")


class _FlakyStore(InMemoryCallRecordStore):
    def insert_if_absent(self, record: Mapping[str, Any]) -> str:
        if record.get("external_id") == "storage-down":
            raise StorageError("Unable to persist call record: timeout")
        return super().insert_if_absent(record)


@pytest.fixture
def directory() -> InMemoryUserDirectory:
    user_directory = InMemoryUserDirectory()
    user_directory.add_user(
        organization_id=ORGANIZATION_ID,
        email="head@seller.io",
        first_name="Hana",
        last_name="Head",
        external_account_id="auth0|head",
        role="manager",
    )
    user_directory.add_user(
        organization_id=ORGANIZATION_ID,
        email="rep@seller.io",
        first_name="Rita",
        last_name="Rep",
    )
    return user_directory


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "call_records_store": "memory",
        "user_directory_store": "memory",
        "analysis_dispatcher": "memory",
        "analytics_mirror_enabled": False,
        "fireflies_webhook_secret": "",
        "claap_webhook_secret": "",
    }
    values.update(overrides)
    return Settings(**values)


def _build_service(
    directory: InMemoryUserDirectory,
    *,
    store: InMemoryCallRecordStore | None = None,
    dispatcher: AnalysisDispatcher | None = None,
    analytics_mirror: AnalyticsMirror | None = None,
    settings: Settings | None = None,
) -> CallIngestionService:
    return CallIngestionService(
        settings or _settings(),
        store=store or InMemoryCallRecordStore(),
        user_directory=directory,
        dispatcher=dispatcher or InMemoryAnalysisDispatcher(),
        analytics_mirror=analytics_mirror,
    )


def _legacy_payload(call_id: str, title: str = "Discovery call with Acme") -> dict[str, Any]:
    return {
        "id": call_id,
        "meeting_title": title,
        "meeting_scheduled_start_time": "2024-01-01T10:00:00Z",
        "meeting_scheduled_end_time": "2024-01-01T10:30:00Z",
        "fathom_user_emaill": "rep@seller.io",
        "fathom_user_name": "Rita Rep",
        "transcript_plaintext": "Rita Rep: Hello.",
    }


def test_same_payload_twice_stores_and_dispatches_once(directory: InMemoryUserDirectory) -> None:
    store = InMemoryCallRecordStore()
    dispatcher = InMemoryAnalysisDispatcher()
    service = _build_service(directory, store=store, dispatcher=dispatcher)

    first = service.process_webhook(CallSource.fathom, "user-1", _legacy_payload("abc123"))
    second = service.process_webhook(CallSource.fathom, "user-1", _legacy_payload("abc123"))

    assert first.successful == 1
    assert second.skipped == 1
    assert second.results[0].match_type == "identifier_match"
    assert second.results[0].call_record_id == first.results[0].call_record_id
    assert len(store.list_recent(10)) == 1
    assert dispatcher.events == [
        {"name": "call.process", "data": {"callRecordId": first.results[0].call_record_id, "source": "fathom"}},
    ]


def test_record_is_attributed_to_reported_rep(directory: InMemoryUserDirectory) -> None:
    store = InMemoryCallRecordStore()
    service = _build_service(directory, store=store)

    response = service.process_webhook(CallSource.fathom, "auth0|head", _legacy_payload("abc123"))

    assert response.owner_user_id == "user-1"
    assert response.results[0].resolved_by == "email"
    record = store.get_by_id(response.results[0].call_record_id)
    assert record is not None
    assert record["sales_rep_id"] == "user-2"
    assert record["sales_rep_name"] == "Rita Rep"
    assert record["status"] == "pending"
    assert record["fathom_call_id"] == "abc123"
    assert record["scheduled_duration"] == 30


def test_concurrent_write_is_reported_as_duplicate(directory: InMemoryUserDirectory) -> None:
    store = _BlindCallRecordStore()
    dispatcher = InMemoryAnalysisDispatcher()
    service = _build_service(directory, store=store, dispatcher=dispatcher)

    first = service.process_webhook(CallSource.fathom, "user-1", _legacy_payload("race-1"))
    second = service.process_webhook(CallSource.fathom, "user-1", _legacy_payload("race-1"))

    assert first.successful == 1
    assert second.skipped == 1
    assert second.results[0].match_type == "identifier_match"
    assert second.results[0].call_record_id == first.results[0].call_record_id
    assert len(dispatcher.events) == 1


def test_dispatch_failure_reports_orphaned_record(directory: InMemoryUserDirectory) -> None:
    store = InMemoryCallRecordStore()
    service = _build_service(directory, store=store, dispatcher=_FailingDispatcher())

    response = service.process_webhook(CallSource.fathom, "user-1", _legacy_payload("abc123"))

    result = response.results[0]
    assert response.errors == 1
    assert result.status == WebhookUnitStatus.error
    assert result.orphaned_record_id == result.call_record_id
    assert store.get_by_id(result.orphaned_record_id) is not None
    assert "dispatch failed" in result.message


def test_unit_failures_do_not_abort_siblings(directory: InMemoryUserDirectory) -> None:
    service = _build_service(directory, store=_FlakyStore())

    response = service.process_webhook(
        CallSource.fathom,
        "user-1",
        [
            _legacy_payload("first", title="First call"),
            "not an object",
            {"data": "{broken"},
            _legacy_payload("storage-down", title="Second call"),
            _legacy_payload("third", title="Third call"),
        ],
    )

    assert [result.status for result in response.results] == [
        WebhookUnitStatus.success,
        WebhookUnitStatus.error,
        WebhookUnitStatus.error,
        WebhookUnitStatus.error,
        WebhookUnitStatus.success,
    ]
    assert response.total_processed == 5
    assert response.successful == 2
    assert response.errors == 3
    assert response.results[3].external_id == "storage-down"


def test_unsupported_event_is_skipped(directory: InMemoryUserDirectory) -> None:
    service = _build_service(directory)

    response = service.process_webhook(
        CallSource.zoom,
        "user-1",
        {"event": "meeting.started", "payload": {"object": {"uuid": "z-1"}}},
    )

    assert response.skipped == 1
    assert response.results[0].match_type is None


def test_analytics_mirror_failure_does_not_change_outcome(directory: InMemoryUserDirectory) -> None:
    service = _build_service(directory, analytics_mirror=_RaisingMirror())

    response = service.process_webhook(CallSource.fathom, "user-1", _legacy_payload("abc123"))

    assert response.successful == 1


def test_unknown_or_inactive_owner_is_rejected(directory: InMemoryUserDirectory) -> None:
    directory.add_user(
        organization_id=ORGANIZATION_ID,
        email="former@seller.io",
        first_name="Fern",
        last_name="Former",
        is_active=False,
    )
    service = _build_service(directory)

    with pytest.raises(HTTPException) as unknown:
        service.process_webhook(CallSource.fathom, "user-404", _legacy_payload("abc123"))
    with pytest.raises(HTTPException) as inactive:
        service.process_webhook(CallSource.fathom, "user-3", _legacy_payload("abc123"))

    assert unknown.value.status_code == 404
    assert inactive.value.status_code == 404


def test_fireflies_secret_is_enforced(directory: InMemoryUserDirectory) -> None:
    service = _build_service(directory, settings=_settings(fireflies_webhook_secret="correct-secret"))
    payload = {"data": {"transcript": {"id": "ff-1", "title": "Weekly sync", "host_email": "rep@seller.io"}}}
    raw_body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(b"correct-secret", raw_body, hashlib.sha256).hexdigest()

    with pytest.raises(HTTPException) as rejected:
        service.process_webhook(CallSource.fireflies, "user-1", payload, shared_secret="wrong")
    signed = service.process_webhook(
        CallSource.fireflies,
        "user-1",
        payload,
        raw_body=raw_body,
        signature=f"sha256={signature}",
    )
    shared = service.process_webhook(CallSource.fireflies, "user-1", payload, shared_secret="correct-secret")

    assert rejected.value.status_code == 401
    assert signed.successful == 1
    assert shared.skipped == 1


def test_claap_secret_mismatch_is_rejected(directory: InMemoryUserDirectory) -> None:
    service = _build_service(directory, settings=_settings(claap_webhook_secret="claap-secret"))

    with pytest.raises(HTTPException) as rejected:
        service.process_webhook(CallSource.claap, "user-1", {}, claap_secret="nope")

    assert rejected.value.status_code == 401


def test_owners_without_organization_do_not_share_duplicates() -> None:
    user_directory = InMemoryUserDirectory()
    first_owner = user_directory.add_user(
        organization_id=None,
        email="solo.one@example.com",
        first_name="Solo",
        last_name="One",
    )
    second_owner = user_directory.add_user(
        organization_id=None,
        email="solo.two@example.com",
        first_name="Solo",
        last_name="Two",
    )
    store = InMemoryCallRecordStore()
    service = _build_service(user_directory, store=store)

    first = service.process_webhook(CallSource.fathom, first_owner["_id"], _legacy_payload("shared-id"))
    second = service.process_webhook(CallSource.fathom, second_owner["_id"], _legacy_payload("shared-id"))

    assert first.successful == 1
    assert second.successful == 1
    organization_ids = {record["organization_id"] for record in store.list_recent(10)}
    assert organization_ids == {f"user:{first_owner['_id']}", f"user:{second_owner['_id']}"}
