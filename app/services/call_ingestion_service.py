import hashlib
import hmac
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.call_webhook import (
    CallSource,
    CallWebhookResponse,
    WebhookUnitResult,
    WebhookUnitStatus,
)
from app.services.analysis_dispatcher import AnalysisDispatcher, create_analysis_dispatcher
from app.services.analytics_mirror import AnalyticsMirror
from app.services.call_event_models import (
    DuplicateCandidate,
    DuplicateMatchType,
    NormalizedCallEvent,
)
from app.services.call_ingestion_errors import (
    AnalysisDispatchError,
    DuplicateCallRecordError,
    InputError,
    StorageError,
    UnsupportedEventError,
)
from app.services.call_record_store import (
    CallRecordStore,
    build_call_record_document,
    create_call_record_store,
)
from app.services.duplicate_call_detector import DuplicateCallDetector
from app.services.payload_normalizer import normalize, split_units, unwrap_envelope
from app.services.sales_rep_resolver import SalesRepResolver
from app.services.user_directory import UserDirectory, create_user_directory

logger = logging.getLogger(__name__)


class CallIngestionService:
    def __init__(
        self,
        settings: Settings,
        store: CallRecordStore | None = None,
        user_directory: UserDirectory | None = None,
        dispatcher: AnalysisDispatcher | None = None,
        analytics_mirror: AnalyticsMirror | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_call_record_store(
            store_name=settings.call_records_store,
            mongodb_uri=settings.mongodb_uri,
            mongodb_db_name=settings.mongodb_db_name,
            mongodb_collection_name=settings.mongodb_call_records_collection,
            mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
            mongodb_socket_timeout_ms=settings.mongodb_socket_timeout_ms,
        )
        self.user_directory = user_directory or create_user_directory(settings)
        self.dispatcher = dispatcher or create_analysis_dispatcher(settings)
        self.analytics_mirror = analytics_mirror or AnalyticsMirror.from_settings(settings)
        self.resolver = SalesRepResolver(self.user_directory)
        self.detector = DuplicateCallDetector(self.store)

    def process_webhook(
        self,
        provider: CallSource,
        owner_identifier: str,
        body: Any,
        shared_secret: str | None = None,
        raw_body: bytes | None = None,
        signature: str | None = None,
        claap_secret: str | None = None,
    ) -> CallWebhookResponse:
        self._validate_auth(
            provider=provider,
            shared_secret=shared_secret,
            raw_body=raw_body,
            signature=signature,
            claap_secret=claap_secret,
        )
        owner = self._load_webhook_owner(owner_identifier)
        received_at = datetime.now(UTC)

        results: list[WebhookUnitResult] = []
        for index, unit in enumerate(split_units(body)):
            try:
                result = self._process_unit(
                    index=index,
                    unit=unit,
                    provider=provider,
                    owner=owner,
                    received_at=received_at,
                )
            except Exception as exc:
                logger.exception(
                    "Webhook unit failed provider=%s owner_user_id=%s unit_index=%s",
                    provider.value,
                    owner["_id"],
                    index,
                )
                result = WebhookUnitResult(
                    index=index,
                    status=WebhookUnitStatus.error,
                    message=f"Unexpected error: {exc}",
                )
            results.append(result)

        return CallWebhookResponse(
            provider=provider,
            owner_user_id=str(owner["_id"]),
            results=results,
            total_processed=len(results),
            successful=sum(1 for result in results if result.status == WebhookUnitStatus.success),
            skipped=sum(1 for result in results if result.status == WebhookUnitStatus.skipped),
            errors=sum(1 for result in results if result.status == WebhookUnitStatus.error),
            received_at=received_at,
        )

    def _process_unit(
        self,
        *,
        index: int,
        unit: Any,
        provider: CallSource,
        owner: Mapping[str, Any],
        received_at: datetime,
    ) -> WebhookUnitResult:
        try:
            raw_payload = unwrap_envelope(unit)
            event = normalize(raw_payload, provider, default_title=self.settings.default_call_title)
        except UnsupportedEventError as exc:
            logger.info(
                "Webhook unit skipped provider=%s unit_index=%s reason=%s",
                provider.value,
                index,
                exc,
            )
            return WebhookUnitResult(index=index, status=WebhookUnitStatus.skipped, message=str(exc))
        except InputError as exc:
            logger.warning(
                "Webhook unit rejected provider=%s unit_index=%s error=%s",
                provider.value,
                index,
                exc,
            )
            return WebhookUnitResult(index=index, status=WebhookUnitStatus.error, message=str(exc))

        organization_id = _organization_scope(owner)
        resolution = self.resolver.resolve(
            organization_id,
            event.reported_owner_email,
            event.reported_owner_name,
            owner,
        )
        scheduled_start_time = event.effective_start_time or received_at

        try:
            duplicate_check = self.detector.check(
                self._build_duplicate_candidate(
                    organization_id=organization_id,
                    sales_rep_id=resolution.user_id,
                    scheduled_start_time=scheduled_start_time,
                    event=event,
                ),
            )
        except StorageError as exc:
            return self._storage_failure(index, provider, event, exc)

        if duplicate_check.is_duplicate:
            logger.info(
                "Webhook unit skipped provider=%s external_id=%s match_type=%s existing_call_record_id=%s reason=%s",
                provider.value,
                event.external_id,
                duplicate_check.match_type.value,
                duplicate_check.existing_record_id,
                duplicate_check.reason,
            )
            return WebhookUnitResult(
                index=index,
                status=WebhookUnitStatus.skipped,
                external_id=event.external_id,
                call_record_id=duplicate_check.existing_record_id,
                match_type=duplicate_check.match_type.value,
                resolved_by=resolution.resolved_by.value,
                message=duplicate_check.reason,
            )

        document = build_call_record_document(
            organization_id=organization_id,
            event=event,
            resolution=resolution,
            scheduled_start_time=scheduled_start_time,
        )
        try:
            record_id = self.store.insert_if_absent(document)
        except DuplicateCallRecordError as exc:
            # A concurrent delivery wrote the same call between check and insert.
            logger.info(
                "Webhook unit skipped provider=%s external_id=%s match_type=%s existing_call_record_id=%s reason=unique_constraint",
                provider.value,
                event.external_id,
                DuplicateMatchType.identifier_match.value,
                exc.existing_record_id,
            )
            return WebhookUnitResult(
                index=index,
                status=WebhookUnitStatus.skipped,
                external_id=event.external_id,
                call_record_id=exc.existing_record_id,
                match_type=DuplicateMatchType.identifier_match.value,
                resolved_by=resolution.resolved_by.value,
                message="Call already exists with matching external id",
            )
        except StorageError as exc:
            return self._storage_failure(index, provider, event, exc)

        self._mirror_call_record(record_id, document)

        try:
            self.dispatcher.dispatch(record_id, provider.value)
        except AnalysisDispatchError as exc:
            logger.error(
                "Analysis dispatch failed provider=%s call_record_id=%s orphaned_record=true error=%s",
                provider.value,
                record_id,
                exc,
            )
            return WebhookUnitResult(
                index=index,
                status=WebhookUnitStatus.error,
                external_id=event.external_id,
                call_record_id=record_id,
                orphaned_record_id=record_id,
                resolved_by=resolution.resolved_by.value,
                message=f"Call record stored but analysis dispatch failed: {exc}",
            )

        logger.info(
            "Webhook unit stored provider=%s external_id=%s call_record_id=%s sales_rep_id=%s resolved_by=%s",
            provider.value,
            event.external_id,
            record_id,
            resolution.user_id,
            resolution.resolved_by.value,
        )
        return WebhookUnitResult(
            index=index,
            status=WebhookUnitStatus.success,
            external_id=event.external_id,
            call_record_id=record_id,
            resolved_by=resolution.resolved_by.value,
            message="Call record created successfully",
        )

    def _build_duplicate_candidate(
        self,
        *,
        organization_id: str,
        sales_rep_id: str,
        scheduled_start_time: datetime,
        event: NormalizedCallEvent,
    ) -> DuplicateCandidate:
        return DuplicateCandidate(
            organization_id=organization_id,
            sales_rep_id=sales_rep_id,
            scheduled_start_time=scheduled_start_time,
            title=event.title,
            external_id=event.external_id,
            reported_owner_email=event.reported_owner_email,
            reported_owner_name=event.reported_owner_name,
            invitee_emails=[invitee.email for invitee in event.invitees if invitee.email],
            invitee_names=[invitee.name for invitee in event.invitees if invitee.name],
        )

    def _storage_failure(
        self,
        index: int,
        provider: CallSource,
        event: NormalizedCallEvent,
        exc: StorageError,
    ) -> WebhookUnitResult:
        logger.error(
            "Call record storage failed provider=%s external_id=%s error=%s",
            provider.value,
            event.external_id,
            exc,
        )
        return WebhookUnitResult(
            index=index,
            status=WebhookUnitStatus.error,
            external_id=event.external_id,
            message=str(exc),
        )

    def _mirror_call_record(self, record_id: str, document: Mapping[str, Any]) -> None:
        try:
            self.analytics_mirror.mirror_call_record(record_id, document)
        except Exception:
            # Analytics copies must never affect the ingestion outcome.
            logger.exception("Analytics mirror raised call_record_id=%s", record_id)

    def _load_webhook_owner(self, owner_identifier: str) -> dict[str, Any]:
        cleaned_identifier = owner_identifier.strip()
        if not cleaned_identifier:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Webhook URL must include the owner user_id.",
            )
        try:
            owner = self.user_directory.find_webhook_owner(cleaned_identifier)
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to query user directory.",
            ) from exc
        if not owner:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Webhook owner not found or inactive.",
            )
        return owner

    def _validate_auth(
        self,
        provider: CallSource,
        shared_secret: str | None,
        raw_body: bytes | None,
        signature: str | None,
        claap_secret: str | None,
    ) -> None:
        if provider == CallSource.fireflies:
            expected_secret = self.settings.fireflies_webhook_secret
            if not expected_secret:
                return
            if raw_body and signature and self._is_valid_hmac_signature(
                payload=raw_body,
                signature=signature,
                secret=expected_secret,
            ):
                return
            if shared_secret and hmac.compare_digest(shared_secret, expected_secret):
                return
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature.",
            )

        if provider == CallSource.claap:
            expected_secret = self.settings.claap_webhook_secret
            if not expected_secret or not claap_secret:
                return
            if hmac.compare_digest(claap_secret, expected_secret):
                return
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook secret.",
            )

    def _is_valid_hmac_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        provided_signature = signature.strip()
        if not provided_signature:
            return False
        if provided_signature.startswith("sha256="):
            provided_signature = provided_signature.split("=", maxsplit=1)[1].strip()

        computed_signature = hmac.new(
            key=secret.encode("utf-8"),
            msg=payload,
            digestmod=hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(computed_signature, provided_signature)


def _organization_scope(owner: Mapping[str, Any]) -> str:
    organization_id = owner.get("organization_id")
    if organization_id:
        return str(organization_id)
    # Owners outside any organization only deduplicate against their own calls.
    return f"user:{owner['_id']}"
