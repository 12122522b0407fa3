import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from app.core.config import get_settings
from app.schemas.call_webhook import CallSource, CallWebhookResponse
from app.services.call_ingestion_service import CallIngestionService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post(
    "/{platform}",
    response_model=CallWebhookResponse,
    status_code=status.HTTP_200_OK,
)
def receive_unscoped_webhook(platform: CallSource) -> CallWebhookResponse:
    logger.warning("Webhook rejected provider=%s reason=missing_owner", platform.value)
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail="Webhook URL must include the owner user_id: /webhooks/{platform}/{owner_identifier}.",
    )


@router.post(
    "/{platform}/{owner_identifier}",
    response_model=CallWebhookResponse,
    status_code=status.HTTP_200_OK,
)
async def receive_call_webhook(
    platform: CallSource,
    owner_identifier: str,
    request: Request,
) -> CallWebhookResponse:
    body, raw_body = await _load_body_and_raw_body(request)
    logger.info(
        "Webhook received provider=%s path=%s has_signature=%s",
        platform.value,
        str(request.url.path),
        bool(request.headers.get("x-hub-signature")),
    )

    service = CallIngestionService(get_settings())
    try:
        response = service.process_webhook(
            provider=platform,
            owner_identifier=owner_identifier,
            body=body,
            shared_secret=_extract_shared_secret(request),
            raw_body=raw_body,
            signature=request.headers.get("x-hub-signature"),
            claap_secret=_clean_header(request.headers.get("x-claap-webhook-secret")),
        )
    except HTTPException as exc:
        logger.warning(
            "Webhook rejected provider=%s path=%s status_code=%s detail=%s",
            platform.value,
            str(request.url.path),
            exc.status_code,
            exc.detail,
        )
        raise
    except Exception:
        logger.exception(
            "Webhook processing failed provider=%s path=%s",
            platform.value,
            str(request.url.path),
        )
        raise

    logger.info(
        "Webhook processed provider=%s path=%s total=%s successful=%s skipped=%s errors=%s",
        platform.value,
        str(request.url.path),
        response.total_processed,
        response.successful,
        response.skipped,
        response.errors,
    )
    return response


def _extract_shared_secret(request: Request) -> str | None:
    x_webhook_secret = _clean_header(request.headers.get("x-webhook-secret"))
    if x_webhook_secret:
        return x_webhook_secret

    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    auth_scheme, _, auth_token = authorization.partition(" ")
    if auth_scheme.lower() != "bearer":
        return None

    token = auth_token.strip()
    return token or None


def _clean_header(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


async def _load_body_and_raw_body(request: Request) -> tuple[Any, bytes]:
    raw_body = await request.body()
    if not raw_body.strip():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must not be empty.",
        )
    try:
        parsed_body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be valid JSON.",
        ) from exc

    if not isinstance(parsed_body, (dict, list)):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be a JSON object or array.",
        )

    return parsed_body, raw_body
