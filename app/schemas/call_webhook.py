from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class CallSource(StrEnum):
    fathom = "fathom"
    fireflies = "fireflies"
    zoom = "zoom"
    claap = "claap"


class WebhookUnitStatus(StrEnum):
    success = "success"
    skipped = "skipped"
    error = "error"


class WebhookUnitResult(BaseModel):
    index: int
    status: WebhookUnitStatus
    external_id: str | None = None
    call_record_id: str | None = None
    match_type: str | None = None
    resolved_by: str | None = None
    orphaned_record_id: str | None = None
    message: str


class CallWebhookResponse(BaseModel):
    message: str = "Webhook processed"
    provider: CallSource
    owner_user_id: str
    results: list[WebhookUnitResult] = Field(default_factory=list)
    total_processed: int = 0
    successful: int = 0
    skipped: int = 0
    errors: int = 0
    received_at: datetime
