from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from urllib import parse, request

from app.core.config import Settings

logger = logging.getLogger(__name__)


class AnalyticsMirror:
    """Best-effort copy of call records into the columnar analytics store.

    Failures are logged and swallowed; ingestion never depends on them.
    """

    def __init__(
        self,
        api_url: str,
        api_token: str,
        datasource: str,
        enabled: bool = False,
        timeout_seconds: float = 3.0,
    ) -> None:
        self.api_url = api_url
        self.api_token = api_token
        self.datasource = datasource
        self.enabled = enabled and bool(api_token)
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> AnalyticsMirror:
        return cls(
            api_url=settings.analytics_api_url,
            api_token=settings.analytics_api_token,
            datasource=settings.analytics_call_records_datasource,
            enabled=settings.analytics_mirror_enabled,
            timeout_seconds=settings.analytics_timeout_seconds,
        )

    def mirror_call_record(self, record_id: str, record: Mapping[str, Any]) -> bool:
        if not self.enabled:
            return False

        row = transform_call_record(record_id, record)
        query = parse.urlencode({"name": self.datasource})
        req = request.Request(
            f"{self.api_url}?{query}",
            data=json.dumps(row, default=str).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/x-ndjson",
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
        except (OSError, ValueError) as exc:
            logger.warning(
                "Analytics mirror failed datasource=%s call_record_id=%s error=%s",
                self.datasource,
                record_id,
                exc,
            )
            return False
        return True


def transform_call_record(record_id: str, record: Mapping[str, Any]) -> dict[str, Any]:
    invitees = record.get("invitees") if isinstance(record.get("invitees"), list) else []
    transcript = record.get("transcript") or ""
    return {
        "id": record_id,
        "organization_id": record.get("organization_id"),
        "sales_rep_id": record.get("sales_rep_id"),
        "sales_rep_name": record.get("sales_rep_name"),
        "source": record.get("source"),
        "external_id": record.get("external_id"),
        "title": record.get("title"),
        "scheduled_start_time": _format_datetime(record.get("scheduled_start_time")),
        "scheduled_end_time": _format_datetime(record.get("scheduled_end_time")),
        "scheduled_duration": record.get("scheduled_duration") or 0,
        "actual_duration": record.get("actual_duration") or 0,
        "invitee_count": len(invitees),
        "has_external_invitees": 1 if record.get("has_external_invitees") else 0,
        "has_transcript": 1 if transcript else 0,
        "transcript_length": len(transcript),
        "status": record.get("status"),
        "created_at": _format_datetime(record.get("created_at")),
    }


def _format_datetime(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return None
