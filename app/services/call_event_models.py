from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from app.schemas.call_webhook import CallSource


class PayloadFormat(StrEnum):
    fathom_recording = "fathom_recording"
    fathom_nested = "fathom_nested"
    fathom_legacy = "fathom_legacy"
    fireflies_transcript = "fireflies_transcript"
    zoom_recording = "zoom_recording"
    claap_recording = "claap_recording"


class ResolvedBy(StrEnum):
    email = "email"
    name = "name"
    fallback = "fallback"


class DuplicateMatchType(StrEnum):
    identifier_match = "identifier_match"
    composite_key_match = "composite_key_match"
    none = "none"


class CallRecordStatus(StrEnum):
    pending = "pending"
    processing = "processing"
    evaluated = "evaluated"
    archived = "archived"


@dataclass
class Invitee:
    email: str = ""
    name: str = ""
    is_external: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "name": self.name,
            "is_external": self.is_external,
        }


@dataclass
class NormalizedCallEvent:
    source: CallSource
    payload_format: PayloadFormat
    external_id: str
    title: str
    external_id_synthesized: bool = False
    reported_owner_email: str | None = None
    reported_owner_name: str | None = None
    scheduled_start_time: datetime | None = None
    scheduled_end_time: datetime | None = None
    recording_start_time: datetime | None = None
    recording_end_time: datetime | None = None
    scheduled_duration: int = 0
    actual_duration: float = 0.0
    transcript: str = ""
    recording_url: str = ""
    share_url: str = ""
    invitees: list[Invitee] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_external_invitees(self) -> bool:
        return any(invitee.is_external for invitee in self.invitees)

    @property
    def effective_start_time(self) -> datetime | None:
        return self.scheduled_start_time or self.recording_start_time


@dataclass
class SalesRepResolution:
    user: dict[str, Any]
    resolved_by: ResolvedBy

    @property
    def user_id(self) -> str:
        return str(self.user.get("_id", ""))

    @property
    def display_name(self) -> str:
        first_name = str(self.user.get("first_name") or "").strip()
        last_name = str(self.user.get("last_name") or "").strip()
        full_name = f"{first_name} {last_name}".strip()
        return full_name or str(self.user.get("email") or "")


@dataclass
class DuplicateCandidate:
    organization_id: str
    sales_rep_id: str
    scheduled_start_time: datetime
    title: str
    external_id: str | None = None
    reported_owner_email: str | None = None
    reported_owner_name: str | None = None
    invitee_emails: list[str] = field(default_factory=list)
    invitee_names: list[str] = field(default_factory=list)


@dataclass
class DuplicateCheckResult:
    is_duplicate: bool
    match_type: DuplicateMatchType
    reason: str
    existing_record_id: str | None = None
