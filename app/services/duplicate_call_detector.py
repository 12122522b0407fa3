from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, time, timedelta
from typing import Any

from app.services.call_event_models import (
    DuplicateCandidate,
    DuplicateCheckResult,
    DuplicateMatchType,
)
from app.services.call_record_store import CallRecordStore


class DuplicateCallDetector:
    """Decide whether a call already has a stored record.

    The external identifier is checked first across every per-platform id
    field. Failing that, a composite key is used: same organization and sales
    rep, same UTC calendar date, title or invitee overlap, and a consistent
    reported owner. Calendar date rather than timestamp because platforms
    disagree on start times for the same meeting.
    """

    def __init__(self, store: CallRecordStore) -> None:
        self.store = store

    def check(self, candidate: DuplicateCandidate) -> DuplicateCheckResult:
        if candidate.external_id:
            existing = self.store.find_by_external_id(candidate.organization_id, candidate.external_id)
            if existing:
                return DuplicateCheckResult(
                    is_duplicate=True,
                    match_type=DuplicateMatchType.identifier_match,
                    existing_record_id=_record_id(existing),
                    reason=f"Call already exists with external id {candidate.external_id}",
                )

        day_start, day_end = _calendar_day_bounds(candidate.scheduled_start_time)
        same_day_records = self.store.find_by_sales_rep_between(
            candidate.organization_id,
            candidate.sales_rep_id,
            day_start,
            day_end,
        )
        for record in same_day_records:
            matched_on = _composite_match(candidate, record)
            if matched_on is None:
                continue
            return DuplicateCheckResult(
                is_duplicate=True,
                match_type=DuplicateMatchType.composite_key_match,
                existing_record_id=_record_id(record),
                reason=(
                    f"Duplicate found: same sales rep, date {day_start.date().isoformat()}, "
                    f"{matched_on}"
                ),
            )

        return DuplicateCheckResult(
            is_duplicate=False,
            match_type=DuplicateMatchType.none,
            reason="No duplicate found",
        )


def _composite_match(candidate: DuplicateCandidate, record: Mapping[str, Any]) -> str | None:
    if not _owner_matches(candidate, record):
        return None

    candidate_title = _normalize(candidate.title)
    if candidate_title and candidate_title == _normalize(record.get("title")):
        return f'title "{candidate.title}"'

    overlap = _invitee_overlap(candidate, record)
    if overlap:
        return f'invitee "{overlap}"'
    return None


def _owner_matches(candidate: DuplicateCandidate, record: Mapping[str, Any]) -> bool:
    # Missing owner data on either side does not contradict a match.
    candidate_email = _normalize(candidate.reported_owner_email)
    record_email = _normalize(record.get("reported_owner_email"))
    if candidate_email and record_email:
        return candidate_email == record_email

    candidate_name = _normalize(candidate.reported_owner_name)
    record_name = _normalize(record.get("reported_owner_name"))
    if candidate_name and record_name:
        return candidate_name == record_name
    return True


def _invitee_overlap(candidate: DuplicateCandidate, record: Mapping[str, Any]) -> str | None:
    record_emails: set[str] = set()
    record_names: set[str] = set()
    raw_invitees = record.get("invitees")
    if isinstance(raw_invitees, list):
        for invitee in raw_invitees:
            if not isinstance(invitee, Mapping):
                continue
            email = _normalize(invitee.get("email"))
            name = _normalize(invitee.get("name"))
            if email:
                record_emails.add(email)
            if name:
                record_names.add(name)

    for email in candidate.invitee_emails:
        if _normalize(email) in record_emails:
            return email
    for name in candidate.invitee_names:
        if _normalize(name) in record_names:
            return name
    return None


def _calendar_day_bounds(moment: datetime) -> tuple[datetime, datetime]:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    day_start = datetime.combine(moment.astimezone(UTC).date(), time.min, tzinfo=UTC)
    return day_start, day_start + timedelta(days=1)


def _normalize(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.split()).lower()


def _record_id(record: Mapping[str, Any]) -> str | None:
    record_id = record.get("_id")
    if record_id is None:
        return None
    return str(record_id)
