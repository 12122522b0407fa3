"""Webhook payload normalization.

Each platform payload generation is a ``PayloadFormat`` variant with its own
parser. ``detect_payload_format`` is the only place that inspects key
presence; parsers never guess the shape they were handed.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable, Mapping
from datetime import timedelta
from typing import Any

from app.schemas.call_webhook import CallSource
from app.services.call_event_models import Invitee, NormalizedCallEvent, PayloadFormat
from app.services.call_ingestion_errors import InputError, UnsupportedEventError
from app.services.payload_values import (
    email_domain,
    extract_first_text,
    extract_path,
    minutes_between,
    normalize_email,
    parse_timestamp,
    to_bool,
    to_float,
    to_mapping,
    to_text,
)
from app.services.transcript_assembler import assemble

DEFAULT_CALL_TITLE = "Untitled Meeting"
_ENCODED_ENVELOPE_FIELDS = ("data", "transcript")
# A JSON array worth decoding starts with an object, array, string or is empty;
# "[00:00:01] Speaker: ..." plaintext must not be mistaken for one.
_JSON_ARRAY_PREFIX = re.compile(r"^\[\s*[\{\[\"\]]")


def split_units(body: Any) -> list[Any]:
    """Split a delivery into call units.

    A top-level ``data`` envelope holding a batch (as a list or as stringified
    JSON) yields the batch entries. Malformed envelopes are left in place for
    ``unwrap_envelope`` to reject per unit.
    """
    if isinstance(body, list):
        return list(body)
    if isinstance(body, Mapping):
        envelope = body.get("data")
        if isinstance(envelope, str) and _looks_like_encoded_json(envelope):
            try:
                envelope = json.loads(envelope)
            except json.JSONDecodeError:
                return [body]
        if isinstance(envelope, list):
            return list(envelope)
    return [body]


def unwrap_envelope(unit: Any) -> dict[str, Any]:
    if not isinstance(unit, Mapping):
        raise InputError("Webhook unit must be a JSON object.")

    unwrapped = dict(unit)
    for field_name in _ENCODED_ENVELOPE_FIELDS:
        raw_value = unwrapped.get(field_name)
        if not isinstance(raw_value, str) or not _looks_like_encoded_json(raw_value):
            continue
        try:
            unwrapped[field_name] = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise InputError(f"Field '{field_name}' contains malformed JSON.") from exc
    return unwrapped


def detect_payload_format(raw: Mapping[str, Any], source: CallSource) -> PayloadFormat:
    candidate_formats = _FORMATS_BY_SOURCE[source]
    for payload_format in candidate_formats:
        if _DETECTORS[payload_format](raw):
            return payload_format
    return candidate_formats[-1]


def normalize(
    raw: Mapping[str, Any],
    source: CallSource,
    *,
    default_title: str = DEFAULT_CALL_TITLE,
) -> NormalizedCallEvent:
    if not isinstance(raw, Mapping):
        raise InputError("Webhook unit must be a JSON object.")

    payload_format = detect_payload_format(raw, source)
    event = _PARSERS[payload_format](raw, source)
    if not event.title:
        event.title = default_title
    if not event.external_id:
        event.external_id = synthesize_external_id(raw, source)
        event.external_id_synthesized = True
    return event


def synthesize_external_id(raw: Mapping[str, Any], source: CallSource) -> str:
    canonical_payload = json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical_payload.encode("utf-8")).hexdigest()
    return f"{source.value}-{digest[:24]}"


def parse_legacy_invitee(encoded_invitee: Any) -> list[Invitee]:
    """Parse the newline-delimited ``key: value`` single-invitee encoding."""
    text = to_text(encoded_invitee)
    if not text:
        return []

    fields: dict[str, str] = {}
    for line in text.splitlines():
        key, separator, value = line.partition(":")
        if not separator:
            continue
        normalized_key = key.strip().lower()
        if normalized_key and value.strip():
            fields[normalized_key] = value.strip()
    if not fields:
        return []

    return [
        Invitee(
            email=(normalize_email(fields.get("email")) or ""),
            name=fields.get("name", ""),
            is_external=fields.get("is_external", "").lower() == "true",
        ),
    ]


def _looks_like_encoded_json(value: str) -> bool:
    stripped = value.strip()
    if stripped.startswith("{"):
        return True
    return bool(_JSON_ARRAY_PREFIX.match(stripped))


def _is_fathom_recording(raw: Mapping[str, Any]) -> bool:
    recording_id = raw.get("recording_id")
    has_numeric_recording_id = isinstance(recording_id, int) and not isinstance(recording_id, bool)
    return has_numeric_recording_id or isinstance(raw.get("calendar_invitees"), list)


def _is_fathom_nested(raw: Mapping[str, Any]) -> bool:
    return isinstance(raw.get("fathom_user"), Mapping)


def _always(raw: Mapping[str, Any]) -> bool:
    return True


def _parse_fathom_recording(raw: Mapping[str, Any], source: CallSource) -> NormalizedCallEvent:
    recorded_by = to_mapping(raw.get("recorded_by")) or {}
    owner_email = normalize_email(recorded_by.get("email"))
    scheduled_start = parse_timestamp(raw.get("scheduled_start_time"))
    scheduled_end = parse_timestamp(raw.get("scheduled_end_time"))
    recording_start = parse_timestamp(raw.get("recording_start_time"))
    recording_end = parse_timestamp(raw.get("recording_end_time"))

    invitees: list[Invitee] = []
    raw_invitees = raw.get("calendar_invitees")
    if isinstance(raw_invitees, list):
        for raw_invitee in raw_invitees:
            invitee = _build_invitee(raw_invitee, owner_domain=email_domain(owner_email))
            if invitee:
                invitees.append(invitee)

    return NormalizedCallEvent(
        source=source,
        payload_format=PayloadFormat.fathom_recording,
        external_id=to_text(raw.get("recording_id")) or to_text(raw.get("id")) or "",
        title=extract_first_text(raw, ("title", "meeting_title")) or "",
        reported_owner_email=owner_email,
        reported_owner_name=to_text(recorded_by.get("name")),
        scheduled_start_time=scheduled_start,
        scheduled_end_time=scheduled_end,
        recording_start_time=recording_start,
        recording_end_time=recording_end,
        # Durations are derived from the windows, never read from the payload.
        scheduled_duration=round(minutes_between(scheduled_start, scheduled_end)),
        actual_duration=minutes_between(recording_start, recording_end),
        transcript=assemble(raw.get("transcript")),
        recording_url=to_text(raw.get("url")) or "",
        share_url=to_text(raw.get("share_url")) or "",
        invitees=invitees,
        metadata=_compact(
            {
                "fathom_recording_id": raw.get("recording_id"),
                "fathom_user_team": to_text(recorded_by.get("team")),
                "meeting_type": to_text(raw.get("meeting_type")),
                "transcript_language": to_text(raw.get("transcript_language")),
                "calendar_invitees_domains_type": to_text(raw.get("calendar_invitees_domains_type")),
                "created_at": to_text(raw.get("created_at")),
            },
        ),
    )


def _parse_fathom_nested(raw: Mapping[str, Any], source: CallSource) -> NormalizedCallEvent:
    fathom_user = to_mapping(raw.get("fathom_user")) or {}
    meeting = to_mapping(raw.get("meeting")) or {}
    recording = to_mapping(raw.get("recording")) or {}
    owner_email = normalize_email(fathom_user.get("email"))
    scheduled_start = parse_timestamp(meeting.get("scheduled_start_time"))
    scheduled_end = parse_timestamp(meeting.get("scheduled_end_time"))
    recording_start = parse_timestamp(recording.get("start_time"))
    recording_end = parse_timestamp(recording.get("end_time"))

    scheduled_duration = to_float(meeting.get("scheduled_duration_in_minute"))
    if scheduled_duration is None:
        scheduled_duration = minutes_between(scheduled_start, scheduled_end)
    actual_duration = to_float(recording.get("duration_in_minutes"))
    if actual_duration is None:
        actual_duration = minutes_between(recording_start, recording_end)

    raw_invitees = meeting.get("invitees")
    if isinstance(raw_invitees, list):
        invitees = [
            invitee
            for invitee in (
                _build_invitee(raw_invitee, owner_domain=email_domain(owner_email))
                for raw_invitee in raw_invitees
            )
            if invitee
        ]
    else:
        invitees = parse_legacy_invitee(raw_invitees)

    raw_transcript = raw.get("transcript")
    if raw_transcript is None:
        raw_transcript = raw.get("transcript_plaintext")

    return NormalizedCallEvent(
        source=source,
        payload_format=PayloadFormat.fathom_nested,
        external_id=to_text(raw.get("id")) or to_text(recording.get("id")) or "",
        title=to_text(meeting.get("title")) or extract_first_text(raw, ("title", "meeting_title")) or "",
        reported_owner_email=owner_email,
        reported_owner_name=to_text(fathom_user.get("name")),
        scheduled_start_time=scheduled_start,
        scheduled_end_time=scheduled_end,
        recording_start_time=recording_start,
        recording_end_time=recording_end,
        scheduled_duration=round(scheduled_duration),
        actual_duration=actual_duration,
        transcript=assemble(raw_transcript),
        recording_url=to_text(recording.get("url")) or "",
        share_url=to_text(recording.get("share_url")) or "",
        invitees=invitees,
        metadata=_compact(
            {
                "fathom_user_team": to_text(fathom_user.get("team")),
                "meeting_join_url": to_text(meeting.get("join_url")),
                "external_domains": meeting.get("external_domains"),
                "has_external_invitees": to_bool(meeting.get("has_external_invitees")) or None,
            },
        ),
    )


def _parse_fathom_legacy(raw: Mapping[str, Any], source: CallSource) -> NormalizedCallEvent:
    scheduled_start = parse_timestamp(raw.get("meeting_scheduled_start_time"))
    scheduled_end = parse_timestamp(raw.get("meeting_scheduled_end_time"))

    scheduled_duration = to_float(raw.get("meeting_scheduled_duration_in_minute"))
    if scheduled_duration is None:
        scheduled_duration = minutes_between(scheduled_start, scheduled_end)

    invitees = parse_legacy_invitee(raw.get("meeting_invitees"))
    if not invitees and (raw.get("meeting_invitees_email") or raw.get("meeting_invitees_name")):
        invitees = [
            Invitee(
                email=normalize_email(raw.get("meeting_invitees_email")) or "",
                name=to_text(raw.get("meeting_invitees_name")) or "",
                is_external=to_bool(raw.get("meeting_invitees_is_external")),
            ),
        ]

    return NormalizedCallEvent(
        source=source,
        payload_format=PayloadFormat.fathom_legacy,
        external_id=to_text(raw.get("id")) or "",
        title=to_text(raw.get("meeting_title")) or "",
        # Legacy payloads spell the field with a double "l".
        reported_owner_email=normalize_email(raw.get("fathom_user_emaill"))
        or normalize_email(raw.get("fathom_user_email")),
        reported_owner_name=to_text(raw.get("fathom_user_name")),
        scheduled_start_time=scheduled_start,
        scheduled_end_time=scheduled_end,
        scheduled_duration=round(scheduled_duration),
        actual_duration=to_float(raw.get("recording_duration_in_minutes")) or 0.0,
        transcript=assemble(raw.get("transcript_plaintext")),
        recording_url=to_text(raw.get("recording_url")) or "",
        share_url=to_text(raw.get("recording_share_url")) or "",
        invitees=invitees,
        metadata=_compact(
            {
                "fathom_user_team": to_text(raw.get("fathom_user_team")),
                "meeting_join_url": to_text(raw.get("meeting_join_url")),
                "external_domains": to_text(raw.get("meeting_external_domains")),
                "has_external_invitees": to_bool(raw.get("meeting_has_external_invitees")) or None,
            },
        ),
    )


def _parse_fireflies_transcript(raw: Mapping[str, Any], source: CallSource) -> NormalizedCallEvent:
    transcript = to_mapping(extract_path(raw, "data.transcript"))
    if transcript is None:
        transcript = to_mapping(raw.get("transcript")) or dict(raw)

    host_email = normalize_email(transcript.get("host_email")) or normalize_email(
        transcript.get("organizer_email"),
    )
    user = to_mapping(transcript.get("user")) or {}
    start_time = parse_timestamp(transcript.get("date"))
    duration = to_float(transcript.get("duration")) or 0.0
    end_time = start_time + timedelta(minutes=duration) if start_time and duration else None

    invitees: list[Invitee] = []
    raw_attendees = transcript.get("meeting_attendees")
    if isinstance(raw_attendees, list):
        for raw_attendee in raw_attendees:
            invitee = _build_invitee(raw_attendee, owner_domain=email_domain(host_email))
            if invitee and invitee.email and invitee.email != host_email:
                invitees.append(invitee)

    sentences = transcript.get("sentences")
    transcript_url = to_text(transcript.get("transcript_url")) or ""
    return NormalizedCallEvent(
        source=source,
        payload_format=PayloadFormat.fireflies_transcript,
        external_id=to_text(transcript.get("id")) or extract_first_text(raw, ("meetingId", "meeting_id")) or "",
        title=to_text(transcript.get("title")) or "",
        reported_owner_email=host_email,
        reported_owner_name=to_text(user.get("name")) or to_text(transcript.get("organizer_name")),
        scheduled_start_time=start_time,
        scheduled_end_time=end_time,
        recording_start_time=start_time,
        recording_end_time=end_time,
        # Fireflies reports a single duration for both windows.
        scheduled_duration=round(duration),
        actual_duration=duration,
        transcript=assemble(sentences if isinstance(sentences, list) else transcript.get("text")),
        recording_url=to_text(transcript.get("video_url")) or transcript_url,
        share_url=transcript_url,
        invitees=invitees,
        metadata=_compact(
            {
                "meeting_link": to_text(transcript.get("meeting_link")),
                "calendar_id": to_text(transcript.get("calendar_id")),
                "participant_emails": transcript.get("participants"),
                "total_sentences": len(sentences) if isinstance(sentences, list) else None,
                "event_type": extract_first_text(raw, ("eventType", "event_type", "event")),
                "client_reference_id": extract_first_text(raw, ("clientReferenceId", "client_reference_id")),
            },
        ),
    )


def _parse_zoom_recording(raw: Mapping[str, Any], source: CallSource) -> NormalizedCallEvent:
    event_type = to_text(raw.get("event"))
    if event_type and event_type != "recording.completed":
        raise UnsupportedEventError(f"Unsupported Zoom event type: {event_type}")

    meeting = to_mapping(extract_path(raw, "payload.object")) or dict(raw)
    host_email = normalize_email(meeting.get("host_email"))
    meeting_id = to_text(meeting.get("id"))
    start_time = parse_timestamp(meeting.get("start_time"))
    duration = to_float(meeting.get("duration")) or 0.0
    end_time = start_time + timedelta(minutes=duration) if start_time and duration else None

    invitees: list[Invitee] = []
    raw_participants = meeting.get("participants")
    if isinstance(raw_participants, list):
        for raw_participant in raw_participants:
            invitee = _build_invitee(raw_participant, owner_domain=email_domain(host_email))
            if invitee and (not invitee.email or invitee.email != host_email):
                invitees.append(invitee)
    elif isinstance(meeting.get("participant_user_names"), list):
        for raw_name in meeting["participant_user_names"]:
            name = to_text(raw_name)
            if name:
                invitees.append(Invitee(name=name))

    recording_files = meeting.get("recording_files")
    recording_url = ""
    if isinstance(recording_files, list) and recording_files:
        first_file = to_mapping(recording_files[0]) or {}
        recording_url = to_text(first_file.get("download_url")) or to_text(first_file.get("play_url")) or ""

    raw_transcript = meeting.get("transcript")
    if raw_transcript is None:
        raw_transcript = raw.get("transcript")

    return NormalizedCallEvent(
        source=source,
        payload_format=PayloadFormat.zoom_recording,
        external_id=to_text(meeting.get("uuid")) or meeting_id or "",
        title=to_text(meeting.get("topic")) or (f"Zoom Meeting {meeting_id}" if meeting_id else ""),
        reported_owner_email=host_email,
        reported_owner_name=to_text(meeting.get("host_name")),
        scheduled_start_time=start_time,
        scheduled_end_time=end_time,
        recording_start_time=start_time,
        recording_end_time=end_time,
        scheduled_duration=round(duration),
        actual_duration=duration,
        transcript=assemble(raw_transcript),
        recording_url=recording_url,
        share_url=to_text(meeting.get("share_url")) or "",
        invitees=invitees,
        metadata=_compact(
            {
                "zoom_meeting_id": meeting_id,
                "host_email": host_email,
                "participant_count": meeting.get("participant_count"),
                "recording_files": [
                    {
                        "type": file.get("file_type"),
                        "url": file.get("download_url"),
                        "size": file.get("file_size"),
                    }
                    for file in recording_files
                    if isinstance(file, Mapping)
                ]
                if isinstance(recording_files, list)
                else None,
            },
        ),
    )


def _parse_claap_recording(raw: Mapping[str, Any], source: CallSource) -> NormalizedCallEvent:
    event = to_mapping(raw.get("event")) or {}
    event_type = to_text(event.get("type"))
    if event_type and event_type != "recording_added":
        raise UnsupportedEventError(f"Unsupported Claap event type: {event_type}")

    recording = to_mapping(event.get("recording")) or to_mapping(raw.get("recording")) or {}
    raw_participants = recording.get("participants")
    participants = raw_participants if isinstance(raw_participants, list) else []
    owner = to_mapping(recording.get("recorder")) or _find_claap_owner(participants) or {}
    owner_email = normalize_email(owner.get("email"))

    invitees: list[Invitee] = []
    for raw_participant in participants:
        invitee = _build_invitee(raw_participant, owner_domain=email_domain(owner_email))
        if invitee and (not invitee.email or invitee.email != owner_email):
            invitees.append(invitee)

    created_at = parse_timestamp(recording.get("createdAt"))
    duration_seconds = to_float(recording.get("durationSeconds")) or 0.0
    end_time = created_at + timedelta(seconds=duration_seconds) if created_at and duration_seconds else None

    transcripts = to_mapping(recording.get("transcripts")) or {}
    raw_transcript: Any = transcripts.get("segments")
    if raw_transcript is None:
        raw_transcript = transcripts.get("text")
    if raw_transcript is None:
        raw_transcript = recording.get("transcript")

    video_url = to_text(recording.get("videoUrl")) or ""
    return NormalizedCallEvent(
        source=source,
        payload_format=PayloadFormat.claap_recording,
        external_id=to_text(recording.get("id")) or "",
        title=to_text(recording.get("title")) or "",
        reported_owner_email=owner_email,
        reported_owner_name=to_text(owner.get("name")),
        scheduled_start_time=created_at,
        scheduled_end_time=end_time,
        recording_start_time=created_at,
        recording_end_time=end_time,
        scheduled_duration=round(duration_seconds / 60),
        actual_duration=round(duration_seconds / 60, 2),
        transcript=assemble(raw_transcript),
        recording_url=video_url,
        share_url=video_url,
        invitees=invitees,
        metadata=_compact(
            {
                "claap_event_id": to_text(raw.get("eventId")),
                "transcript_url": to_text(extract_path(transcripts, "json.url")),
                "transcript_expires_at": to_text(extract_path(transcripts, "json.expiresAt")),
                "claap_insights": to_mapping(recording.get("insights")),
                "claap_action_items": recording.get("actionItems"),
            },
        ),
    )


def _find_claap_owner(participants: list[Any]) -> dict[str, Any] | None:
    for participant in participants:
        if not isinstance(participant, Mapping):
            continue
        role = (to_text(participant.get("role")) or "").lower()
        if role in {"recorder", "host", "organizer", "owner"}:
            return dict(participant)
    return None


def _build_invitee(raw_invitee: Any, *, owner_domain: str | None) -> Invitee | None:
    if isinstance(raw_invitee, str):
        email = normalize_email(raw_invitee)
        if email:
            return Invitee(email=email, is_external=_is_external_email(email, owner_domain))
        name = to_text(raw_invitee)
        return Invitee(name=name) if name else None
    if not isinstance(raw_invitee, Mapping):
        return None

    email = normalize_email(raw_invitee.get("email"))
    name = (
        to_text(raw_invitee.get("name"))
        or to_text(raw_invitee.get("displayName"))
        or to_text(raw_invitee.get("display_name"))
        or (email.split("@", maxsplit=1)[0] if email else None)
    )
    if not email and not name:
        return None

    raw_is_external = raw_invitee.get("is_external")
    if raw_is_external is None:
        is_external = _is_external_email(email, owner_domain)
    else:
        is_external = to_bool(raw_is_external)
    return Invitee(email=email or "", name=name or "", is_external=is_external)


def _is_external_email(email: str | None, owner_domain: str | None) -> bool:
    if not email:
        return True
    if not owner_domain:
        return False
    return email_domain(email) != owner_domain


def _compact(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value not in (None, "", [], {})}


_FORMATS_BY_SOURCE: dict[CallSource, tuple[PayloadFormat, ...]] = {
    CallSource.fathom: (
        PayloadFormat.fathom_recording,
        PayloadFormat.fathom_nested,
        PayloadFormat.fathom_legacy,
    ),
    CallSource.fireflies: (PayloadFormat.fireflies_transcript,),
    CallSource.zoom: (PayloadFormat.zoom_recording,),
    CallSource.claap: (PayloadFormat.claap_recording,),
}

_DETECTORS: dict[PayloadFormat, Callable[[Mapping[str, Any]], bool]] = {
    PayloadFormat.fathom_recording: _is_fathom_recording,
    PayloadFormat.fathom_nested: _is_fathom_nested,
    PayloadFormat.fathom_legacy: _always,
    PayloadFormat.fireflies_transcript: _always,
    PayloadFormat.zoom_recording: _always,
    PayloadFormat.claap_recording: _always,
}

_PARSERS: dict[PayloadFormat, Callable[[Mapping[str, Any], CallSource], NormalizedCallEvent]] = {
    PayloadFormat.fathom_recording: _parse_fathom_recording,
    PayloadFormat.fathom_nested: _parse_fathom_nested,
    PayloadFormat.fathom_legacy: _parse_fathom_legacy,
    PayloadFormat.fireflies_transcript: _parse_fireflies_transcript,
    PayloadFormat.zoom_recording: _parse_zoom_recording,
    PayloadFormat.claap_recording: _parse_claap_recording,
}
