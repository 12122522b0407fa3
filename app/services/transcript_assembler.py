from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from app.services.payload_values import to_float, to_text

UNKNOWN_SPEAKER = "Unknown"
DEFAULT_TIMESTAMP = "00:00:00"


def assemble(raw_transcript: Any) -> str:
    """Flatten a transcript into ``[timestamp] speaker: text`` lines.

    Plaintext is returned as-is (stripped). Turn sequences keep their input
    order; platforms deliver them chronologically.
    """
    if raw_transcript is None:
        return ""
    if isinstance(raw_transcript, str):
        return raw_transcript.strip()
    if isinstance(raw_transcript, Mapping):
        for key in ("segments", "sentences", "turns"):
            turns = raw_transcript.get(key)
            if isinstance(turns, list):
                return assemble(turns)
        for key in ("text", "plaintext", "content"):
            text = to_text(raw_transcript.get(key))
            if text:
                return text
        return ""
    if isinstance(raw_transcript, list):
        lines: list[str] = []
        for turn in raw_transcript:
            line = _format_turn(turn)
            if line:
                lines.append(line)
        return "\n".join(lines)
    return ""


def format_seconds(seconds: float) -> str:
    total_seconds = max(int(seconds), 0)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def _format_turn(turn: Any) -> str | None:
    if isinstance(turn, str):
        text = turn.strip()
        if not text:
            return None
        return f"[{DEFAULT_TIMESTAMP}] {UNKNOWN_SPEAKER}: {text}"
    if not isinstance(turn, Mapping):
        return None

    text = to_text(turn.get("text"))
    if not text:
        return None
    speaker = _extract_speaker_name(turn) or UNKNOWN_SPEAKER
    timestamp = _extract_timestamp(turn) or DEFAULT_TIMESTAMP
    return f"[{timestamp}] {speaker}: {text}"


def _extract_speaker_name(turn: Mapping[str, Any]) -> str | None:
    raw_speaker = turn.get("speaker")
    if isinstance(raw_speaker, Mapping):
        return (
            to_text(raw_speaker.get("display_name"))
            or to_text(raw_speaker.get("name"))
        )
    return (
        to_text(raw_speaker)
        or to_text(turn.get("speaker_name"))
        or to_text(turn.get("display_name"))
    )


def _extract_timestamp(turn: Mapping[str, Any]) -> str | None:
    raw_timestamp = turn.get("timestamp")
    if isinstance(raw_timestamp, str) and raw_timestamp.strip():
        return raw_timestamp.strip()
    for key in ("timestamp", "start_time", "startTime"):
        seconds = to_float(turn.get(key))
        if seconds is not None:
            return format_seconds(seconds)
    return None
