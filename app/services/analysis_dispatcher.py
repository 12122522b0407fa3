from __future__ import annotations

import json
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any
from urllib import error, request

from app.core.config import Settings
from app.services.call_ingestion_errors import AnalysisDispatchError

CALL_PROCESS_EVENT_NAME = "call.process"


def build_call_process_event(call_record_id: str, source: str) -> dict[str, Any]:
    return {
        "name": CALL_PROCESS_EVENT_NAME,
        "data": {
            "callRecordId": call_record_id,
            "source": source,
        },
    }


class AnalysisDispatcher(ABC):
    @abstractmethod
    def dispatch(self, call_record_id: str, source: str) -> None:
        """Publish one analysis job for a newly written record. Never retries."""
        raise NotImplementedError


class InMemoryAnalysisDispatcher(AnalysisDispatcher):
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def dispatch(self, call_record_id: str, source: str) -> None:
        self.events.append(build_call_process_event(call_record_id, source))


class InngestAnalysisDispatcher(AnalysisDispatcher):
    def __init__(
        self,
        event_api_url: str,
        event_key: str,
        timeout_seconds: float = 5.0,
        user_agent: str = "CallIngestionBackend/1.0",
    ) -> None:
        self.event_api_url = event_api_url.rstrip("/")
        self.event_key = event_key
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent

    def dispatch(self, call_record_id: str, source: str) -> None:
        if not self.event_key:
            raise AnalysisDispatchError("INNGEST_EVENT_KEY is not configured.")

        raw_payload = json.dumps(build_call_process_event(call_record_id, source)).encode("utf-8")
        req = request.Request(
            f"{self.event_api_url}/{self.event_key}",
            data=raw_payload,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": self.user_agent,
            },
            method="POST",
        )

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response.read()
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise AnalysisDispatchError(
                f"Job bus HTTP {exc.code}: {body or 'empty response body'}"
            ) from exc
        except error.URLError as exc:
            raise AnalysisDispatchError(f"Job bus connection error: {exc.reason}") from exc
        except OSError as exc:
            raise AnalysisDispatchError(f"Job bus request failed: {exc}") from exc


def create_analysis_dispatcher(settings: Settings) -> AnalysisDispatcher:
    return _create_analysis_dispatcher_cached(
        dispatcher_name=settings.analysis_dispatcher,
        event_api_url=settings.inngest_event_api_url,
        event_key=settings.inngest_event_key,
        timeout_seconds=settings.inngest_timeout_seconds,
    )


@lru_cache
def _create_analysis_dispatcher_cached(
    dispatcher_name: str,
    event_api_url: str,
    event_key: str,
    timeout_seconds: float,
) -> AnalysisDispatcher:
    if dispatcher_name == "memory":
        return InMemoryAnalysisDispatcher()

    return InngestAnalysisDispatcher(
        event_api_url=event_api_url,
        event_key=event_key,
        timeout_seconds=timeout_seconds,
    )


def clear_analysis_dispatcher_cache() -> None:
    _create_analysis_dispatcher_cached.cache_clear()
