from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.schemas.call_webhook import CallSource
from app.services.call_event_models import CallRecordStatus, NormalizedCallEvent, SalesRepResolution
from app.services.call_ingestion_errors import DuplicateCallRecordError, StorageError

PLATFORM_ID_FIELDS: dict[CallSource, str] = {
    CallSource.fathom: "fathom_call_id",
    CallSource.fireflies: "fireflies_call_id",
    CallSource.zoom: "zoom_call_id",
    CallSource.claap: "claap_call_id",
}
EXTERNAL_ID_FIELDS = ("external_id", *PLATFORM_ID_FIELDS.values())


class CallRecordStore(ABC):
    @abstractmethod
    def insert_if_absent(self, record: Mapping[str, Any]) -> str:
        """Insert ``record`` and return its id.

        Raises ``DuplicateCallRecordError`` when a record with the same
        ``(organization_id, source, external_id)`` already exists.
        """
        raise NotImplementedError

    @abstractmethod
    def find_by_external_id(self, organization_id: str, external_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_by_sales_rep_between(
        self,
        organization_id: str,
        sales_rep_id: str,
        start: datetime,
        end: datetime,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, record_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryCallRecordStore(CallRecordStore):
    def __init__(self) -> None:
        self._records: list[dict[str, Any]] = []
        self._record_id_by_unique_key: dict[tuple[str, str, str], str] = {}

    def insert_if_absent(self, record: Mapping[str, Any]) -> str:
        unique_key = _unique_key(record)
        if unique_key is not None:
            existing_record_id = self._record_id_by_unique_key.get(unique_key)
            if existing_record_id:
                raise DuplicateCallRecordError(
                    "Call record already exists for external id.",
                    existing_record_id=existing_record_id,
                )

        record_id = f"memory-{len(self._records) + 1}"
        stored_record = dict(record)
        stored_record["_id"] = record_id
        self._records.append(stored_record)
        if unique_key is not None:
            self._record_id_by_unique_key[unique_key] = record_id
        return record_id

    def find_by_external_id(self, organization_id: str, external_id: str) -> dict[str, Any] | None:
        for record in self._records:
            if record.get("organization_id") != organization_id:
                continue
            if any(record.get(field) == external_id for field in EXTERNAL_ID_FIELDS):
                return dict(record)
        return None

    def find_by_sales_rep_between(
        self,
        organization_id: str,
        sales_rep_id: str,
        start: datetime,
        end: datetime,
    ) -> list[dict[str, Any]]:
        matches: list[dict[str, Any]] = []
        for record in self._records:
            if record.get("organization_id") != organization_id:
                continue
            if record.get("sales_rep_id") != sales_rep_id:
                continue
            scheduled_start_time = record.get("scheduled_start_time")
            if not isinstance(scheduled_start_time, datetime):
                continue
            if start <= scheduled_start_time < end:
                matches.append(dict(record))
        return matches

    def get_by_id(self, record_id: str) -> dict[str, Any] | None:
        for record in self._records:
            if str(record.get("_id")) == record_id:
                return dict(record)
        return None

    def list_recent(self, limit: int) -> list[dict[str, Any]]:
        return [dict(record) for record in reversed(self._records[-limit:])]


class MongoCallRecordStore(CallRecordStore):
    def __init__(
        self,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
        socket_timeout_ms: int = 5000,
    ) -> None:
        from pymongo import ASCENDING, DESCENDING, MongoClient

        self._desc = DESCENDING
        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index([("created_at", DESCENDING)])
        self._collection.create_index(
            [
                ("organization_id", ASCENDING),
                ("sales_rep_id", ASCENDING),
                ("scheduled_start_time", ASCENDING),
            ],
        )
        for field in PLATFORM_ID_FIELDS.values():
            self._collection.create_index(
                [("organization_id", ASCENDING), (field, ASCENDING)],
                partialFilterExpression={field: {"$exists": True, "$type": "string"}},
            )
        self._collection.create_index(
            [("organization_id", ASCENDING), ("source", ASCENDING), ("external_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"external_id": {"$exists": True, "$type": "string"}},
        )

    def insert_if_absent(self, record: Mapping[str, Any]) -> str:
        from pymongo.errors import DuplicateKeyError, PyMongoError

        payload = dict(record)
        try:
            insert_result = self._collection.insert_one(payload)
        except DuplicateKeyError as exc:
            existing = self._collection.find_one(
                {
                    "organization_id": record.get("organization_id"),
                    "source": record.get("source"),
                    "external_id": record.get("external_id"),
                },
                {"_id": 1},
            )
            raise DuplicateCallRecordError(
                "Call record already exists for external id.",
                existing_record_id=str(existing["_id"]) if existing else None,
            ) from exc
        except PyMongoError as exc:
            raise StorageError(f"Unable to persist call record: {exc}") from exc
        return str(insert_result.inserted_id)

    def find_by_external_id(self, organization_id: str, external_id: str) -> dict[str, Any] | None:
        from pymongo.errors import PyMongoError

        try:
            record = self._collection.find_one(
                {
                    "organization_id": organization_id,
                    "$or": [{field: external_id} for field in EXTERNAL_ID_FIELDS],
                },
            )
        except PyMongoError as exc:
            raise StorageError(f"Unable to query call records: {exc}") from exc
        return _serialize_record(record)

    def find_by_sales_rep_between(
        self,
        organization_id: str,
        sales_rep_id: str,
        start: datetime,
        end: datetime,
    ) -> list[dict[str, Any]]:
        from pymongo.errors import PyMongoError

        try:
            cursor = self._collection.find(
                {
                    "organization_id": organization_id,
                    "sales_rep_id": sales_rep_id,
                    "scheduled_start_time": {"$gte": start, "$lt": end},
                },
                {"transcript": 0},
            )
            return [_serialize_record(record) for record in cursor]
        except PyMongoError as exc:
            raise StorageError(f"Unable to query call records: {exc}") from exc

    def get_by_id(self, record_id: str) -> dict[str, Any] | None:
        from bson import ObjectId
        from bson.errors import InvalidId

        try:
            object_id = ObjectId(record_id)
        except InvalidId:
            return None
        return _serialize_record(self._collection.find_one({"_id": object_id}))

    def list_recent(self, limit: int) -> list[dict[str, Any]]:
        cursor = self._collection.find().sort("created_at", self._desc).limit(limit)
        return [_serialize_record(record) for record in cursor]


def _unique_key(record: Mapping[str, Any]) -> tuple[str, str, str] | None:
    external_id = record.get("external_id")
    if not isinstance(external_id, str):
        return None
    return (str(record.get("organization_id")), str(record.get("source")), external_id)


def _serialize_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    return serialized


def create_call_record_store(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
    mongodb_socket_timeout_ms: int,
) -> CallRecordStore:
    return _create_call_record_store_cached(
        store_name=store_name,
        mongodb_uri=mongodb_uri,
        mongodb_db_name=mongodb_db_name,
        mongodb_collection_name=mongodb_collection_name,
        mongodb_connect_timeout_ms=mongodb_connect_timeout_ms,
        mongodb_socket_timeout_ms=mongodb_socket_timeout_ms,
    )


@lru_cache
def _create_call_record_store_cached(
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
    mongodb_socket_timeout_ms: int,
) -> CallRecordStore:
    if store_name == "memory":
        return InMemoryCallRecordStore()

    if store_name == "mongodb":
        return MongoCallRecordStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
            socket_timeout_ms=mongodb_socket_timeout_ms,
        )

    return InMemoryCallRecordStore()


def clear_call_record_store_cache() -> None:
    _create_call_record_store_cached.cache_clear()


def build_call_record_document(
    *,
    organization_id: str,
    event: NormalizedCallEvent,
    resolution: SalesRepResolution,
    scheduled_start_time: datetime,
) -> dict[str, Any]:
    now = datetime.now(UTC)
    document: dict[str, Any] = {
        "organization_id": organization_id,
        "sales_rep_id": resolution.user_id,
        "sales_rep_name": resolution.display_name,
        "sales_rep_resolved_by": resolution.resolved_by.value,
        "source": event.source.value,
        "payload_format": event.payload_format.value,
        "external_id": event.external_id,
        "external_id_synthesized": event.external_id_synthesized,
        PLATFORM_ID_FIELDS[event.source]: event.external_id,
        "title": event.title,
        "scheduled_start_time": scheduled_start_time,
        "scheduled_end_time": event.scheduled_end_time,
        "recording_start_time": event.recording_start_time,
        "recording_end_time": event.recording_end_time,
        "scheduled_duration": event.scheduled_duration,
        "actual_duration": event.actual_duration,
        "transcript": event.transcript,
        "recording_url": event.recording_url,
        "share_url": event.share_url,
        "invitees": [invitee.to_dict() for invitee in event.invitees],
        "has_external_invitees": event.has_external_invitees,
        "reported_owner_email": event.reported_owner_email,
        "reported_owner_name": event.reported_owner_name,
        "metadata": dict(event.metadata),
        "status": CallRecordStatus.pending.value,
        "created_at": now,
        "updated_at": now,
    }
    return document
