from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from app.core.config import Settings


class UserDirectory(ABC):
    """Read-only view of the organization user directory."""

    @abstractmethod
    def find_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_user_by_email(self, email: str, organization_id: str | None = None) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_user_by_external_account_id(self, external_account_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_active_users_by_organization(self, organization_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def find_webhook_owner(self, owner_identifier: str) -> dict[str, Any] | None:
        owner = self.find_user_by_id(owner_identifier)
        if not owner:
            owner = self.find_user_by_external_account_id(owner_identifier)
        if not owner or not owner.get("is_active", False):
            return None
        return owner


class InMemoryUserDirectory(UserDirectory):
    def __init__(self) -> None:
        self._next_id = 1
        self._users_by_id: dict[str, dict[str, Any]] = {}

    def add_user(
        self,
        *,
        organization_id: str | None,
        email: str,
        first_name: str,
        last_name: str,
        external_account_id: str | None = None,
        is_active: bool = True,
        role: str = "sales_rep",
    ) -> dict[str, Any]:
        user_id = f"user-{self._next_id}"
        self._next_id += 1
        user = {
            "_id": user_id,
            "organization_id": organization_id,
            "external_account_id": external_account_id,
            "email": _normalize_email(email),
            "first_name": first_name.strip(),
            "last_name": last_name.strip(),
            "role": role,
            "is_active": is_active,
            "created_at": datetime.now(UTC),
        }
        self._users_by_id[user_id] = user
        return dict(user)

    def find_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        user = self._users_by_id.get(user_id)
        if not user:
            return None
        return dict(user)

    def find_user_by_email(self, email: str, organization_id: str | None = None) -> dict[str, Any] | None:
        normalized_email = _normalize_email(email)
        for user in self._users_by_id.values():
            if user["email"] != normalized_email or not user["is_active"]:
                continue
            if organization_id is not None and user["organization_id"] != organization_id:
                continue
            return dict(user)
        return None

    def find_user_by_external_account_id(self, external_account_id: str) -> dict[str, Any] | None:
        for user in self._users_by_id.values():
            if user.get("external_account_id") == external_account_id:
                return dict(user)
        return None

    def find_active_users_by_organization(self, organization_id: str) -> list[dict[str, Any]]:
        return [
            dict(user)
            for user in self._users_by_id.values()
            if user["organization_id"] == organization_id and user["is_active"]
        ]


class MongoUserDirectory(UserDirectory):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        users_collection_name: str,
        connect_timeout_ms: int = 2000,
        socket_timeout_ms: int = 5000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
        )
        self._users = self._client[db_name][users_collection_name]

    def find_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        from bson import ObjectId
        from bson.errors import InvalidId

        try:
            object_id = ObjectId(user_id)
        except InvalidId:
            return None
        return _serialize_user_record(self._users.find_one({"_id": object_id}))

    def find_user_by_email(self, email: str, organization_id: str | None = None) -> dict[str, Any] | None:
        query: dict[str, Any] = {"email": _normalize_email(email), "is_active": True}
        if organization_id is not None:
            query["organization_id"] = _to_organization_key(organization_id)
        return _serialize_user_record(self._users.find_one(query))

    def find_user_by_external_account_id(self, external_account_id: str) -> dict[str, Any] | None:
        record = self._users.find_one({"external_account_id": external_account_id})
        return _serialize_user_record(record)

    def find_active_users_by_organization(self, organization_id: str) -> list[dict[str, Any]]:
        cursor = self._users.find(
            {"organization_id": _to_organization_key(organization_id), "is_active": True},
            {"password_hash": 0},
        )
        users: list[dict[str, Any]] = []
        for record in cursor:
            serialized = _serialize_user_record(record)
            if serialized:
                users.append(serialized)
        return users


def _to_organization_key(organization_id: str) -> Any:
    from bson import ObjectId

    if ObjectId.is_valid(organization_id):
        return ObjectId(organization_id)
    return organization_id


def _serialize_user_record(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not record:
        return None
    serialized = dict(record)
    serialized["_id"] = str(record.get("_id", ""))
    if record.get("organization_id") is not None:
        serialized["organization_id"] = str(record["organization_id"])
    return serialized


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def create_user_directory(settings: Settings) -> UserDirectory:
    return _create_user_directory_cached(
        user_directory_store=settings.user_directory_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_users_collection=settings.mongodb_users_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        mongodb_socket_timeout_ms=settings.mongodb_socket_timeout_ms,
    )


@lru_cache
def _create_user_directory_cached(
    *,
    user_directory_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_users_collection: str,
    mongodb_connect_timeout_ms: int,
    mongodb_socket_timeout_ms: int,
) -> UserDirectory:
    if user_directory_store == "memory":
        return InMemoryUserDirectory()

    if user_directory_store == "mongodb":
        return MongoUserDirectory(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            users_collection_name=mongodb_users_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
            socket_timeout_ms=mongodb_socket_timeout_ms,
        )

    return InMemoryUserDirectory()


def clear_user_directory_cache() -> None:
    _create_user_directory_cached.cache_clear()
