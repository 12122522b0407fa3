from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "call_records_store",
        "user_directory_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_call_records_collection",
        "mongodb_users_collection",
        "mongodb_connect_timeout_ms",
        "mongodb_socket_timeout_ms",
        "analysis_dispatcher",
        "inngest_event_api_url",
        "inngest_event_key",
        "inngest_timeout_seconds",
        "analytics_mirror_enabled",
        "analytics_api_url",
        "analytics_api_token",
        "analytics_call_records_datasource",
        "analytics_timeout_seconds",
        "fireflies_webhook_secret",
        "claap_webhook_secret",
        "default_call_title",
    },
)


class Settings(BaseSettings):
    app_name: str = "Call Ingestion API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    call_records_store: str = "mongodb"
    user_directory_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "call_ingestion"
    mongodb_call_records_collection: str = "callrecords"
    mongodb_users_collection: str = "users"
    mongodb_connect_timeout_ms: int = 2000
    mongodb_socket_timeout_ms: int = 5000
    analysis_dispatcher: str = "inngest"
    inngest_event_api_url: str = "https://inn.gs/e"
    inngest_event_key: str = ""
    inngest_timeout_seconds: float = 5.0
    analytics_mirror_enabled: bool = False
    analytics_api_url: str = "https://api.tinybird.co/v0/events"
    analytics_api_token: str = ""
    analytics_call_records_datasource: str = "call_records"
    analytics_timeout_seconds: float = 3.0
    fireflies_webhook_secret: str = ""
    claap_webhook_secret: str = ""
    default_call_title: str = "Untitled Meeting"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator("call_records_store", "user_directory_store", "analysis_dispatcher", mode="before")
    @classmethod
    def normalize_backend_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("default_call_title", mode="before")
    @classmethod
    def normalize_default_call_title(cls, value: str) -> str:
        cleaned = (value or "").strip()
        return cleaned or "Untitled Meeting"

    @field_validator("inngest_timeout_seconds", mode="before")
    @classmethod
    def normalize_inngest_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 5.0
        return parsed_value

    @field_validator("analytics_timeout_seconds", mode="before")
    @classmethod
    def normalize_analytics_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 3.0
        return parsed_value

    @field_validator("mongodb_connect_timeout_ms", mode="before")
    @classmethod
    def normalize_mongodb_connect_timeout(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 2000
        return parsed_value

    @field_validator("mongodb_socket_timeout_ms", mode="before")
    @classmethod
    def normalize_mongodb_socket_timeout(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 5000
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
