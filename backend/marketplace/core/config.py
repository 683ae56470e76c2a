import json
from functools import lru_cache
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Env lists arrive as JSON arrays or comma-separated strings; NoDecode hands the raw string to _split_list.
EnvList = Annotated[list[str], NoDecode]


def _split_list(raw: str) -> list[str]:
    text = raw.strip()
    if text.startswith("["):
        try:
            items = json.loads(text)
        except ValueError:
            items = None
        if isinstance(items, list):
            return [str(item).strip() for item in items if str(item).strip()]
    return [part.strip() for part in text.split(",") if part.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    jwt_secret: str = Field(default="", validation_alias=AliasChoices("JWT_SECRET", "AUTH_JWT_SECRET"))
    jwt_audience: str = Field(default="authenticated", validation_alias=AliasChoices("JWT_AUDIENCE"))

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED"),
    )
    pii_redaction_fields: EnvList = Field(
        default_factory=lambda: [
            "phone",
            "email",
            "address",
            "line1",
            "whatsapp",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS"),
    )

    # Negotiation
    offer_upsert_max_retries: int = 3
    offer_max_updates: int = 0
    default_currency: str = "YER"

    # Geospatial matcher
    nearby_page_size: int = 100
    nearby_max_radius_km: float = 100.0

    # Expiry sweep
    enable_recurring_jobs: bool = False
    request_ttl_days: int = Field(default=5, validation_alias=AliasChoices("REQUEST_TTL_DAYS", "SERVICE_REQUEST_TTL_DAYS"))
    offer_ttl_days: int = 3
    expiry_sweep_interval_seconds: int = 86400
    expiry_sweep_batch_size: int = 500

    # External collaborators
    address_service_url: str = ""
    engineer_service_url: str = ""
    collaborator_timeout_seconds: float = 5.0

    enable_notification_outbox: bool = True
    notification_webhook_url: str = ""
    notification_worker_interval_seconds: int = 30
    notification_worker_batch_size: int = 50
    notification_worker_max_attempts: int = 5

    rate_limit_offers_per_min: int = 20

    cors_allow_origins: EnvList = Field(default_factory=list)
    cors_allow_methods: EnvList = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PATCH",
        "OPTIONS",
    ])
    cors_allow_headers: EnvList = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return _split_list(value)
        return value

    @field_validator("default_currency")
    @classmethod
    def _currency_code(cls, value: str) -> str:
        code = (value or "").strip().upper()
        if not 3 <= len(code) <= 10:
            raise ValueError("DEFAULT_CURRENCY must be a 3-10 character code")
        return code

    @field_validator("request_ttl_days", "nearby_page_size", "expiry_sweep_batch_size")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("offer_ttl_days", "offer_max_updates", "offer_upsert_max_retries", "rate_limit_offers_per_min")
    @classmethod
    def _not_negative(cls, value: int) -> int:
        # 0 disables the corresponding limit.
        if value < 0:
            raise ValueError("must not be negative")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
