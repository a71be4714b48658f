from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


DeliveryStatus = Literal["pending", "success", "failed"]
_URL_PATTERN = r"^https?://\S+$"


def _clean_events(events: list[str]) -> list[str]:
    cleaned: list[str] = []
    for event in events:
        value = event.strip()
        if not value:
            raise ValueError("event names must be non-empty")
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


class WebhookCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    url: str = Field(min_length=1, max_length=2048, pattern=_URL_PATTERN)
    events: list[str] = Field(min_length=1)
    is_active: bool = True

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: list[str]) -> list[str]:
        return _clean_events(value)


class WebhookUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    url: str | None = Field(default=None, min_length=1, max_length=2048, pattern=_URL_PATTERN)
    events: list[str] | None = Field(default=None, min_length=1)
    is_active: bool | None = None

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: list[str] | None) -> list[str] | None:
        return _clean_events(value) if value is not None else None


class WebhookRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    url: str
    events: list[str]
    is_active: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class WebhookSecretRead(WebhookRead):
    secret: str


class WebhookDeliveryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    webhook_id: UUID
    event: str
    payload: str
    status: DeliveryStatus
    status_code: int | None
    response_body: str | None
    attempts: int
    next_retry_at: datetime | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


class WebhookTestRead(BaseModel):
    webhook_id: UUID
    payload: dict[str, Any]
    delivery: WebhookDeliveryRead
