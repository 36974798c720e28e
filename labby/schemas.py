from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from labby.utils import ensure_utc, parse_duration


class LabStatus(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    ERROR = "error"
    EXPIRED = "expired"


class Credential(BaseModel):
    """Credential handed to a lab owner."""
    id: int | None = None
    lab_id: str = ""
    label: str
    username: str
    password: str
    url: str | None = None
    notes: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class Lab(BaseModel):
    """A provisioning unit.

    ``service_data`` is the persistent scratch store services use to
    remember identifiers needed for cleanup. ``used_services`` lists the
    service config IDs invoked during setup, in template order.
    """
    id: str
    name: str
    status: LabStatus = LabStatus.PROVISIONING
    owner_id: str
    started_at: datetime
    ends_at: datetime
    created_at: datetime | None = None
    updated_at: datetime | None = None
    template_id: str = ""
    credentials: list[Credential] = Field(default_factory=list)
    service_data: dict[str, str] = Field(default_factory=dict)
    used_services: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("started_at", "ends_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @field_validator("service_data", "used_services", mode="before")
    @classmethod
    def _none_to_empty(cls, value, info):
        if value is None:
            return {} if info.field_name == "service_data" else []
        return value


class ServiceConfig(BaseModel):
    """A named, typed, parameterized declaration of a usable service."""
    id: str
    name: str
    type: str
    description: str = ""
    logo: str = ""
    params: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("params", "config"),
    )
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    @field_validator("params", mode="before")
    @classmethod
    def _stringify(cls, value):
        if value is None:
            return {}
        return {str(k): "" if v is None else str(v) for k, v in dict(value).items()}


class ServiceLimit(BaseModel):
    """Concurrency and duration ceiling for one service config."""
    id: str
    service_id: str
    max_labs: int = Field(gt=0)
    # Minutes
    max_duration: int = Field(gt=0)
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class ServiceReference(BaseModel):
    name: str
    service_id: str
    description: str = ""
    # Filled in from the referenced ServiceConfig when templates are loaded
    type: str = ""
    logo: str = ""


class LabTemplate(BaseModel):
    """Ordered service references plus an expiration duration like "2h"."""
    id: str
    name: str
    description: str = ""
    expiration_duration: str
    services: list[ServiceReference] = Field(default_factory=list)

    @field_validator("expiration_duration")
    @classmethod
    def _valid_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @property
    def duration(self) -> timedelta:
        return parse_duration(self.expiration_duration)


class ServiceUsage(BaseModel):
    service_id: str
    active_labs: int
    max_labs: int | None = None
