"""Pydantic request bodies for the HTTP API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mediavault.db.store import JOB_KINDS, SCHEDULE_KINDS


class ScheduleConfig(BaseModel):
    interval_minutes: float | None = Field(default=None, gt=0)
    cron: str | None = None
    run_at: str | None = None
    url: str | None = None
    limit: int | None = Field(default=None, ge=1)
    cutoff_days: int | None = Field(default=None, ge=0)
    retention_days: int | None = Field(default=None, ge=0)
    max_retries: int | None = Field(default=None, ge=0)
    timeout_minutes: float | None = Field(default=None, gt=0)

    model_config = ConfigDict(extra="ignore")

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class JobCreate(BaseModel):
    job_type: str
    schedule_type: str
    schedule_config: ScheduleConfig = Field(default_factory=ScheduleConfig)
    target_type: str | None = None
    target_id: int | None = None
    enabled: bool = True
    name: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("job_type")
    @classmethod
    def _known_job_type(cls, value: str) -> str:
        value = (value or "").strip()
        if value not in JOB_KINDS:
            raise ValueError(f"job_type must be one of {', '.join(JOB_KINDS)}")
        return value

    @field_validator("schedule_type")
    @classmethod
    def _known_schedule_type(cls, value: str) -> str:
        value = (value or "").strip()
        if value not in SCHEDULE_KINDS:
            raise ValueError(f"schedule_type must be one of {', '.join(SCHEDULE_KINDS)}")
        return value


class JobUpdate(BaseModel):
    """Partial update; only fields present in the body are applied."""

    job_type: str | None = None
    schedule_type: str | None = None
    schedule_config: ScheduleConfig | None = None
    target_type: str | None = None
    target_id: int | None = None
    enabled: bool | None = None
    name: str | None = None

    model_config = ConfigDict(extra="ignore")

    def changes(self) -> dict[str, Any]:
        names = {
            "job_type": "kind",
            "schedule_type": "schedule_kind",
            "target_type": "target_kind",
        }
        result: dict[str, Any] = {}
        for field_name in self.model_fields_set:
            value = getattr(self, field_name)
            if field_name == "schedule_config":
                value = value.as_dict() if value is not None else {}
            result[names.get(field_name, field_name)] = value
        return result


class UrlBody(BaseModel):
    url: str

    model_config = ConfigDict(extra="ignore")

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = (value or "").strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")
        return value


class SessionBody(BaseModel):
    cookie: str = Field(min_length=1)

    model_config = ConfigDict(extra="ignore")


class CleanBody(BaseModel):
    days: int = Field(default=30, ge=0)

    model_config = ConfigDict(extra="ignore")


class MarkDownloadBody(BaseModel):
    status: Literal["downloaded", "failed"]
    path: str | None = None
    notes: str | None = None

    model_config = ConfigDict(extra="ignore")


class DispatchBody(BaseModel):
    destination: str | None = None

    model_config = ConfigDict(extra="ignore")


class LibraryCreate(BaseModel):
    name: str = Field(min_length=1)
    path: str = Field(min_length=1)

    model_config = ConfigDict(extra="ignore")


class VideoCreate(BaseModel):
    path: str = Field(min_length=1)
    title: str | None = None

    model_config = ConfigDict(extra="ignore")


__all__ = [
    "CleanBody",
    "DispatchBody",
    "JobCreate",
    "JobUpdate",
    "LibraryCreate",
    "MarkDownloadBody",
    "ScheduleConfig",
    "SessionBody",
    "UrlBody",
    "VideoCreate",
]
