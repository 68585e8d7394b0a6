"""Request bodies for the HTTP API, validated with pydantic."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.config import settings
from src.scheduler import cron
from src.scheduler.models import TaskTemplate
from src.tasks.models import Priority


class CreateTaskBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = Field(min_length=1)
    target_open_id: str | None = None
    target_tag: str | None = None
    creator_id: str | None = None
    reporter_open_id: str | None = None
    deadline: datetime | None = None
    deadline_days: float | None = Field(default=None, ge=0)
    note: str | None = None
    priority: Priority = Priority.P1
    reminder_interval_hours: float | None = Field(default=None, ge=0)
    estimated_effort: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _needs_target(self) -> CreateTaskBody:
        if not (self.target_open_id or self.target_tag):
            msg = "one of target_open_id or target_tag is required"
            raise ValueError(msg)
        return self

    @field_validator("deadline")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            msg = "deadline must include a UTC offset"
            raise ValueError(msg)
        return value


class CompleteTaskBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    proof: str | None = None
    user_open_id: str | None = None


class TemplateUpdateBody(BaseModel):
    """Partial template update; unset fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    title: str | None = None
    target_open_id: str | None = None
    target_tag: str | None = None
    reporter_open_id: str | None = None
    schedule: str | None = None
    timezone: str | None = None
    deadline_days: float | None = Field(default=None, ge=0)
    priority: Priority | None = None
    note: str | None = None
    reminder_interval_hours: float | None = Field(default=None, ge=0)
    estimated_effort: float | None = Field(default=None, gt=0)
    enabled: bool | None = None


class TemplateBody(BaseModel):
    """A full template definition (API create and YAML import)."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    title: str = Field(min_length=1)
    schedule: str
    timezone: str = Field(default_factory=lambda: settings.default_timezone)
    target_open_id: str | None = None
    target_tag: str | None = None
    reporter_open_id: str | None = None
    deadline_days: float = Field(default=1, ge=0)
    priority: Priority = Priority.P1
    note: str | None = None
    reminder_interval_hours: float = Field(default=24, ge=0)
    estimated_effort: float | None = Field(default=None, gt=0)
    enabled: bool = True
    created_by: str | None = None

    @model_validator(mode="after")
    def _check(self) -> TemplateBody:
        if bool(self.target_open_id) == bool(self.target_tag):
            msg = "exactly one of target_open_id or target_tag must be set"
            raise ValueError(msg)
        cron.build_trigger(self.schedule, self.timezone)
        return self

    def to_template(self) -> TaskTemplate:
        return TaskTemplate(**self.model_dump())


class UserUpdateBody(BaseModel):
    """Admin edit of a directory entry; unset fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    email: str | None = None
    role: Literal["superadmin", "admin", "user"] | None = None
    tags: list[str] | None = None


class FeatureOverrideBody(BaseModel):
    """``enabled: null`` drops the override and falls back to the role default."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool | None
