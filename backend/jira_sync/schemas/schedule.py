"""Schedule schemas for API requests and responses."""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Literal


def _check_cron(v: str) -> str:
    if not croniter.is_valid(v):
        raise ValueError('Invalid cron expression')
    return v


def _check_timezone(v: str) -> str:
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f'Invalid timezone: {v}')
    return v


class ScheduleBase(BaseModel):
    cron: str = Field(..., min_length=9, max_length=100, description="Cron expression")
    timezone: str = Field(default='UTC', description="Timezone for schedule")
    concurrency: Literal['skip', 'queue'] = Field(default='skip', description="What to do when a run is still active")
    enabled: bool = Field(default=True, description="Enable/disable schedule")

    @field_validator('cron')
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _check_cron(v)

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return _check_timezone(v)


class ScheduleResponse(ScheduleBase):
    """Schedule with the next computed fire times."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    next_runs: list[str] = Field(default_factory=list, description="Next 3 run times (ISO format)")
    updated_at: str
    created_at: str


class ScheduleUpdate(BaseModel):
    """All fields optional."""

    cron: str | None = Field(None, min_length=9, max_length=100)
    timezone: str | None = None
    concurrency: Literal['skip', 'queue'] | None = None
    enabled: bool | None = None

    @field_validator('cron')
    @classmethod
    def validate_cron(cls, v: str | None) -> str | None:
        return v if v is None else _check_cron(v)

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str | None) -> str | None:
        return v if v is None else _check_timezone(v)
