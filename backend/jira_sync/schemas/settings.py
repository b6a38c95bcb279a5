from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator


class JiraSettingsBase(BaseModel):
    jira_host: HttpUrl
    jira_email: str = Field(..., min_length=3, max_length=255)
    api_version: Literal[2, 3] = 3
    project_keys: List[str] = Field(default_factory=list)

    @field_validator('project_keys')
    @classmethod
    def normalize_keys(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(key.strip().upper() for key in v if key and key.strip()))


class JiraSettingsUpdate(JiraSettingsBase):
    api_token: Optional[str] = Field(None, description="Leave empty to keep the stored token")


class JiraSettingsResponse(JiraSettingsBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    api_token: str = "********"
    created_at: datetime
    updated_at: datetime


class ConnectionTestResult(BaseModel):
    valid: bool
    message: str
