# couch_gateway/schema.py
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """Verified caller; built per request, never persisted."""
    subject:    str
    expires_at: datetime | None = None
    claims:     dict[str, Any] = Field(default_factory=dict, repr=False)

    model_config = ConfigDict(frozen=True)


class StatusInfo(BaseModel):
    status:  str
    couchdb: str


class DbUrl(BaseModel):
    dbUrl: str


class SaveResult(BaseModel):
    ok:  bool = True
    id:  str
    rev: str
