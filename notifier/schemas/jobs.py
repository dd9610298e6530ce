from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class JobOut(BaseModel):
    id: str
    kind: str
    status: str
    attempt: int
    max_attempts: int
    inputs_json: dict[str, Any] = Field(default_factory=dict)
    error_json: dict[str, Any] | None = None
    updated_at: datetime | None = None
