from typing import Any

from pydantic import BaseModel


class LinkRequest(BaseModel):
    email: Any = None
    channel_id: Any = None


class LinkVerifyRequest(BaseModel):
    email: Any = None
    channel_id: Any = None
    code: Any = None


class LinkResponse(BaseModel):
    ok: bool
    error: str | None = None
