from pydantic import BaseModel


class WebhookAccepted(BaseModel):
    accepted: bool
    count: int
