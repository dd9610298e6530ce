from __future__ import annotations

import logging
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
import httpx

from notifier.services.normalize import NotificationJob
from notifier.services.queue import DeliveryOutcome, DeliveryVerdict
from notifier.services.repository import RepositoryError
from notifier.worker.channel_client import ChannelResponse

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429}
TERMINAL_STATUS_CODES = {400, 403}


class ChannelResolver(Protocol):
    async def resolve_channel(self, email: str) -> str | None: ...


class ChannelSender(Protocol):
    async def send(self, channel_id: str, text: str) -> ChannelResponse: ...


def classify_response(response: ChannelResponse) -> DeliveryOutcome:
    if response.ok:
        return DeliveryOutcome(DeliveryVerdict.COMPLETE, "sent", response.status_code)
    if response.status_code in RETRYABLE_STATUS_CODES:
        return DeliveryOutcome(DeliveryVerdict.RETRYABLE, "rate limited", response.status_code)
    if response.status_code in TERMINAL_STATUS_CODES:
        return DeliveryOutcome(DeliveryVerdict.TERMINAL, "channel rejected message", response.status_code)
    return DeliveryOutcome(DeliveryVerdict.RETRYABLE, "channel error", response.status_code)


def render_text(job: NotificationJob) -> str:
    if job.url:
        return f"{job.message}\n{job.url}"
    return job.message


async def deliver(
    job: dict[str, Any],
    *,
    resolver: ChannelResolver,
    sender: ChannelSender,
) -> DeliveryOutcome:
    """Attempt one delivery and classify it; the queue decides what happens next."""
    notification = NotificationJob.from_inputs(job.get("inputs_json") or {})
    if not notification.recipient_email or not notification.message:
        return DeliveryOutcome(DeliveryVerdict.TERMINAL, "missing email or message")

    try:
        channel_id = await resolver.resolve_channel(notification.recipient_email.casefold())
    except (RepositoryError, asyncpg.PostgresError, OSError) as exc:
        logger.warning("channel lookup failed job_id=%s error=%r", job.get("id"), exc)
        return DeliveryOutcome(DeliveryVerdict.RETRYABLE, "channel lookup failed")
    if not channel_id:
        return DeliveryOutcome(DeliveryVerdict.TERMINAL, "no linked identity")

    try:
        response = await sender.send(channel_id, render_text(notification))
    except httpx.HTTPError as exc:
        logger.warning("channel transport failed job_id=%s error=%s", job.get("id"), type(exc).__name__)
        return DeliveryOutcome(DeliveryVerdict.RETRYABLE, f"transport error: {type(exc).__name__}")

    outcome = classify_response(response)
    if outcome.verdict is not DeliveryVerdict.COMPLETE:
        logger.info(
            "channel send not delivered job_id=%s status=%s verdict=%s body=%s",
            job.get("id"),
            response.status_code,
            outcome.verdict.value,
            response.body,
        )
    return outcome
