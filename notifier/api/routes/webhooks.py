import hashlib
import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from notifier.core.config import Settings, get_settings
from notifier.core.signatures import signature_from_headers, verify_signature
from notifier.schemas.webhooks import WebhookAccepted
from notifier.services.normalize import NORMALIZERS
from notifier.services.queue import DeliveryQueueClient, get_delivery_queue

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=WebhookAccepted, status_code=status.HTTP_202_ACCEPTED)
async def receive_jira_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    queue: DeliveryQueueClient = Depends(get_delivery_queue),
):
    return await _accept_event("jira", request, settings, queue)


@router.post("/webhooks/{source}", response_model=WebhookAccepted, status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(
    source: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    queue: DeliveryQueueClient = Depends(get_delivery_queue),
):
    if source not in NORMALIZERS:
        return _error(status.HTTP_404_NOT_FOUND, "unknown source")
    return await _accept_event(source, request, settings, queue)


async def _accept_event(
    source: str,
    request: Request,
    settings: Settings,
    queue: DeliveryQueueClient,
):
    content_type = request.headers.get("content-type", "").lower()
    if "application/json" not in content_type:
        return _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "unsupported content-type")

    if not settings.webhook_secret:
        logger.error("webhook rejected: NOTIFIER_WEBHOOK_SECRET is not configured")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal")

    # Verify the exact bytes received, never a re-serialized parse.
    raw_body = await request.body()
    check = verify_signature(raw_body, settings.webhook_secret, signature_from_headers(request.headers))
    if not check.valid:
        logger.info("webhook signature rejected source=%s algorithm=%s", source, check.algorithm)
        return _error(status.HTTP_401_UNAUTHORIZED, "invalid signature")

    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return _error(status.HTTP_400_BAD_REQUEST, "invalid json")

    try:
        jobs = NORMALIZERS[source](payload)
        if not jobs:
            return WebhookAccepted(accepted=True, count=0)

        fanout = await queue.enqueue_fanout(jobs, dedupe_prefix=hashlib.sha256(raw_body).hexdigest())
    except Exception:
        logger.exception("webhook processing failed source=%s", source)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal")

    if fanout.count == 0:
        logger.error("webhook fan-out enqueued nothing source=%s jobs=%s", source, len(jobs))
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal")
    if fanout.failures:
        logger.warning(
            "webhook fan-out partially enqueued source=%s enqueued=%s failed=%s",
            source,
            fanout.count,
            len(fanout.failures),
        )
    logger.info("webhook accepted source=%s enqueued=%s", source, fanout.count)
    return WebhookAccepted(accepted=True, count=fanout.count)


def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})
