import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from notifier.schemas.links import LinkRequest, LinkResponse, LinkVerifyRequest
from notifier.services.linking import LinkingService, LinkOutcome, get_linking_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/request", response_model=LinkResponse, response_model_exclude_none=True)
async def request_link(
    payload: LinkRequest,
    service: LinkingService = Depends(get_linking_service),
):
    try:
        outcome = await service.request_link(payload.email, payload.channel_id)
    except Exception:
        logger.exception("link request failed")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal")
    # Same answer whether or not the email is already linked.
    return _respond(outcome)


@router.post("/verify-code", response_model=LinkResponse, response_model_exclude_none=True)
async def verify_code(
    payload: LinkVerifyRequest,
    service: LinkingService = Depends(get_linking_service),
):
    try:
        outcome = await service.verify(payload.email, payload.channel_id, payload.code)
    except Exception:
        logger.exception("link verification failed")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal")
    return _respond(outcome)


def _respond(outcome: LinkOutcome):
    if outcome.failure is None:
        return LinkResponse(ok=True)
    return _error(status.HTTP_400_BAD_REQUEST, outcome.failure.value)


def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})
