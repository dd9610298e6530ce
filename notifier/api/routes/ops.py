import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from notifier.core.config import Settings, get_settings
from notifier.schemas.jobs import JobOut
from notifier.services.repository import (
    OPS_VISIBLE_JOB_STATUSES,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


def require_ops_key(
    settings: Settings = Depends(get_settings),
    x_ops_key: str | None = Header(default=None, alias="X-Ops-Key"),
) -> None:
    if not settings.ops_api_key:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="ops access is not configured")
    if not x_ops_key or not hmac.compare_digest(x_ops_key.encode("utf-8"), settings.ops_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid ops key")


@router.get("/jobs", response_model=list[JobOut], dependencies=[Depends(require_ops_key)])
async def list_jobs(
    status_filter: str = Query(default="discarded", alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    repository=Depends(get_repository),
) -> list[JobOut]:
    if status_filter not in OPS_VISIBLE_JOB_STATUSES:
        raise HTTPException(
            status_code=422,
            detail=f"status must be one of {sorted(OPS_VISIBLE_JOB_STATUSES)}",
        )
    try:
        rows = await repository.list_jobs(status=status_filter, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [JobOut(**row) for row in rows]
