from fastapi import APIRouter

from notifier.api.routes import health, links, ops, webhooks

LINK_PREFIX = "/api/link"

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, tags=["intake"])
api_router.include_router(links.router, prefix=LINK_PREFIX, tags=["linking"])
api_router.include_router(ops.router, prefix="/ops", tags=["ops"])
