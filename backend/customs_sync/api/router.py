from fastapi import APIRouter

from customs_sync.api.v1 import declarations, health, sync

api_router = APIRouter()

api_router.include_router(health.router, prefix="/v1", tags=["health"])
api_router.include_router(sync.router, prefix="/v1/sync", tags=["sync"])
api_router.include_router(declarations.router, prefix="/v1/declarations", tags=["declarations"])
