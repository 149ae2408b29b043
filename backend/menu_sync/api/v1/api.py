from fastapi import APIRouter

from menu_sync.api.v1.endpoints import auth, sync, snapshots, dlq

api_router = APIRouter()
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(snapshots.router, prefix="/snapshots", tags=["snapshots"])
api_router.include_router(dlq.router, prefix="/dlq", tags=["dlq"])
api_router.include_router(auth.router, tags=["auth"])
