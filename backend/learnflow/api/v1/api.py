from fastapi import APIRouter

from learnflow.api.v1.endpoints import admin, quota, videos

api_router = APIRouter()

api_router.include_router(videos.router, prefix="/videos", tags=["videos"])
api_router.include_router(quota.router, prefix="/quota", tags=["quota"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
