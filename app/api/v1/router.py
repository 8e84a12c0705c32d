from fastapi import APIRouter

from app.api.v1.endpoints import admin, writing

api_router = APIRouter()

api_router.include_router(writing.router, prefix="/projects", tags=["writing"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
