"""
API v1 router aggregation.
"""
from fastapi import APIRouter
from filevault.api.v1.endpoints import files, maintenance

api_router = APIRouter()

# Include file storage and download endpoints
api_router.include_router(files.router)

# Include cleanup endpoints
api_router.include_router(maintenance.router)

__all__ = ["api_router"]
