"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from aves.api.annotations import router as annotations_router
from aves.api.health import router as health_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(annotations_router)
