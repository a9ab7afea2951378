"""Centralized internal router - operational endpoints, not exposed publicly."""

from fastapi import APIRouter

from src.modules.events.router import router as events_router
from src.modules.projections.router import router as projections_router

internal_router = APIRouter(prefix="/internal")
internal_router.include_router(events_router)
internal_router.include_router(projections_router)
