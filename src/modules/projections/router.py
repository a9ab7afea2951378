"""Internal endpoint reporting how far each projection lags the event log."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.session import get_session_factory
from src.modules.events.schemas import ProjectionLagResponse
from src.modules.projections.builder import lag_per_builder

router = APIRouter(prefix="/projections", tags=["internal"])


@router.get("/lag", response_model=ProjectionLagResponse)
async def projection_lag(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    return ProjectionLagResponse(lag=await lag_per_builder(session_factory))
