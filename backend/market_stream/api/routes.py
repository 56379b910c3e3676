"""REST API routes."""

import logging
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from market_stream.services import ManagerRegistry, SnapshotService

logger = logging.getLogger(__name__)

router = APIRouter()


# Response models
class ManagerStatus(BaseModel):
    """Status of one timeframe manager."""

    timeframe: str
    ready: bool
    subscribers: int
    symbols: int
    seed_failures: int
    queue_overflows: int
    coordinator: dict[str, int]
    decoder: dict[str, int]
    batches: list[dict[str, Any]]


class SystemStatus(BaseModel):
    """System status response."""

    status: str
    version: str
    symbols: int
    timeframes: list[str]
    managers: list[ManagerStatus]


# Dependencies for services held on app.state
def get_registry(request: Request) -> ManagerRegistry:
    return request.app.state.registry


def get_snapshot_service(request: Request) -> SnapshotService:
    return request.app.state.snapshot_service


@router.get("/status", response_model=SystemStatus)
async def get_status(registry: ManagerRegistry = Depends(get_registry)):
    """Get system status."""
    status = registry.status()
    return SystemStatus(
        status="running",
        version="0.1.0",
        symbols=status["symbols"],
        timeframes=registry.settings.valid_timeframes,
        managers=status["managers"],
    )


@router.get("/indicators")
async def get_indicators(
    timeframe: Optional[str] = Query(None, description="Candle interval, e.g. 1h"),
    limit: int = Query(200, ge=1, le=1000, description="Maximum symbols to return"),
    service: SnapshotService = Depends(get_snapshot_service),
):
    """Get the current indicator snapshot for up to ``limit`` symbols."""
    timeframe = timeframe or service.settings.default_timeframe

    try:
        events = await service.get_snapshot(timeframe, limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except httpx.HTTPError as e:
        logger.error(f"Snapshot failed for {timeframe}: {e}")
        raise HTTPException(status_code=502, detail="Upstream market data unavailable")

    return [event.to_dict() for event in events]
