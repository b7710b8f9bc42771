from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from coupon_insights.api.deps import get_collector_service
from coupon_insights.services.collector import EventCollectorService

router = APIRouter()


@router.get("/healthz")
async def healthcheck(
    collector: EventCollectorService = Depends(get_collector_service),
) -> dict[str, Any]:
    """Liveness check that also reports how many events await a flush."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "buffered_events": collector.buffered_count,
    }
