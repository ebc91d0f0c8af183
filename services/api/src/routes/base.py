from fastapi import APIRouter
from utils import log

from clients.couchbase import check_connection

from .auctions import router as auctions_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(auctions_router)


@router.get("/health", tags=["health"])
async def route_health():
    """Liveness plus a Couchbase round-trip."""
    try:
        await check_connection()
        store = "ok"
    except Exception as e:
        logger.warning(f"Health check: Couchbase unavailable: {e}")
        store = "unavailable"
    return {"status": "ok" if store == "ok" else "degraded", "couchbase": store}
