from fastapi import APIRouter
from utils import log

from .couriers import router as couriers_router
from .notifications import router as notifications_router
from .orders import router as orders_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(orders_router)
router.include_router(couriers_router)
router.include_router(notifications_router)


@router.get("/health", tags=["ops"])
async def route_health():
    return {"status": "ok"}
