from fastapi import APIRouter
from utils import log

from .auctions import router as auctions_router
from .bids import router as bids_router
from .users import router as users_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(users_router)
router.include_router(auctions_router)
router.include_router(bids_router)


@router.get("/health", tags=["health"])
async def route_health():
    return {"status": "ok"}
