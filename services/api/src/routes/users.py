from fastapi import APIRouter, Depends
from pydantic import BaseModel

from utils import log
from .dependencies import current_user_get

logger = log.get_logger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


class UserResponse(BaseModel):
    id: str
    wallet_address: str
    role: str


@router.get("/me", response_model=UserResponse)
async def route_user_me(user: dict = Depends(current_user_get)) -> UserResponse:
    """The caller's user record, created on the first request from a wallet."""
    return UserResponse(
        id=user["sub"],
        wallet_address=user["wallet_address"],
        role=user["role"],
    )
