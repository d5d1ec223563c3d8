"""
API endpoints for a bidder's own bids and for receipt reconciliation.

GET    /bids/me               — the caller's bids, newest first
POST   /bids/{id}/receipt     — attach a confirmed transaction reference
"""

from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models.operations.bids import bid_get_by_bidder
from models.operations.settlement import bid_attach_receipt
from utils import log

from .auctions import BidResponse, _bid_to_response
from .dependencies import require_authenticated
from .errors import http_error

logger = log.get_logger(__name__)

router = APIRouter(prefix="/bids", tags=["bids"])


class ReceiptRequest(BaseModel):
    transaction_hash: str = Field(min_length=1)


@router.get("/me", response_model=List[BidResponse])
async def route_my_bids(
    limit: int = Query(default=50, le=200),
    user: dict = Depends(require_authenticated),
):
    bids = await bid_get_by_bidder(user["sub"], limit=limit)
    return [_bid_to_response(b) for b in bids]


@router.post("/{bid_id}/receipt", response_model=BidResponse)
async def route_bid_receipt(
    bid_id: str,
    body: ReceiptRequest,
    user: dict = Depends(require_authenticated),
):
    """Attach the blockchain transaction reference for an accepted bid.

    Only the bidder may attach it. Re-posting the same reference is a no-op;
    a different one is a 409.
    """
    bid, err = await bid_attach_receipt(
        bid_id, body.transaction_hash, bidder_id=user["sub"]
    )
    if err:
        raise http_error(err)
    return _bid_to_response(bid)
