"""
API endpoints for auctions and bidding.

POST   /auctions/              — open an auction on a crop listing (farmer)
GET    /auctions/              — list auctions by status (public)
GET    /auctions/{id}          — auction detail
GET    /auctions/{id}/bids     — bids, highest first
POST   /auctions/{id}/bids     — place a bid
POST   /auctions/{id}/close    — close an auction past its end time
POST   /auctions/{id}/cancel   — cancel an auction (seller)
GET    /auctions/{id}/audit    — replay the ledger and report drift
GET    /auctions/{id}/stream   — SSE stream for live bid updates
"""

import asyncio
import json
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from models.entities.couchbase.auctions import DEFAULT_BID_INCREMENT
from models.operations.auctions import (
    auction_audit,
    auction_cancel,
    auction_close,
    auction_create,
    auction_get,
    auction_get_bids,
    auction_is_final_sale,
    auction_place_bid,
    auction_search,
)
from models.operations.bidding import bid_minimum
from models.operations.errors import AuctionError, AuctionErrorKind
from utils import log

from .dependencies import require_authenticated
from .errors import http_error

logger = log.get_logger(__name__)

router = APIRouter(prefix="/auctions", tags=["auctions"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CreateAuctionRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    crop_id: str
    starting_price: float
    reserve_price: Optional[float] = None
    bid_increment: float = DEFAULT_BID_INCREMENT
    duration_hours: float


class PlaceBidRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    amount: float
    transaction_hash: Optional[str] = Field(default=None, min_length=1)


class BidResponse(BaseModel):
    id: str
    auction_id: str
    bidder_id: str
    amount: float
    is_winning: bool
    bid_time: datetime
    transaction_hash: Optional[str] = None


class AuctionResponse(BaseModel):
    id: str
    crop_id: str
    seller_id: str
    starting_price: float
    reserve_price: Optional[float] = None
    bid_increment: float
    current_highest_bid: Optional[float] = None
    highest_bidder_id: Optional[str] = None
    minimum_next_bid: Optional[float] = None
    start_time: datetime
    end_time: datetime
    status: str
    outcome: str
    is_final_sale: bool
    total_bids: int
    closed_at: Optional[datetime] = None


class AuditResponse(BaseModel):
    auction_id: str
    consistent: bool
    problems: List[str]


def _auction_to_response(auction) -> AuctionResponse:
    d = auction.data
    return AuctionResponse(
        id=auction.id,
        crop_id=d.listing_id,
        seller_id=d.seller_id,
        starting_price=d.starting_price,
        reserve_price=d.reserve_price,
        bid_increment=d.bid_increment,
        current_highest_bid=d.current_highest_bid,
        highest_bidder_id=d.current_winner_id,
        minimum_next_bid=bid_minimum(d) if d.status == "active" else None,
        start_time=d.start_time,
        end_time=d.end_time,
        status=d.status,
        outcome=d.outcome,
        is_final_sale=auction_is_final_sale(auction),
        total_bids=d.total_bid_count,
        closed_at=d.closed_at,
    )


def _bid_to_response(bid) -> BidResponse:
    d = bid.data
    return BidResponse(
        id=bid.id,
        auction_id=d.auction_id,
        bidder_id=d.bidder_id,
        amount=d.amount,
        is_winning=d.is_winning,
        bid_time=d.bid_time,
        transaction_hash=d.external_transaction_reference,
    )


async def _get_or_404(auction_id: str):
    auction = await auction_get(auction_id)
    if not auction:
        raise HTTPException(status_code=404, detail="Auction not found")
    return auction


# ---------------------------------------------------------------------------
# POST /auctions/ — create auction
# ---------------------------------------------------------------------------

@router.post("/", response_model=AuctionResponse, status_code=201)
async def route_auction_create(
    body: CreateAuctionRequest,
    user: dict = Depends(require_authenticated),
):
    """Open an auction on one of the caller's crop listings. Starts immediately."""
    auction, err = await auction_create(
        seller_id=user["sub"],
        listing_id=body.crop_id,
        starting_price=body.starting_price,
        duration_hours=body.duration_hours,
        reserve_price=body.reserve_price,
        bid_increment=body.bid_increment,
    )
    if err:
        raise http_error(err)
    return _auction_to_response(auction)


# ---------------------------------------------------------------------------
# GET /auctions/ — list auctions
# ---------------------------------------------------------------------------

@router.get("/", response_model=List[AuctionResponse])
async def route_auctions_search(
    status: Optional[str] = "active",
    seller_id: Optional[str] = None,
    limit: int = Query(default=50, le=100),
    offset: int = Query(default=0, ge=0),
):
    """List auctions, newest first."""
    auctions = await auction_search(
        status=status,
        seller_id=seller_id,
        limit=limit,
        offset=offset,
    )
    return [_auction_to_response(a) for a in auctions]


# ---------------------------------------------------------------------------
# GET /auctions/{id} — auction detail
# ---------------------------------------------------------------------------

@router.get("/{auction_id}", response_model=AuctionResponse)
async def route_auction_detail(auction_id: str):
    return _auction_to_response(await _get_or_404(auction_id))


# ---------------------------------------------------------------------------
# GET /auctions/{id}/bids — bid history
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/bids", response_model=List[BidResponse])
async def route_auction_bids(
    auction_id: str,
    limit: int = Query(default=100, le=500),
):
    """Bids for an auction ordered by amount descending, earliest first on ties."""
    bids = await auction_get_bids(auction_id, limit=limit)
    if bids is None:
        raise HTTPException(status_code=404, detail="Auction not found")
    return [_bid_to_response(b) for b in bids]


# ---------------------------------------------------------------------------
# POST /auctions/{id}/bids — place a bid
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/bids", response_model=BidResponse, status_code=201)
async def route_place_bid(
    auction_id: str,
    body: PlaceBidRequest,
    user: dict = Depends(require_authenticated),
):
    """Place a bid on an active auction.

    ``transaction_hash`` is optional; a receipt confirmed later can be
    attached through ``POST /bids/{id}/receipt``.
    """
    bid, err = await auction_place_bid(
        auction_id=auction_id,
        bidder_id=user["sub"],
        amount=body.amount,
        external_transaction_reference=body.transaction_hash,
    )
    if err:
        raise http_error(err)
    return _bid_to_response(bid)


# ---------------------------------------------------------------------------
# POST /auctions/{id}/close — close after end time
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/close", response_model=AuctionResponse)
async def route_auction_close(auction_id: str):
    """Close an auction whose end time has passed. Repeating it is harmless."""
    auction, err = await auction_close(auction_id)
    if err:
        raise http_error(err)
    return _auction_to_response(auction)


# ---------------------------------------------------------------------------
# POST /auctions/{id}/cancel — cancel auction
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/cancel", response_model=AuctionResponse)
async def route_auction_cancel(
    auction_id: str,
    user: dict = Depends(require_authenticated),
):
    auction = await _get_or_404(auction_id)
    if auction.data.seller_id != user["sub"]:
        raise http_error(AuctionError(kind=AuctionErrorKind.FORBIDDEN, message="Not your auction"))

    cancelled, err = await auction_cancel(auction_id)
    if err:
        raise http_error(err)
    return _auction_to_response(cancelled)


# ---------------------------------------------------------------------------
# GET /auctions/{id}/audit — ledger replay
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/audit", response_model=AuditResponse)
async def route_auction_audit(auction_id: str):
    problems, err = await auction_audit(auction_id)
    if err:
        raise http_error(err)
    if problems:
        logger.warning(f"Auction {auction_id} failed ledger audit: {problems}")
    return AuditResponse(auction_id=auction_id, consistent=not problems, problems=problems)


# ---------------------------------------------------------------------------
# GET /auctions/{id}/stream — SSE for live bid updates
# ---------------------------------------------------------------------------

@router.get("/{auction_id}/stream")
async def route_auction_stream(auction_id: str, poll_seconds: float = Query(default=1.0, gt=0, le=30)):
    """Server-Sent Events stream for live auction updates.

    Polls Couchbase and emits an update event when total_bids changes, then
    an ended event once the auction leaves active.
    """
    async def event_generator():
        last_bid_count = -1
        while True:
            auction = await auction_get(auction_id)
            if not auction:
                yield f"event: error\ndata: {json.dumps({'error': 'Auction not found'})}\n\n"
                break

            d = auction.data

            if d.total_bid_count != last_bid_count:
                last_bid_count = d.total_bid_count
                payload = {
                    'auction_id': auction_id,
                    'status': d.status,
                    'current_highest_bid': d.current_highest_bid,
                    'highest_bidder_id': d.current_winner_id,
                    'total_bids': d.total_bid_count,
                    'end_time': d.end_time.isoformat(),
                }
                yield f"event: update\ndata: {json.dumps(payload)}\n\n"

            if d.status not in ("active", "upcoming"):
                payload = {
                    'status': d.status,
                    'outcome': d.outcome,
                    'is_final_sale': auction_is_final_sale(auction),
                    'winner_id': d.current_winner_id if auction_is_final_sale(auction) else None,
                }
                yield f"event: ended\ndata: {json.dumps(payload)}\n\n"
                break

            await asyncio.sleep(poll_seconds)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
