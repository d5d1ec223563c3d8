"""
Pure bidding rules: admissibility of a bid and ledger replay.

Nothing here touches the database. ``auction_place_bid`` calls
``bid_validate`` inside its CAS loop so every retry is judged against the
freshest auction state.
"""

import math
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel

from models.entities.couchbase.auctions import Auction, AuctionData, LedgerEntry
from models.operations.errors import AuctionError, AuctionErrorKind, auction_not_found


def to_cents(value: Optional[float]) -> Optional[int]:
    """*value* as whole cents, or ``None`` if it is not finite or finer than a cent."""
    if value is None or not math.isfinite(value):
        return None
    cents = round(value * 100)
    if abs(value * 100 - cents) > 1e-6:
        return None
    return cents


def _cents_up(value: float) -> int:
    return math.ceil(value * 100 - 1e-6)


def _next_minimum_cents(current: float, increment: float) -> int:
    # Never below one cent over the current price
    return _cents_up(current) + max(1, _cents_up(increment))


def bid_minimum(data: AuctionData) -> float:
    """Smallest admissible amount for the next bid."""
    if data.current_highest_bid is None:
        return data.starting_price
    return _next_minimum_cents(data.current_highest_bid, data.bid_increment) / 100


def auction_is_expired(data: AuctionData, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return now >= data.end_time


def bid_validate(
    auction: Optional[Auction],
    amount: float,
    now: Optional[datetime] = None,
    auction_id: str = "",
) -> Optional[AuctionError]:
    """Return ``None`` if *amount* is admissible against *auction*, else the rejection.

    Checks run in a fixed order: existence, status, wall-clock expiry (the
    status may not have been swept to ``ended`` yet), amount (a finite,
    positive number of whole cents), then the increment rule.
    """
    if auction is None:
        return auction_not_found(auction_id)

    data = auction.data
    if data.status != "active":
        return AuctionError(
            kind=AuctionErrorKind.AUCTION_NOT_ACTIVE,
            message=f"Auction is not active (status: {data.status})",
        )

    if auction_is_expired(data, now):
        return AuctionError(
            kind=AuctionErrorKind.AUCTION_EXPIRED,
            message="Auction has ended",
        )

    amount_cents = to_cents(amount)
    if amount_cents is None or amount_cents <= 0:
        return AuctionError(
            kind=AuctionErrorKind.INVALID_AMOUNT,
            message="Bid amount must be a positive amount in whole cents",
        )

    minimum = bid_minimum(data)
    if amount_cents < _cents_up(minimum):
        return AuctionError(
            kind=AuctionErrorKind.BID_TOO_LOW,
            message=f"Bid must be at least {minimum:.2f}",
            minimum_bid=minimum,
        )

    return None


# ---------------------------------------------------------------------------
# Ledger replay
# ---------------------------------------------------------------------------

class LedgerAggregates(BaseModel):
    current_highest_bid: Optional[float] = None
    current_winner_id: Optional[str] = None
    current_winning_bid_id: Optional[str] = None
    total_bid_count: int = 0


def ledger_replay(ledger: List[LedgerEntry]) -> LedgerAggregates:
    """Recompute the auction's cached aggregates from its accepted bids."""
    aggregates = LedgerAggregates()
    for entry in sorted(ledger, key=lambda e: e.bid_time):
        aggregates.total_bid_count += 1
        if (
            aggregates.current_highest_bid is None
            or entry.amount > aggregates.current_highest_bid
        ):
            aggregates.current_highest_bid = entry.amount
            aggregates.current_winner_id = entry.bidder_id
            aggregates.current_winning_bid_id = entry.bid_id
    return aggregates


def ledger_audit(data: AuctionData) -> List[str]:
    """List every way the cached aggregates or ledger break an auction invariant."""
    problems = []
    derived = ledger_replay(data.ledger)
    for field in LedgerAggregates.model_fields:
        cached = getattr(data, field)
        replayed = getattr(derived, field)
        if cached != replayed:
            problems.append(f"{field}: cached={cached!r} replayed={replayed!r}")

    previous = None
    for entry in sorted(data.ledger, key=lambda e: e.bid_time):
        if previous is None:
            required = _cents_up(data.starting_price)
        else:
            required = _next_minimum_cents(previous, data.bid_increment)
        amount_cents = to_cents(entry.amount)
        if amount_cents is None:
            problems.append(f"bid {entry.bid_id}: amount {entry.amount} is not whole cents")
        elif amount_cents < required:
            problems.append(
                f"bid {entry.bid_id}: amount {entry.amount} below required {required / 100:.2f}"
            )
        previous = entry.amount

    if data.current_highest_bid is not None and data.current_highest_bid < data.starting_price:
        problems.append("current_highest_bid below starting_price")
    return problems
