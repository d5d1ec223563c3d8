"""
Typed rejection results returned by the auction and bid operations.

Operations return ``(result, error)`` tuples; ``error`` is an ``AuctionError``
carrying a machine-readable ``kind`` next to the human-readable message, so
callers can branch on the kind instead of parsing text.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class AuctionErrorKind(str, Enum):
    # Validation
    INVALID_AMOUNT = "invalid_amount"
    INVALID_RESERVE_PRICE = "invalid_reserve_price"
    INVALID_BID_INCREMENT = "invalid_bid_increment"
    INVALID_DURATION = "invalid_duration"
    BID_TOO_LOW = "bid_too_low"

    # State
    LISTING_NOT_FOUND = "listing_not_found"
    LISTING_UNAVAILABLE = "listing_unavailable"
    AUCTION_NOT_FOUND = "auction_not_found"
    AUCTION_NOT_ACTIVE = "auction_not_active"
    AUCTION_EXPIRED = "auction_expired"
    AUCTION_STILL_RUNNING = "auction_still_running"
    FORBIDDEN = "forbidden"

    # Conflict (transient, resubmit with fresh data)
    CONCURRENT_UPDATE_CONFLICT = "concurrent_update_conflict"

    # Reconciliation
    BID_NOT_FOUND = "bid_not_found"
    RECEIPT_CONFLICT = "receipt_conflict"


VALIDATION_KINDS = frozenset({
    AuctionErrorKind.INVALID_AMOUNT,
    AuctionErrorKind.INVALID_RESERVE_PRICE,
    AuctionErrorKind.INVALID_BID_INCREMENT,
    AuctionErrorKind.INVALID_DURATION,
    AuctionErrorKind.BID_TOO_LOW,
})

NOT_FOUND_KINDS = frozenset({
    AuctionErrorKind.LISTING_NOT_FOUND,
    AuctionErrorKind.AUCTION_NOT_FOUND,
    AuctionErrorKind.BID_NOT_FOUND,
})


class AuctionError(BaseModel):
    kind: AuctionErrorKind
    message: str
    minimum_bid: Optional[float] = None

    @property
    def is_transient(self) -> bool:
        return self.kind == AuctionErrorKind.CONCURRENT_UPDATE_CONFLICT

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


def auction_not_found(auction_id: str) -> AuctionError:
    return AuctionError(
        kind=AuctionErrorKind.AUCTION_NOT_FOUND,
        message=f"Auction {auction_id} not found",
    )


def bid_not_found(bid_id: str) -> AuctionError:
    return AuctionError(
        kind=AuctionErrorKind.BID_NOT_FOUND,
        message=f"Bid {bid_id} not found",
    )


def concurrent_update_conflict() -> AuctionError:
    return AuctionError(
        kind=AuctionErrorKind.CONCURRENT_UPDATE_CONFLICT,
        message="Concurrent update conflict, please resubmit with fresh auction data",
    )
