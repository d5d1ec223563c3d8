from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


DEFAULT_BID_INCREMENT = 10.0

AuctionStatus = Literal["upcoming", "active", "ended", "cancelled"]
AuctionOutcome = Literal["pending", "sold", "no_sale", "no_bids", "cancelled"]


class LedgerEntry(BaseModel):
    """One accepted bid, appended to the auction in the same CAS write that
    moves the price. The ``bids`` collection is a projection of these."""
    bid_id: str
    bidder_id: str
    amount: float
    bid_time: datetime
    external_transaction_reference: Optional[str] = None


class AuctionData(BaseCouchbaseEntityData):
    # Ownership
    seller_id: str
    listing_id: str

    # Price parameters (immutable after creation)
    starting_price: float
    reserve_price: Optional[float] = None
    bid_increment: float = DEFAULT_BID_INCREMENT

    # Schedule (end_time is never moved by bidding)
    start_time: datetime
    end_time: datetime

    status: AuctionStatus = "active"
    outcome: AuctionOutcome = "pending"
    closed_at: Optional[datetime] = None

    # Denormalized high-bid, derivable by replaying ``ledger``
    current_highest_bid: Optional[float] = None
    current_winner_id: Optional[str] = None
    current_winning_bid_id: Optional[str] = None
    total_bid_count: int = 0

    ledger: List[LedgerEntry] = []


class Auction(BaseModelCouchbase[AuctionData]):
    _collection_name = "auctions"
