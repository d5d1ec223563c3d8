from typing import Optional
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class BidData(BaseCouchbaseEntityData):
    auction_id: str
    bidder_id: str
    amount: float
    bid_time: datetime
    is_winning: bool = True
    external_transaction_reference: Optional[str] = None


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"
