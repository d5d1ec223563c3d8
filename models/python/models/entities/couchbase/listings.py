from typing import Optional, Literal
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


ListingStatus = Literal["available", "under_auction", "sold"]


class ListingData(BaseCouchbaseEntityData):
    farmer_id: str
    title: str
    description: Optional[str] = None
    crop_type: Optional[str] = None
    quantity: float = 0.0
    unit: str = "kg"
    status: ListingStatus = "available"


class Listing(BaseModelCouchbase[ListingData]):
    _collection_name = "listings"
