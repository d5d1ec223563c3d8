from typing import Literal
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class UserData(BaseCouchbaseEntityData):
    wallet_address: str
    role: Literal["farmer", "buyer"] = "buyer"


class User(BaseModelCouchbase[UserData]):
    _collection_name = "users"
