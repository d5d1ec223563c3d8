import uuid
from dataclasses import dataclass
from typing import Optional
from couchbase.n1ql import QueryScanConsistency
from couchbase.result import MutationResult
from couchbase.options import QueryOptions
from .config import get_cluster, DEFAULT_BUCKET_NAME

@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    def __str__(self) -> str:
        return f"{self.bucket_name}.{self.scope_name}.{self.collection_name}"

    async def query(self, query: str, consistent: bool = False, **params) -> list:
        """Run a N1QL statement; keyword arguments become ``$name`` parameters.

        With *consistent* the query waits for the index to include every
        mutation made before it (request_plus), at the cost of latency.
        """
        cluster = await get_cluster()
        options = {}
        if params:
            options["named_parameters"] = params
        if consistent:
            options["scan_consistency"] = QueryScanConsistency.REQUEST_PLUS
        result = cluster.query(query, QueryOptions(**options))
        return [row async for row in result]

    async def get_collection(self):
        cluster = await get_cluster()
        return cluster.bucket(self.bucket_name).scope(self.scope_name).collection(self.collection_name)

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MutationResult:
        """Create a document; raises ``DocumentExistsException`` if *key* is taken."""
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def upsert(self, key: str, value: dict, **kwargs) -> MutationResult:
        """Insert or overwrite the document at *key*."""
        collection = await self.get_collection()
        return await collection.upsert(key, value, **kwargs)

def get_keyspace(collection_name: str, scope_name: Optional[str] = "_default", bucket_name: Optional[str] = DEFAULT_BUCKET_NAME) -> Keyspace:
    """Keyspace for *collection_name* in the default scope of the AgriTrust bucket."""
    return Keyspace(bucket_name, scope_name, collection_name)
