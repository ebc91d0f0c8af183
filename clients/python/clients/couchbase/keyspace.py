import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from couchbase.result import MutationResult
from couchbase.options import QueryOptions
from couchbase.n1ql import QueryScanConsistency

from .config import get_cluster, DEFAULT_BUCKET_NAME, DEFAULT_SCOPE_NAME


@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    def __str__(self) -> str:
        return f"`{self.bucket_name}`.`{self.scope_name}`.`{self.collection_name}`"

    async def query(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        """Run a N1QL statement with named parameters.

        Reads use ``REQUEST_PLUS`` so a sweep never misses a document that was
        written just before it started.
        """
        cluster = await get_cluster()
        options = QueryOptions(
            named_parameters=params,
            scan_consistency=QueryScanConsistency.REQUEST_PLUS,
        )
        result = cluster.query(query, options)
        return [row async for row in result]

    async def get_scope(self):
        cluster = await get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name)

    async def get_collection(self):
        scope = await self.get_scope()
        return scope.collection(self.collection_name)

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MutationResult:
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def upsert(self, key: str, value: dict, **kwargs) -> MutationResult:
        """Insert or update a document (idempotent write).

        Args:
            key: Document key (required for idempotency)
            value: Document value to store
            **kwargs: Additional options passed to collection.upsert()
        """
        collection = await self.get_collection()
        return await collection.upsert(key, value, **kwargs)


def get_keyspace(
    collection_name: str,
    scope_name: Optional[str] = DEFAULT_SCOPE_NAME,
    bucket_name: Optional[str] = DEFAULT_BUCKET_NAME,
) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to COUCHBASE_SCOPE or "_default")
        bucket_name: Name of the bucket (defaults to DEFAULT_BUCKET_NAME)
    """
    return Keyspace(bucket_name, scope_name, collection_name)
