from .config import (
    DEFAULT_BUCKET_NAME,
    DEFAULT_SCOPE_NAME,
    get_cluster,
    check_connection,
    close_cluster,
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T,
)

from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)

__all__ = [
    "DEFAULT_BUCKET_NAME",
    "DEFAULT_SCOPE_NAME",
    "get_cluster",
    "check_connection",
    "close_cluster",
    "Keyspace",
    "get_keyspace",
    "BaseModelCouchbase",
    "BaseCouchbaseEntityData",
    "DataT",
    "T",
    "CASMismatchException",
    "DocumentExistsException",
    "DocumentNotFoundException",
]
