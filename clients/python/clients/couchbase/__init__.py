from .config import (
    DEFAULT_BUCKET_NAME,
    HOST,
    PROTOCOL,
    get_cluster,
    check_connection,
    validate_config,
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)

# External re-exports
from couchbase.options import QueryOptions, ReplaceOptions
from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)
from couchbase.result import MutationResult
