from .config import (
    DEFAULT_BUCKET_NAME,
    validate_config,
    get_cluster,
    set_cluster,
    check_connection
)
from .keyspace import (
    Keyspace,
    Where,
    get_keyspace
)
from .transactions import (
    CONFLICT_ERRORS,
    TransactionConflict,
    TransactionContext,
    run_transaction,
    transactional
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData
)
from .geo import (
    bounding_box,
    haversine_m,
    longitude_ranges,
    nearest
)
