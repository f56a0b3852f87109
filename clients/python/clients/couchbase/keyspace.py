import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from couchbase.n1ql import QueryScanConsistency
from couchbase.result import MutationResult
from couchbase.options import QueryOptions
from .config import get_cluster, DEFAULT_BUCKET_NAME

COMPARISON_OPS = ("=", "!=", "<", "<=", ">", ">=")


@dataclass(frozen=True)
class Where:
    """One condition of a structured find.

    ``field`` is a dotted document path. ``op`` is a comparison operator,
    ``IN`` (value is a list) or ``ANY`` (value is a ``(sub_field, value)``
    pair matched against the elements of an array field).
    """
    field: str
    op: str
    value: Any


@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    @classmethod
    def from_string(cls, keyspace: str) -> 'Keyspace':
        parts = keyspace.split('.')
        if len(parts) != 3:
            raise ValueError(
                "Invalid keyspace format. Expected 'bucket_name.scope_name.collection_name', "
                f"got '{keyspace}'"
            )
        return cls(*parts)

    def __str__(self) -> str:
        return f"{self.bucket_name}.{self.scope_name}.{self.collection_name}"

    async def query(self, query: str, scan_consistency: Optional[QueryScanConsistency] = None, **kwargs) -> list:
        cluster = await get_cluster()
        query = query.replace("${keyspace}", str(self))
        if scan_consistency is not None:
            options = QueryOptions(named_parameters=kwargs, scan_consistency=scan_consistency)
        else:
            options = QueryOptions(named_parameters=kwargs)
        result = cluster.query(query, options)
        return [row async for row in result]

    def compile_find(
        self,
        where: Sequence[Where] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Tuple[str, Dict[str, Any]]:
        """Build the SQL++ statement and named parameters for :meth:`find`."""
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        for i, cond in enumerate(where):
            name = f"p{i}"
            if cond.op == "IN":
                clauses.append(f"{cond.field} IN ${name}")
                params[name] = [_param_value(v) for v in cond.value]
            elif cond.op == "ANY":
                sub_field, value = cond.value
                clauses.append(f"ANY v IN {cond.field} SATISFIES v.{sub_field} = ${name} END")
                params[name] = _param_value(value)
            elif cond.op in COMPARISON_OPS:
                if isinstance(cond.value, datetime):
                    clauses.append(f"STR_TO_MILLIS({cond.field}) {cond.op} STR_TO_MILLIS(${name})")
                else:
                    clauses.append(f"{cond.field} {cond.op} ${name}")
                params[name] = _param_value(cond.value)
            else:
                raise ValueError(f"Unsupported operator '{cond.op}' for field '{cond.field}'")

        query = f"SELECT META().id, * FROM {self}"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        return query, params

    async def find(
        self,
        where: Sequence[Where] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list:
        """Run a structured find. Rows look like ``{"id": ..., <collection_name>: {...}}``."""
        query, params = self.compile_find(where, order_by=order_by, limit=limit)
        return await self.query(query, scan_consistency=QueryScanConsistency.REQUEST_PLUS, **params)

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


def _param_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_keyspace(collection_name: str, scope_name: Optional[str] = "_default", bucket_name: Optional[str] = DEFAULT_BUCKET_NAME) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to "_default")
        bucket_name: Name of the bucket (defaults to DEFAULT_BUCKET_NAME)

    Returns:
        Keyspace instance
    """
    return Keyspace(bucket_name, scope_name, collection_name)

