import asyncio
import uuid
from datetime import datetime, timezone
from typing import Optional, TypeVar, Generic, List, ClassVar, Sequence
from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException
from .keyspace import Keyspace, Where, get_keyspace
from .transactions import TransactionContext

class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by_user_id: Optional[str] = None

DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")

class BaseModelCouchbase(BaseModel, Generic[DataT]):
    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @staticmethod
    def model_dump_with_excluded_attributes(data: DataT) -> dict:
        """
        Converts the model to a dictionary for database storage,
        ensuring fields marked with exclude=True are included.
        """
        # Standard dump handles serialization (enums, datetimes, nested models)
        doc = data.model_dump(mode='json')

        # Re-inject fields that were excluded (plain strings such as handover codes)
        for field_name, field_info in type(data).model_fields.items():
            if field_info.exclude:
                value = getattr(data, field_name)
                if value is not None:
                    doc[field_name] = value
        return doc

    @classmethod
    def get_keyspace(cls) -> Keyspace:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return get_keyspace(cls._collection_name)

    @classmethod
    def _stamp(cls, data: DataT, user_id: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now
        if user_id:
            data.created_by_user_id = user_id

    @classmethod
    async def get(cls: type[T], id: str) -> Optional[T]:
        try:
            collection = await cls.get_keyspace().get_collection()
            result = await collection.get(id)
            data = result.content_as[dict]
            return cls(id=id, data=data, cas=result.cas)
        except DocumentNotFoundException:
            return None

    @classmethod
    async def create(cls: type[T], data: DataT, key: Optional[str] = None, user_id: Optional[str] = None) -> T:
        if key is None:
            key = str(uuid.uuid4())
        cls._stamp(data, user_id)
        doc = cls.model_dump_with_excluded_attributes(data)
        result = await cls.get_keyspace().insert(doc, key=key)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        """Replace the stored document. Raises CASMismatchException when *item* is stale."""
        collection = await cls.get_keyspace().get_collection()

        item.data.updated_at = datetime.now(timezone.utc)

        doc = cls.model_dump_with_excluded_attributes(item.data)
        if item.cas:
            result = await collection.replace(item.id, doc, cas=item.cas)
        else:
            result = await collection.replace(item.id, doc)
        item.cas = result.cas
        return item

    @classmethod
    async def get_many(cls: type[T], ids: List[str]) -> List[T]:
        """Fetch several documents by key, skipping the missing ones."""
        found = await asyncio.gather(*(cls.get(id) for id in ids))
        return [item for item in found if item is not None]

    @classmethod
    async def find(
        cls: type[T],
        where: Sequence[Where] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        rows = await cls.get_keyspace().find(where, order_by=order_by, limit=limit)
        return [
            cls(id=row["id"], data=row[cls._collection_name])
            for row in rows if row.get(cls._collection_name)
        ]

    # ------------------------------------------------------------------
    # Transactional access
    # ------------------------------------------------------------------

    @classmethod
    async def tx_get(cls: type[T], tx: TransactionContext, id: str) -> Optional[T]:
        data = await tx.get(cls.get_keyspace(), id)
        if data is None:
            return None
        return cls(id=id, data=data)

    @classmethod
    async def tx_create(cls: type[T], tx: TransactionContext, data: DataT, key: Optional[str] = None, user_id: Optional[str] = None) -> T:
        if key is None:
            key = str(uuid.uuid4())
        cls._stamp(data, user_id)
        await tx.insert(cls.get_keyspace(), key, cls.model_dump_with_excluded_attributes(data))
        return cls(id=key, data=data)

    @classmethod
    async def tx_update(cls: type[T], tx: TransactionContext, item: T) -> T:
        item.data.updated_at = datetime.now(timezone.utc)
        await tx.replace(cls.get_keyspace(), item.id, cls.model_dump_with_excluded_attributes(item.data))
        return item
