import uuid
from datetime import datetime, timezone
from typing import Optional, TypeVar, Generic, List, ClassVar
from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException
from couchbase.options import ReplaceOptions
from .keyspace import Keyspace, get_keyspace

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
        doc = data.model_dump(mode='json')

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
    def from_query_rows(cls: type[T], rows: list) -> List[T]:
        """Build entities from ``SELECT META().id, * FROM ...`` rows."""
        return [
            cls(id=row["id"], data=row[cls._collection_name])
            for row in rows if row.get(cls._collection_name)
        ]

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

        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        if user_id:
            data.created_by_user_id = user_id

        doc = cls.model_dump_with_excluded_attributes(data)
        result = await cls.get_keyspace().insert(doc, key=key)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def create_or_update(cls: type[T], key: str, data: DataT, user_id: Optional[str] = None) -> T:
        """Idempotently create or update a document with a specific key.

        Upsert semantics: if the document exists it is overwritten, otherwise
        it is created. Used for projections that may be re-written after a
        crash, where a deterministic key makes the write retry-safe.

        Args:
            key: Deterministic document key for idempotency
            data: The entity data to store
            user_id: Optional user ID to associate with the document

        Returns:
            The created or updated entity
        """
        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        if user_id:
            data.created_by_user_id = user_id

        doc = cls.model_dump_with_excluded_attributes(data)
        result = await cls.get_keyspace().upsert(key, doc)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        """Replace the stored document.

        When ``item.cas`` is set the replace is CAS-guarded and raises
        ``CASMismatchException`` if the document changed since it was read.
        """
        collection = await cls.get_keyspace().get_collection()

        item.data.updated_at = datetime.now(timezone.utc)

        doc = cls.model_dump_with_excluded_attributes(item.data)
        if item.cas:
            result = await collection.replace(item.id, doc, ReplaceOptions(cas=item.cas))
        else:
            result = await collection.replace(item.id, doc)
        item.cas = result.cas
        return item
