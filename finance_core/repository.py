"""
Repository Module

One generic repository parameterized by record type, backed by any
StorageInterface implementation (InMemoryStorage as the mock backend,
SQLiteStorage for persistence).
"""

from typing import Callable, Generic, List, Optional, Type, TypeVar, Any

from .storage import StorageInterface, StorageRecord
from .errors import DuplicateRecordError

T = TypeVar("T", bound=StorageRecord)


class Repository(Generic[T]):
    """Typed access to one storage table"""

    def __init__(self, storage: StorageInterface, table: str, record_type: Type[T]):
        self.storage = storage
        self.table = table
        self.record_type = record_type

    def get(self, record_id: str) -> Optional[T]:
        """Load a record by id, None when absent"""
        data = self.storage.load(self.table, record_id)
        if data:
            return self.record_type.from_dict(data)
        return None

    def save(self, record: T) -> T:
        """Insert or replace a record"""
        self.storage.save(self.table, record.id, record.to_dict())
        return record

    def append(self, record: T) -> T:
        """Insert a record into an append-only table"""
        if self.storage.exists(self.table, record.id):
            raise DuplicateRecordError(f"{self.table} record {record.id} already exists")
        self.storage.save(self.table, record.id, record.to_dict())
        return record

    def exists(self, record_id: str) -> bool:
        return self.storage.exists(self.table, record_id)

    def find(self, **filters: Any) -> List[T]:
        """Find records whose stored fields equal the given values"""
        return [self.record_type.from_dict(data) for data in self.storage.find(self.table, filters)]

    def list_all(self) -> List[T]:
        return [self.record_type.from_dict(data) for data in self.storage.load_all(self.table)]

    def filter(self, predicate: Callable[[T], bool], **filters: Any) -> List[T]:
        """Find records by stored fields, then by an arbitrary predicate"""
        return [record for record in self.find(**filters) if predicate(record)]

    def count(self) -> int:
        return self.storage.count(self.table)
