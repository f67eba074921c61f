"""
Persistence collaborator interface and an in-process implementation.

Records are the model dataclasses from `memengine.models.core`; each carries a
`collection` name and converts itself to and from a plain document.
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type, TypeVar

from .logging_config import get_logger

logger = get_logger(__name__)

R = TypeVar('R')


class RecordStoreError(Exception):
    """Custom exception for record persistence errors."""
    pass


def matches_filters(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Equality match on every filter field; list-valued fields match on membership."""
    for key, expected in filters.items():
        actual = document.get(key)
        if isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class RecordStore(ABC):
    """Generic typed-record persistence used by the engine services."""

    @abstractmethod
    def save(self, record) -> None:
        """Insert or replace a record keyed by its id."""

    @abstractmethod
    def find_by_id(self, record_type: Type[R], record_id: str) -> Optional[R]:
        """Return the record with the given id, or None."""

    @abstractmethod
    def find_all_by_filter(self, record_type: Type[R], filters: Dict[str, Any]) -> List[R]:
        """Return every record of the given type matching all filters."""

    def find_one_by_filter(self, record_type: Type[R], filters: Dict[str, Any]) -> Optional[R]:
        results = self.find_all_by_filter(record_type, filters)
        return results[0] if results else None

    def health_check(self) -> bool:
        return True


class InMemoryRecordStore(RecordStore):
    """Record store backed by per-collection dicts; documents are copied on the way in and out."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        logger.info('Initialized InMemoryRecordStore')

    def save(self, record) -> None:
        if not getattr(record, 'id', None):
            raise RecordStoreError('Cannot save a record without an id')
        document = record.to_document()
        with self._lock:
            self._collections.setdefault(record.collection, {})[record.id] = copy.deepcopy(document)
        logger.debug(f'Saved {record.collection} record {record.id}')

    def find_by_id(self, record_type, record_id):
        with self._lock:
            document = self._collections.get(record_type.collection, {}).get(record_id)
            document = copy.deepcopy(document) if document is not None else None
        return record_type.from_document(document) if document is not None else None

    def find_all_by_filter(self, record_type, filters):
        with self._lock:
            documents = [
                copy.deepcopy(doc) for doc in self._collections.get(record_type.collection, {}).values()
                if matches_filters(doc, filters)
            ]
        return [record_type.from_document(doc) for doc in documents]

    def count(self, record_type) -> int:
        with self._lock:
            return len(self._collections.get(record_type.collection, {}))


def create_record_store(app_config=None) -> RecordStore:
    """Build the record store selected by the STORE_BACKEND setting ('opensearch' or 'memory')."""
    if app_config is None:
        from .config import config as app_config

    backend = app_config.store_backend.lower()
    if backend == 'memory':
        return InMemoryRecordStore()
    if backend == 'opensearch':
        from .opensearch_client import OpenSearchRecordStore
        return OpenSearchRecordStore(app_config.opensearch)
    raise RecordStoreError(f'Unsupported store backend: {app_config.store_backend}')
