"""
Record stores backing the security layer
"""

from trustlayer.store.base import Filter, Record, RecordStore, StoreError
from trustlayer.store.memory import InMemoryRecordStore

__all__ = ["Filter", "Record", "RecordStore", "StoreError", "InMemoryRecordStore"]
