"""
In-process RecordStore, used for tests and local development.
"""

import copy
from typing import Any, Dict, List, Optional

from trustlayer.store.base import Filter, Record, RecordStore, StoreError


class InMemoryRecordStore(RecordStore):
    """Dictionary backed tables with the same semantics as the Grist client"""

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._next_id = 1
        self.fail_with: Optional[StoreError] = None

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Raw field dicts of a table in insertion order"""
        return [dict(fields) for fields in self.tables.get(table, {}).values()]

    async def list(
        self,
        table: str,
        filter: Optional[Filter] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        self._raise_if_failing()
        records = [
            Record(id=record_id, fields=copy.deepcopy(fields))
            for record_id, fields in self.tables.get(table, {}).items()
            if filter is None or filter.matches(fields)
        ]
        if sort:
            column = sort.lstrip("-")
            records.sort(
                key=lambda r: (r.get(column) is not None, r.get(column) or ""),
                reverse=sort.startswith("-"),
            )
        if limit is not None:
            records = records[:limit]
        return records

    async def create(self, table: str, fields: Dict[str, Any]) -> int:
        self._raise_if_failing()
        record_id = self._next_id
        self._next_id += 1
        self.tables.setdefault(table, {})[record_id] = copy.deepcopy(fields)
        return record_id

    async def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> None:
        self._raise_if_failing()
        rows = self.tables.get(table, {})
        if record_id not in rows:
            raise StoreError(f"Record {record_id} not found in {table}", status_code=404)
        rows[record_id].update(copy.deepcopy(fields))

    def _raise_if_failing(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with
