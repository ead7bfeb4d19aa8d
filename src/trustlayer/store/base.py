"""
Repository interface over the remote tabular backend.

Security components only ever talk to a RecordStore; the Grist HTTP client
and the in-memory store are interchangeable implementations.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from trustlayer.core.errors import TrustLayerError


class StoreError(TrustLayerError):
    """The store was unreachable or answered with a non-2xx status"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class Record:
    """A row of a remote table"""
    id: int
    fields: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)


class Filter:
    """
    Conjunction of simple comparisons, e.g.
    Filter().eq("identifier", "alice").gte("timestamp", since)
    """

    OPERATORS = ("==", ">=", "<=")

    def __init__(self) -> None:
        self.conditions: List[Tuple[str, str, Any]] = []

    def eq(self, name: str, value: Any) -> "Filter":
        return self._add(name, "==", value)

    def gte(self, name: str, value: Any) -> "Filter":
        return self._add(name, ">=", value)

    def lte(self, name: str, value: Any) -> "Filter":
        return self._add(name, "<=", value)

    def _add(self, name: str, operator: str, value: Any) -> "Filter":
        if not name.isidentifier():
            raise ValueError(f"Invalid column name: {name!r}")
        self.conditions.append((name, operator, value))
        return self

    def __bool__(self) -> bool:
        return bool(self.conditions)

    def __repr__(self) -> str:
        return f"Filter({self.to_expression()!r})"

    def to_expression(self) -> str:
        """Serialize as a formula such as `identifier == "alice" and is_ip_based == 0`"""
        return " and ".join(
            f"{name} {operator} {_format_value(value)}"
            for name, operator, value in self.conditions
        )

    def matches(self, fields: Dict[str, Any]) -> bool:
        for name, operator, value in self.conditions:
            actual = fields.get(name)
            if operator == "==":
                if actual != value:
                    return False
                continue
            if actual is None or actual == "":
                return False
            try:
                if operator == ">=" and not actual >= value:
                    return False
                if operator == "<=" and not actual <= value:
                    return False
            except TypeError:
                return False
        return True


def _format_value(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "None"
    return json.dumps(str(value))


class RecordStore(ABC):
    """Create, list and update records in named tables"""

    @abstractmethod
    async def list(
        self,
        table: str,
        filter: Optional[Filter] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """
        Fetch records. `sort` is a column name, prefixed with '-' for
        descending order.
        """

    @abstractmethod
    async def create(self, table: str, fields: Dict[str, Any]) -> int:
        """Create a record and return its id"""

    @abstractmethod
    async def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> None:
        """Overwrite the given fields of an existing record"""

    async def first(self, table: str, filter: Optional[Filter] = None) -> Optional[Record]:
        records = await self.list(table, filter=filter, limit=1)
        return records[0] if records else None

    async def aclose(self) -> None:
        pass
