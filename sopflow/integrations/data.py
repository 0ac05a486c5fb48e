"""External data service boundary."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..errors import ExternalServiceError


class ExternalDataService(Protocol):
    """Customer/record store consumed by query and external-call steps."""

    async def query(self, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        ...

    async def find(self, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def update(self, record_id: str, attrs: Mapping[str, Any]) -> Dict[str, Any]:
        ...


class StaticDataService:
    """Records held in memory; filters match on equality of every given key."""

    def __init__(
        self, records: Optional[List[Dict[str, Any]]] = None, id_field: str = "id"
    ) -> None:
        self._id_field = id_field
        self._records: Dict[str, Dict[str, Any]] = {
            str(r[id_field]): copy.deepcopy(r) for r in records or []
        }

    async def query(self, filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(record)
            for record in self._records.values()
            if all(record.get(k) == v for k, v in filters.items())
        ]

    async def find(self, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(str(record_id))
        return copy.deepcopy(record) if record else None

    async def update(self, record_id: str, attrs: Mapping[str, Any]) -> Dict[str, Any]:
        record = self._records.get(str(record_id))
        if record is None:
            raise ExternalServiceError(f"Record not found: {record_id}")
        record.update(attrs)
        return copy.deepcopy(record)
