"""Memory notes consumed by the scheduler's survey phase."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..persistence.models import utcnow

NOTE_TTL = timedelta(days=7)
PERMANENT_IMPORTANCE = 8


class MemoryNote(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: str
    content: str
    importance: int = Field(default=5, ge=1, le=10)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


class MemoryStore(Protocol):
    async def top_notes(
        self, role: str, limit: int, min_importance: Optional[int] = None
    ) -> List[MemoryNote]:
        """Live notes for ``role`` ranked by importance, then recency."""
        ...

    async def record(self, role: str, note: str, importance: int) -> MemoryNote:
        ...

    async def prune_expired(self, now: Optional[datetime] = None) -> int:
        ...


class InMemoryMemoryStore:
    def __init__(self) -> None:
        self._notes: Dict[str, MemoryNote] = {}

    async def top_notes(
        self, role: str, limit: int, min_importance: Optional[int] = None
    ) -> List[MemoryNote]:
        now = utcnow()
        notes = [
            n
            for n in self._notes.values()
            if n.role == role
            and not n.is_expired(now)
            and (min_importance is None or n.importance >= min_importance)
        ]
        notes.sort(key=lambda n: (n.importance, n.created_at), reverse=True)
        return notes[:limit]

    async def record(self, role: str, note: str, importance: int) -> MemoryNote:
        created = utcnow()
        expires = None if importance >= PERMANENT_IMPORTANCE else created + NOTE_TTL
        memory = MemoryNote(
            role=role,
            content=note,
            importance=importance,
            created_at=created,
            expires_at=expires,
        )
        self._notes[memory.id] = memory
        return memory

    async def prune_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = [k for k, n in self._notes.items() if n.is_expired(now)]
        for key in expired:
            del self._notes[key]
        return len(expired)
