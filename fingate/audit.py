"""Append-only audit records shared by outbound and inbound messages."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from fingate.core import now_iso8601


@dataclass(frozen=True)
class AuditEntry:
    """One audit record. Entries are never edited or removed."""
    id: int
    event: str
    actor_id: Optional[int]
    timestamp: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp,
            "details": dict(self.details),
        }


class AuditTrail:
    """Appends entries with ids numbered 1, 2, 3 ... per record."""

    def __init__(self, clock: Callable[[], str] = now_iso8601):
        self._clock = clock
        self._lock = threading.Lock()

    def append(
        self,
        entries: List[AuditEntry],
        event: str,
        actor_id: Optional[int] = None,
        **details: Any,
    ) -> AuditEntry:
        with self._lock:
            entry = AuditEntry(
                id=len(entries) + 1,
                event=event,
                actor_id=actor_id,
                timestamp=self._clock(),
                details=details,
            )
            entries.append(entry)
        return entry
