"""
In-memory record stores for outbound and incoming messages.

Operations on one record are serialized by a per-id lock; different records
proceed in parallel. The lock registry itself is guarded by its own lock so
two threads asking for the same id always get the same lock.
"""

from __future__ import annotations

import copy
import threading
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from fingate.inbound import IncomingMessage, IncomingStatus
from fingate.lifecycle import (
    LifecycleError,
    LifecycleEvent,
    LifecycleStateMachine,
    MessageStatus,
    MtMessage,
)
from fingate.observability import GatewayLayer, get_logger

log = get_logger("store", GatewayLayer.STORE)

R = TypeVar("R")
T = TypeVar("T")


class RecordNotFound(KeyError):
    """No record is stored under the requested id."""


class LockRegistry:
    """One lock per record id, created on first use."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def get(self, record_id: str) -> threading.RLock:
        with self._lock:
            lock = self._locks.get(record_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[record_id] = lock
            return lock

    def discard(self, record_id: str) -> None:
        with self._lock:
            self._locks.pop(record_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)


class RecordStore(Generic[R]):
    """Keyed records with serialized per-record updates."""

    def __init__(self):
        self._records: Dict[str, R] = {}
        self._records_lock = threading.RLock()
        self.locks = LockRegistry()

    @staticmethod
    def _key(record: R) -> str:
        return record.id  # type: ignore[attr-defined]

    def save(self, record: R) -> R:
        with self._records_lock:
            self._records[self._key(record)] = record
        return record

    def get(self, record_id: str) -> R:
        with self._records_lock:
            try:
                return self._records[record_id]
            except KeyError:
                raise RecordNotFound(record_id) from None

    def snapshot(self, record_id: str) -> R:
        """Deep copy of a record taken under its lock."""
        with self.locks.get(record_id):
            return copy.deepcopy(self.get(record_id))

    def delete(self, record_id: str) -> None:
        with self.locks.get(record_id):
            with self._records_lock:
                if self._records.pop(record_id, None) is None:
                    raise RecordNotFound(record_id)
        self.locks.discard(record_id)

    def apply(self, record_id: str, fn: Callable[[R], T]) -> T:
        """Run ``fn`` on the stored record while holding its lock."""
        with self.locks.get(record_id):
            return fn(self.get(record_id))

    def list(self, predicate: Optional[Callable[[R], bool]] = None) -> List[R]:
        with self._records_lock:
            records = list(self._records.values())
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    def __contains__(self, record_id: object) -> bool:
        with self._records_lock:
            return record_id in self._records

    def __len__(self) -> int:
        with self._records_lock:
            return len(self._records)

    def __iter__(self) -> Iterator[R]:
        return iter(self.list())


class MessageStore(RecordStore[MtMessage]):
    """Outbound messages, driven through a ``LifecycleStateMachine``."""

    def __init__(self, machine: LifecycleStateMachine):
        super().__init__()
        self.machine = machine

    def by_status(self, status: MessageStatus) -> List[MtMessage]:
        return self.list(lambda m: m.status is status)

    def by_reference(self, reference: str) -> List[MtMessage]:
        return self.list(lambda m: m.transaction_reference_number == reference)

    def transition(
        self,
        message_id: str,
        event: LifecycleEvent,
        actor_id: Optional[int] = None,
        **kwargs,
    ) -> Tuple[MtMessage, Optional[LifecycleError]]:
        """Apply ``event`` to the stored message under its lock."""
        result = self.apply(
            message_id,
            lambda m: self.machine.transition(m, event, actor_id, **kwargs),
        )
        if result[1] is not None:
            log.debug("Transition refused", message_id=message_id, event=event.value, code=result[1].code)
        return result


class IncomingStore(RecordStore[IncomingMessage]):
    """Received messages."""

    def by_status(self, status: IncomingStatus) -> List[IncomingMessage]:
        return self.list(lambda m: m.status is status)

    def by_checksum(self, checksum_sha256: str) -> List[IncomingMessage]:
        return self.list(lambda m: m.checksum_sha256 == checksum_sha256)

    def by_uetr(self, uetr: str) -> List[IncomingMessage]:
        wanted = uetr.lower()
        return self.list(lambda m: (m.uetr or "").lower() == wanted)
