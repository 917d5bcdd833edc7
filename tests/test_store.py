"""
Store tests: keyed records, per-record serialization and parallel releases.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from fingate.inbound import IncomingMessageService, IncomingStatus
from fingate.lifecycle import INVALID_TRANSITION, LifecycleEvent, MessageStatus
from fingate.payloads import FreeFormatPayload, SwiftHeader
from fingate.store import IncomingStore, LockRegistry, MessageStore, RecordNotFound


@pytest.fixture
def store(machine):
    return MessageStore(machine)


def _approved(machine, ref):
    message = machine.create(
        FreeFormatPayload(transaction_reference=ref, narrative="HELLO"),
        SwiftHeader(receiver_bic="COBADEFF"),
    )
    machine.validate(message)
    machine.submit_approval(message)
    machine.approve(message, 5)
    machine.approve(message, 7)
    return message


class TestLockRegistry:

    def test_same_lock_per_id(self):
        registry = LockRegistry()
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")
        registry.discard("a")
        assert len(registry) == 1


class TestMessageStore:

    def test_save_get_delete(self, store, machine, mt199):
        message = store.save(machine.create(mt199))
        assert store.get(message.id) is message
        assert message.id in store
        store.delete(message.id)
        with pytest.raises(RecordNotFound):
            store.get(message.id)

    def test_queries(self, store, machine):
        a = store.save(_approved(machine, "REFA"))
        b = store.save(machine.create(FreeFormatPayload(transaction_reference="REFB", narrative="X")))
        assert store.by_status(MessageStatus.APPROVED) == [a]
        assert store.by_reference("REFB") == [b]
        assert len(store) == 2

    def test_transition_via_store(self, store, machine, mt199):
        message = store.save(machine.create(mt199, SwiftHeader(receiver_bic="COBADEFF")))
        _, error = store.transition(message.id, LifecycleEvent.RELEASE, 1)
        assert error.code == INVALID_TRANSITION
        _, error = store.transition(message.id, LifecycleEvent.VALIDATE, 1)
        assert error is None
        assert store.get(message.id).status is MessageStatus.VALIDATED

    def test_snapshot_is_a_copy(self, store, machine, mt199):
        message = store.save(machine.create(mt199))
        copy = store.snapshot(message.id)
        copy.payload.narrative = "CHANGED"
        assert store.get(message.id).payload.narrative == "HELLO"

    def test_apply_serializes_same_record(self, store, machine, mt199):
        message = store.save(machine.create(mt199))
        active = []
        overlaps = []

        def work(_):
            def fn(m):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(1)
                time.sleep(0.001)
                active.pop()
            store.apply(message.id, fn)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(work, range(64)))
        assert overlaps == []

    def test_parallel_releases_get_distinct_sequences(self, store, machine):
        ids = [store.save(_approved(machine, f"REF{i}")).id for i in range(40)]
        barrier = threading.Barrier(8)

        def release(message_id):
            if ids.index(message_id) < 8:
                barrier.wait()
            return store.transition(message_id, LifecycleEvent.RELEASE, 9)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(release, ids))

        assert all(error is None for _, error in results)
        pairs = {(m.swift_header.session_number, m.swift_header.sequence_number) for m, _ in results}
        assert len(pairs) == 40

    def test_concurrent_duplicate_release_only_one_wins(self, store, machine):
        message_id = store.save(_approved(machine, "REFDUP")).id

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(
                lambda _: store.transition(message_id, LifecycleEvent.RELEASE, 9), range(4)))

        errors = [e for _, e in results if e is not None]
        assert len(errors) == 3
        assert all(e.code == INVALID_TRANSITION for e in errors)
        assert [a.event for a in store.get(message_id).audit_log].count("RELEASED") == 1


class TestIncomingStore:

    def test_queries(self, fixed_clock):
        service = IncomingMessageService(clock=fixed_clock)
        store = IncomingStore()
        good = store.save(service.ingest(
            "{2:I199BOMGBRS1XXXXN}{3:{121:EB6305C9-1F7F-49DE-AED0-16487C27B42D}}{4:\n:20:R\n:79:X\n-}"))
        bad = store.save(service.ingest("garbage"))
        assert store.by_status(IncomingStatus.PARSE_ERROR) == [bad]
        assert store.by_checksum(good.checksum_sha256) == [good]
        assert store.by_uetr("eb6305c9-1f7f-49de-aed0-16487c27b42d") == [good]
        store.apply(bad.id, service.archive)
        assert bad.status is IncomingStatus.ARCHIVED
