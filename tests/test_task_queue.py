"""Tests for the background task queue."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from linkvault.core.errors import ValidationError
from linkvault.core.storage import DB, connect
from linkvault.core.task_queue import (
    EmbeddingPayload,
    LinkContentPayload,
    TaskStatus,
    TaskStore,
    TaskType,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    db = DB(conn=connect(":memory:"))
    db.init()
    return TaskStore(db.conn, lease_seconds=60, retry_delay_cap=60, clock=clock)


def create(store, entity_id="n1", task_type=TaskType.NOTE_EMBEDDINGS, owner="u1", **kwargs):
    entity_type = TaskType(task_type).entity_type
    return store.create(owner, task_type, entity_type, entity_id, **kwargs)


class TestCreate:
    def test_create_pending_task(self, store):
        task, created = create(store)

        assert created is True
        assert task.status == TaskStatus.PENDING
        assert task.priority == 5
        assert task.retry_count == 0
        assert task.max_retries == 3
        assert store.get(task.id).entity_id == "n1"

    def test_duplicate_active_task_is_returned(self, store):
        first, _ = create(store)
        second, created = create(store)

        assert created is False
        assert second.id == first.id
        assert len(store.list_tasks("u1")) == 1

    def test_duplicate_while_processing(self, store):
        first, _ = create(store)
        store.claim(first.id)

        second, created = create(store)
        assert created is False
        assert second.id == first.id
        assert second.status == TaskStatus.PROCESSING

    def test_new_task_after_completion(self, store):
        first, _ = create(store)
        store.claim(first.id)
        store.complete(first.id, {"success": True})

        second, created = create(store)
        assert created is True
        assert second.id != first.id

    def test_other_task_type_is_not_duplicate(self, store):
        create(store, entity_id="l1", task_type=TaskType.LINK_METADATA)
        _, created = create(store, entity_id="l1", task_type=TaskType.LINK_EMBEDDINGS)
        assert created is True

    def test_other_owner_is_not_duplicate(self, store):
        create(store, owner="u1")
        _, created = create(store, owner="u2")
        assert created is True

    def test_priority_is_clamped(self, store):
        high, _ = create(store, entity_id="a", priority=42)
        low, _ = create(store, entity_id="b", priority=-3)
        assert high.priority == 10
        assert low.priority == 1

    def test_unknown_task_type(self, store):
        with pytest.raises(ValidationError):
            store.create("u1", "summarize", "note", "n1")

    def test_task_type_must_match_entity(self, store):
        with pytest.raises(ValidationError):
            store.create("u1", TaskType.NOTE_EMBEDDINGS, "link", "l1")

    def test_unknown_entity_type(self, store):
        with pytest.raises(ValidationError):
            store.create("u1", TaskType.NOTE_EMBEDDINGS, "folder", "f1")

    def test_invalid_payload(self, store):
        with pytest.raises(ValidationError):
            create(store, payload={"chunk_size": 10})
        with pytest.raises(ValidationError):
            create(store, payload={"chunk_size": 100, "chunk_overlap": 100})

    def test_typed_payload(self, store):
        note_task, _ = create(store, payload={"chunk_size": 800})
        link_task, _ = create(
            store, entity_id="l1", task_type=TaskType.LINK_METADATA, payload={"url": "https://example.com"}
        )

        assert note_task.typed_payload() == EmbeddingPayload(chunk_size=800, chunk_overlap=50)
        assert link_task.typed_payload() == LinkContentPayload(url="https://example.com")


class TestClaim:
    def test_claim_sets_lease(self, store, clock):
        task, _ = create(store)
        claimed = store.claim_next()

        assert claimed.id == task.id
        assert claimed.status == TaskStatus.PROCESSING
        assert claimed.started_at == clock.now
        assert claimed.lease_expires_at == clock.now + timedelta(seconds=60)

    def test_empty_queue(self, store):
        assert store.claim_next() is None

    def test_priority_then_fifo(self, store, clock):
        low, _ = create(store, entity_id="low", priority=1)
        first_mid, _ = create(store, entity_id="mid-1", priority=5)
        clock.advance(1)
        second_mid, _ = create(store, entity_id="mid-2", priority=5)
        high, _ = create(store, entity_id="high", priority=9)

        order = [store.claim_next().id for _ in range(4)]
        assert order == [high.id, first_mid.id, second_mid.id, low.id]

    def test_same_timestamp_keeps_insertion_order(self, store):
        ids = [create(store, entity_id=f"n{i}")[0].id for i in range(3)]
        assert [store.claim_next().id for _ in range(3)] == ids

    def test_claim_next_scoped_to_owner(self, store):
        create(store, owner="u1")
        theirs, _ = create(store, owner="u2")
        assert store.claim_next(owner_id="u2").id == theirs.id
        assert store.claim_next(owner_id="u2") is None

    def test_task_is_claimed_once(self, store):
        task, _ = create(store)
        assert store.claim(task.id) is not None
        assert store.claim(task.id) is None
        assert store.claim_next() is None


class TestTransitions:
    def test_complete(self, store):
        task, _ = create(store)
        store.claim(task.id)
        done = store.complete(task.id, {"success": True, "chunks_count": 2})

        assert done.status == TaskStatus.COMPLETED
        assert done.result == {"success": True, "chunks_count": 2}
        assert done.completed_at is not None
        assert done.lease_expires_at is None

    def test_complete_requires_processing(self, store):
        task, _ = create(store)
        assert store.complete(task.id, {}) is None
        assert store.get(task.id).status == TaskStatus.PENDING

    def test_retry_waits_for_backoff(self, store, clock):
        task, _ = create(store)
        store.claim(task.id)
        failed = store.fail(task.id, "timeout", should_retry=True)

        assert failed.status == TaskStatus.PENDING
        assert failed.retry_count == 1
        assert failed.error_message == "timeout"
        assert failed.not_before == clock.now + timedelta(seconds=2)
        assert store.claim_next() is None

        clock.advance(2)
        assert store.claim_next().id == task.id

    def test_backoff_grows_and_is_capped(self, store):
        assert store.retry_delay(1) == 2
        assert store.retry_delay(2) == 4
        assert store.retry_delay(3) == 8
        assert store.retry_delay(10) == 60

    def test_retry_bound(self, store, clock):
        task, _ = create(store, max_retries=2)
        attempts = 0
        while True:
            claimed = store.claim_next()
            if claimed is None:
                break
            attempts += 1
            store.fail(claimed.id, "boom", should_retry=True)
            clock.advance(120)

        final = store.get(task.id)
        assert attempts == 3
        assert final.status == TaskStatus.FAILED
        assert final.retry_count == 2
        assert final.retry_count <= final.max_retries

    def test_non_retriable_failure(self, store):
        task, _ = create(store)
        store.claim(task.id)
        failed = store.fail(task.id, "Note content too short", should_retry=False)

        assert failed.status == TaskStatus.FAILED
        assert failed.retry_count == 0

    def test_fail_requires_processing(self, store):
        task, _ = create(store)
        assert store.fail(task.id, "nope") is None

    def test_cancel_pending(self, store):
        task, _ = create(store)
        cancelled = store.cancel(task.id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert store.claim_next() is None

    def test_cancel_processing_is_refused(self, store):
        task, _ = create(store)
        store.claim(task.id)
        assert store.cancel(task.id) is None


class TestLeases:
    def test_expired_lease_is_released(self, store, clock):
        task, _ = create(store)
        store.claim(task.id)

        clock.advance(30)
        assert store.release_expired_leases() == 0

        clock.advance(31)
        assert store.release_expired_leases() == 1

        released = store.get(task.id)
        assert released.status == TaskStatus.PENDING
        assert released.retry_count == 1
        assert released.lease_expires_at is None

    def test_release_respects_retry_bound(self, store, clock):
        task, _ = create(store, max_retries=0)
        store.claim(task.id)
        clock.advance(61)
        store.release_expired_leases()
        assert store.get(task.id).status == TaskStatus.FAILED


class TestListTasks:
    def test_newest_first_and_filters(self, store, clock):
        old, _ = create(store, entity_id="n1")
        clock.advance(1)
        new, _ = create(store, entity_id="n2")
        clock.advance(1)
        link_task, _ = create(store, entity_id="l1", task_type=TaskType.LINK_METADATA)
        create(store, owner="someone-else")
        store.cancel(old.id)

        assert [t.id for t in store.list_tasks("u1")] == [link_task.id, new.id, old.id]
        assert [t.id for t in store.list_tasks("u1", entity_type="note")] == [new.id, old.id]
        assert [t.id for t in store.list_tasks("u1", entity_id="n2")] == [new.id]
        assert [t.id for t in store.list_tasks("u1", statuses=["cancelled"])] == [old.id]
        assert [t.id for t in store.list_tasks("u1", task_id=new.id)] == [new.id]

    def test_limit_is_capped(self, store):
        for i in range(105):
            create(store, entity_id=f"n{i}")
        assert len(store.list_tasks("u1", limit=500)) == 100

    def test_to_dict(self, store):
        task, _ = create(store)
        data = task.to_dict()
        assert data["task_type"] == "note_embeddings"
        assert data["status"] == "pending"
        assert data["created_at"].startswith("2024-01-01T12:00:00")


class TestConcurrentClaim:
    def test_two_workers_never_share_a_task(self, tmp_path):
        db_path = str(tmp_path / "queue.db")
        db = DB(conn=connect(db_path))
        db.init()
        first = TaskStore(db.conn)
        second = TaskStore(connect(db_path))

        first.create("u1", TaskType.NOTE_EMBEDDINGS, "note", "n1")

        barrier = threading.Barrier(2)
        claimed = []

        def worker(store):
            barrier.wait()
            claimed.append(store.claim_next())

        threads = [threading.Thread(target=worker, args=(s,)) for s in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [task for task in claimed if task is not None]
        assert len(winners) == 1
        assert winners[0].status == TaskStatus.PROCESSING


class TestSharedConnection:
    def test_store_waits_for_repository_write(self):
        db = DB(conn=connect(":memory:"))
        db.init()
        store = TaskStore(db.conn, lock=db.lock)
        note = db.create_note("u1", "Draft", "Body")
        task, _ = create(store, entity_id=note.id)

        results = []
        with db.lock:
            # An unfinished repository write on the shared connection
            db.conn.execute("DELETE FROM notes WHERE id = ?", (note.id,))
            worker = threading.Thread(target=lambda: results.append(store.cancel(task.id)))
            worker.start()
            worker.join(0.2)
            assert worker.is_alive()
            db.conn.rollback()
        worker.join()

        assert results[0].status == TaskStatus.CANCELLED
        assert db.get_note(note.id) is not None
