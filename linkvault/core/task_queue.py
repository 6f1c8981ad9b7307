"""Durable background task queue.

Provides:
- Task, TaskStatus and TaskType for job state
- Typed payload/result variants per task type
- TaskStore: idempotent create, atomic claim, retry with persisted backoff,
  claim leases with a sweep for stale work
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from linkvault.core.errors import ValidationError
from linkvault.core.models import parse_ts, to_iso, utcnow

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100
DEFAULT_PRIORITY = 5
DEFAULT_MAX_RETRIES = 3


class TaskStatus(str, Enum):
    """Status of a background task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.PROCESSING)


class TaskType(str, Enum):
    LINK_METADATA = "link_metadata"
    LINK_EMBEDDINGS = "link_embeddings"
    NOTE_EMBEDDINGS = "note_embeddings"
    REFRESH_LINK_CONTENT = "refresh_link_content"
    REFRESH_NOTE_CONTENT = "refresh_note_content"

    @property
    def entity_type(self) -> str:
        return "link" if self.value.startswith(("link_", "refresh_link")) else "note"


ENTITY_TYPES = ("link", "note")


# ==================== Payloads & Results ====================


@dataclass
class LinkContentPayload:
    """Payload of link_metadata and refresh_link_content.

    ``url`` overrides the stored link URL for this run only.
    """

    url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LinkContentPayload:
        url = data.get("url")
        if url is not None and not isinstance(url, str):
            raise ValidationError("payload.url must be a string")
        return cls(url=url or None)


@dataclass
class EmbeddingPayload:
    """Payload of the embedding task types."""

    chunk_size: int = 500
    chunk_overlap: int = 50

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmbeddingPayload:
        try:
            payload = cls(
                chunk_size=int(data.get("chunk_size", cls.chunk_size)),
                chunk_overlap=int(data.get("chunk_overlap", cls.chunk_overlap)),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid embedding payload: {e}") from e
        if not 50 <= payload.chunk_size <= 8000:
            raise ValidationError("payload.chunk_size must be between 50 and 8000")
        if not 0 <= payload.chunk_overlap < payload.chunk_size:
            raise ValidationError("payload.chunk_overlap must be >= 0 and smaller than chunk_size")
        return payload


TaskPayload = LinkContentPayload | EmbeddingPayload


def parse_payload(task_type: TaskType, data: dict[str, Any] | None) -> TaskPayload:
    """Decode the stored payload into the variant for ``task_type``."""
    data = data or {}
    if not isinstance(data, dict):
        raise ValidationError("payload must be an object")
    if task_type in (TaskType.LINK_METADATA, TaskType.REFRESH_LINK_CONTENT):
        return LinkContentPayload.from_dict(data)
    return EmbeddingPayload.from_dict(data)


@dataclass
class MetadataResult:
    success: bool
    has_title: bool
    has_description: bool
    content_type: str | None = None
    word_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EmbeddingResultSummary:
    success: bool
    chunks_count: int
    embedding_dimensions: int
    provider: str
    model: str
    chunks_saved: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ==================== Task ====================


@dataclass
class Task:
    """One unit of background work on a link or note."""

    id: str
    owner_id: str
    task_type: TaskType
    entity_type: str
    entity_id: str
    status: TaskStatus = TaskStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    payload: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    not_before: datetime | None = None
    lease_expires_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def typed_payload(self) -> TaskPayload:
        return parse_payload(self.task_type, self.payload)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "task_type": self.task_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status.value,
            "priority": self.priority,
            "payload": self.payload,
            "result": self.result,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "not_before": to_iso(self.not_before),
            "lease_expires_at": to_iso(self.lease_expires_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Task:
        """Create Task from database row."""
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            task_type=TaskType(row["task_type"]),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            status=TaskStatus(row["status"]),
            priority=row["priority"],
            payload=json.loads(row["payload"] or "{}"),
            result=json.loads(row["result"]) if row["result"] else None,
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            not_before=parse_ts(row["not_before"]),
            lease_expires_at=parse_ts(row["lease_expires_at"]),
            started_at=parse_ts(row["started_at"]),
            completed_at=parse_ts(row["completed_at"]),
            created_at=parse_ts(row["created_at"]) or utcnow(),
            updated_at=parse_ts(row["updated_at"]) or utcnow(),
        )


def clamp_priority(priority: int) -> int:
    return max(1, min(10, int(priority)))


def _first(rows: list[sqlite3.Row]) -> sqlite3.Row | None:
    # RETURNING statements are drained before commit
    return rows[0] if rows else None


class TaskStore:
    """Store for background tasks, persisted in SQLite. Thread-safe.

    Every state transition is a single guarded UPDATE, so separate
    connections (or processes) sharing one database file never hand the
    same task to two workers.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        lease_seconds: int = 300,
        retry_delay_cap: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
        lock: threading.RLock | None = None,
    ) -> None:
        self._conn = conn
        # Pass the owning repository's lock when the connection is shared
        self._lock = lock if lock is not None else threading.RLock()
        self.lease_seconds = lease_seconds
        self.retry_delay_cap = retry_delay_cap
        self._now = clock

    def _begin(self) -> None:
        # Take the write lock up front; concurrent writers wait on busy_timeout
        self._conn.execute("BEGIN IMMEDIATE")

    def retry_delay(self, retry_count: int) -> float:
        """Seconds to wait before the attempt after ``retry_count`` failures."""
        return float(min(2**retry_count, self.retry_delay_cap))

    def create(
        self,
        owner_id: str,
        task_type: TaskType | str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> tuple[Task, bool]:
        """Create a pending task unless an equivalent one is still active.

        Returns:
            (task, created). ``created`` is False when an existing pending or
            processing task for the same owner, entity and task type was
            returned instead.

        Raises:
            ValidationError: on unknown task/entity types or a bad payload.
        """
        if not owner_id or not entity_id:
            raise ValidationError("owner_id and entity_id are required")
        try:
            task_type = TaskType(task_type)
        except ValueError as e:
            raise ValidationError(f"Unknown task type: {task_type}") from e
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(f"Unknown entity type: {entity_type}")
        if task_type.entity_type != entity_type:
            raise ValidationError(f"Task type {task_type.value} does not apply to a {entity_type}")
        parse_payload(task_type, payload)
        if int(max_retries) < 0:
            raise ValidationError("max_retries must be >= 0")

        now = self._now()
        task = Task(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            task_type=task_type,
            entity_type=entity_type,
            entity_id=entity_id,
            priority=clamp_priority(priority),
            payload=dict(payload or {}),
            max_retries=int(max_retries),
            created_at=now,
            updated_at=now,
        )

        with self._lock:
            self._begin()
            try:
                row = self._conn.execute(
                    """
                    SELECT * FROM background_tasks
                    WHERE owner_id = ? AND entity_type = ? AND entity_id = ? AND task_type = ?
                      AND status IN ('pending', 'processing')
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (owner_id, entity_type, entity_id, task_type.value),
                ).fetchone()
                if row is not None:
                    self._conn.commit()
                    existing = Task.from_row(row)
                    logger.debug(f"Task {existing.id} already active for {entity_type} {entity_id}")
                    return existing, False

                self._conn.execute(
                    """
                    INSERT INTO background_tasks (
                        id, owner_id, task_type, entity_type, entity_id, status, priority,
                        payload, retry_count, max_retries, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        task.id,
                        owner_id,
                        task_type.value,
                        entity_type,
                        entity_id,
                        TaskStatus.PENDING.value,
                        task.priority,
                        json.dumps(task.payload),
                        task.max_retries,
                        to_iso(now),
                        to_iso(now),
                    ),
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        logger.info(f"Created task {task.id} ({task_type.value} for {entity_type} {entity_id})")
        return task, True

    def get(self, task_id: str) -> Task | None:
        """Get task by ID, or None if not found."""
        with self._lock:
            row = self._conn.execute("SELECT * FROM background_tasks WHERE id = ?", (task_id,)).fetchone()
        return Task.from_row(row) if row else None

    def _claim(self, where: str, params: tuple) -> Task | None:
        now = self._now()
        lease = now + timedelta(seconds=self.lease_seconds)
        with self._lock:
            self._begin()
            try:
                row = _first(self._conn.execute(
                    f"""
                    UPDATE background_tasks
                    SET status = 'processing', started_at = ?, lease_expires_at = ?, updated_at = ?
                    WHERE id = (
                        SELECT id FROM background_tasks
                        WHERE status = 'pending'
                          AND (not_before IS NULL OR not_before <= ?)
                          AND {where}
                        ORDER BY priority DESC, created_at ASC, rowid ASC
                        LIMIT 1
                    ) AND status = 'pending'
                    RETURNING *
                    """,
                    (to_iso(now), to_iso(lease), to_iso(now), to_iso(now), *params),
                ).fetchall())
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        if row is None:
            return None
        task = Task.from_row(row)
        logger.info(f"Claimed task {task.id} ({task.task_type.value}, attempt {task.retry_count + 1})")
        return task

    def claim_next(self, owner_id: str | None = None) -> Task | None:
        """Atomically claim the highest-priority, oldest eligible pending task.

        Tasks whose ``not_before`` lies in the future are skipped.
        """
        if owner_id:
            return self._claim("owner_id = ?", (owner_id,))
        return self._claim("1 = 1", ())

    def claim(self, task_id: str) -> Task | None:
        """Atomically claim one specific task if it is still pending and eligible."""
        return self._claim("id = ?", (task_id,))

    def complete(self, task_id: str, result: dict[str, Any] | None = None) -> Task | None:
        """Mark a processing task completed. Returns None if it was not processing."""
        now = self._now()
        with self._lock:
            row = _first(self._conn.execute(
                """
                UPDATE background_tasks
                SET status = 'completed', result = ?, completed_at = ?, lease_expires_at = NULL,
                    error_message = NULL, updated_at = ?
                WHERE id = ? AND status = 'processing'
                RETURNING *
                """,
                (json.dumps(result or {}), to_iso(now), to_iso(now), task_id),
            ).fetchall())
            self._conn.commit()

        if row is None:
            logger.warning(f"Cannot complete task {task_id}: not processing")
            return None
        logger.info(f"Completed task {task_id}")
        return Task.from_row(row)

    def _fail_locked(self, row: sqlite3.Row, error_message: str, should_retry: bool) -> Task:
        """Apply the failure transition to a processing row. Must be called within lock and transaction."""
        task = Task.from_row(row)
        now = self._now()

        if should_retry and task.can_retry:
            retry_count = task.retry_count + 1
            not_before = now + timedelta(seconds=self.retry_delay(retry_count))
            updated = _first(self._conn.execute(
                """
                UPDATE background_tasks
                SET status = 'pending', retry_count = ?, error_message = ?, started_at = NULL,
                    lease_expires_at = NULL, not_before = ?, updated_at = ?
                WHERE id = ?
                RETURNING *
                """,
                (retry_count, error_message, to_iso(not_before), to_iso(now), task.id),
            ).fetchall())
            logger.warning(
                f"Task {task.id} failed (attempt {retry_count}/{task.max_retries}), "
                f"retrying after {to_iso(not_before)}: {error_message}"
            )
        else:
            updated = _first(self._conn.execute(
                """
                UPDATE background_tasks
                SET status = 'failed', error_message = ?, completed_at = ?, lease_expires_at = NULL,
                    updated_at = ?
                WHERE id = ?
                RETURNING *
                """,
                (error_message, to_iso(now), to_iso(now), task.id),
            ).fetchall())
            logger.error(f"Task {task.id} failed permanently: {error_message}")
        return Task.from_row(updated)

    def fail(self, task_id: str, error_message: str, should_retry: bool = True) -> Task | None:
        """Record a failed attempt.

        Goes back to pending with ``retry_count + 1`` and a ``not_before``
        backoff when ``should_retry`` and retries remain; otherwise terminal
        ``failed``. Returns None if the task was not processing.
        """
        with self._lock:
            self._begin()
            try:
                row = self._conn.execute(
                    "SELECT * FROM background_tasks WHERE id = ? AND status = 'processing'",
                    (task_id,),
                ).fetchone()
                task = self._fail_locked(row, error_message, should_retry) if row else None
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        if task is None:
            logger.warning(f"Cannot fail task {task_id}: not processing")
        return task

    def cancel(self, task_id: str) -> Task | None:
        """Cancel a pending task. Returns None if it is not pending."""
        now = self._now()
        with self._lock:
            row = _first(self._conn.execute(
                """
                UPDATE background_tasks
                SET status = 'cancelled', completed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                RETURNING *
                """,
                (to_iso(now), to_iso(now), task_id),
            ).fetchall())
            self._conn.commit()

        if row is None:
            return None
        logger.info(f"Cancelled task {task_id}")
        return Task.from_row(row)

    def release_expired_leases(self) -> int:
        """Return processing tasks with an expired lease to the queue.

        Each release counts as a failed attempt, so a task that keeps
        crashing its worker ends up ``failed`` after ``max_retries``.
        """
        now = to_iso(self._now())
        released = 0
        with self._lock:
            self._begin()
            try:
                rows = self._conn.execute(
                    """
                    SELECT * FROM background_tasks
                    WHERE status = 'processing' AND lease_expires_at IS NOT NULL AND lease_expires_at < ?
                    """,
                    (now,),
                ).fetchall()
                for row in rows:
                    self._fail_locked(row, "Lease expired while processing", should_retry=True)
                    released += 1
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        if released:
            logger.warning(f"Released {released} task(s) with expired leases")
        return released

    def list_tasks(
        self,
        owner_id: str,
        task_id: str | None = None,
        entity_id: str | None = None,
        entity_type: str | None = None,
        statuses: list[str] | None = None,
        limit: int = MAX_LIST_LIMIT,
    ) -> list[Task]:
        """List an owner's tasks, newest first, at most 100."""
        query = "SELECT * FROM background_tasks WHERE owner_id = ?"
        params: list[Any] = [owner_id]

        if task_id:
            query += " AND id = ?"
            params.append(task_id)
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)

        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(max(1, min(limit, MAX_LIST_LIMIT)))

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [Task.from_row(row) for row in rows]


# Global store instance
_store: TaskStore | None = None


def init_task_store(
    conn: sqlite3.Connection,
    lease_seconds: int = 300,
    retry_delay_cap: float = 60.0,
    lock: threading.RLock | None = None,
) -> TaskStore:
    """Initialize the global TaskStore with DB connection and its lock."""
    global _store
    _store = TaskStore(conn, lease_seconds=lease_seconds, retry_delay_cap=retry_delay_cap, lock=lock)
    return _store


def get_task_store() -> TaskStore:
    """Get the global TaskStore. Must call init_task_store first."""
    if _store is None:
        raise RuntimeError("TaskStore not initialized. Call init_task_store first.")
    return _store
