from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, TypeVar

import sqlite_vec

from linkvault.core.embeddings import serialize_f32
from linkvault.core.models import Folder, Link, Note, StoredChunk, Tag, to_iso, utcnow
from linkvault.core.settings import Settings

if TYPE_CHECKING:
    from linkvault.core.chunking import Chunk

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS folders (
  id TEXT PRIMARY KEY,
  owner_id TEXT NOT NULL,
  name TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tags (
  id TEXT PRIMARY KEY,
  owner_id TEXT NOT NULL,
  name TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS links (
  id TEXT PRIMARY KEY,
  owner_id TEXT NOT NULL,
  url TEXT NOT NULL,
  name TEXT,
  description TEXT,
  folder_id TEXT REFERENCES folders(id) ON DELETE SET NULL,
  tag_ids TEXT NOT NULL DEFAULT '[]',
  metadata TEXT NOT NULL DEFAULT '{}',
  full_content TEXT,
  content_type TEXT,
  author TEXT,
  published_date TEXT,
  word_count INTEGER,
  embedding BLOB,
  embedding_provider TEXT,
  embedding_model TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_links_owner ON links(owner_id, created_at);

CREATE TABLE IF NOT EXISTS notes (
  id TEXT PRIMARY KEY,
  owner_id TEXT NOT NULL,
  title TEXT,
  content TEXT,
  folder_id TEXT REFERENCES folders(id) ON DELETE SET NULL,
  tag_ids TEXT NOT NULL DEFAULT '[]',
  word_count INTEGER,
  embedding BLOB,
  embedding_provider TEXT,
  embedding_model TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_notes_owner ON notes(owner_id, created_at);

CREATE TABLE IF NOT EXISTS chunks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  owner_id TEXT NOT NULL,
  parent_type TEXT NOT NULL CHECK (parent_type IN ('link', 'note')),
  parent_id TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  chunk_text TEXT NOT NULL,
  char_start INTEGER,
  char_end INTEGER,
  embedding BLOB,
  embedding_model TEXT,
  UNIQUE (parent_type, parent_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_chunks_parent ON chunks(parent_type, parent_id);
CREATE INDEX IF NOT EXISTS idx_chunks_owner ON chunks(owner_id);

CREATE TABLE IF NOT EXISTS background_tasks (
  id TEXT PRIMARY KEY,
  owner_id TEXT NOT NULL,
  task_type TEXT NOT NULL,
  entity_type TEXT NOT NULL,
  entity_id TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  priority INTEGER NOT NULL DEFAULT 5 CHECK (priority BETWEEN 1 AND 10),
  payload TEXT NOT NULL DEFAULT '{}',
  result TEXT,
  error_message TEXT,
  retry_count INTEGER NOT NULL DEFAULT 0,
  max_retries INTEGER NOT NULL DEFAULT 3,
  not_before TEXT,
  lease_expires_at TEXT,
  started_at TEXT,
  completed_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_claim ON background_tasks(status, priority DESC, created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_entity
  ON background_tasks(owner_id, entity_type, entity_id, task_type, status);
"""

ENTITY_TABLES = {"link": "links", "note": "notes"}


def connect(db_path: str, busy_timeout: float = 30.0) -> sqlite3.Connection:
    """Open a connection with sqlite-vec loaded."""
    conn = sqlite3.connect(db_path, timeout=busy_timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")

    # sqlite-vec must be loaded into every connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


_F = TypeVar("_F", bound=Callable[..., Any])


def _locked(method: _F) -> _F:
    @wraps(method)
    def wrapper(self: DB, *args: Any, **kwargs: Any) -> Any:
        with self.lock:
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


@dataclass
class DB:
    """Repository over one shared connection.

    ``lock`` guards the connection; anything else issuing statements on
    ``conn`` (the task store) must hold the same lock.
    """

    conn: sqlite3.Connection
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @_locked
    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    @_locked
    def get_stats(self) -> dict[str, Any]:
        stats = {}
        for table in ("links", "notes", "chunks", "background_tasks"):
            stats[table] = self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return stats

    # ==================== Folders & Tags ====================

    @_locked
    def create_folder(self, owner_id: str, name: str) -> Folder:
        folder = Folder(id=str(uuid.uuid4()), owner_id=owner_id, name=name)
        self.conn.execute(
            "INSERT INTO folders (id, owner_id, name, created_at) VALUES (?, ?, ?, ?)",
            (folder.id, owner_id, name, to_iso(utcnow())),
        )
        self.conn.commit()
        return folder

    @_locked
    def create_tag(self, owner_id: str, name: str) -> Tag:
        tag = Tag(id=str(uuid.uuid4()), owner_id=owner_id, name=name)
        self.conn.execute(
            "INSERT INTO tags (id, owner_id, name, created_at) VALUES (?, ?, ?, ?)",
            (tag.id, owner_id, name, to_iso(utcnow())),
        )
        self.conn.commit()
        return tag

    @_locked
    def list_folders(self, owner_id: str) -> list[Folder]:
        cur = self.conn.execute("SELECT * FROM folders WHERE owner_id = ? ORDER BY name", (owner_id,))
        return [Folder.from_row(row) for row in cur.fetchall()]

    @_locked
    def list_tags(self, owner_id: str) -> list[Tag]:
        cur = self.conn.execute("SELECT * FROM tags WHERE owner_id = ? ORDER BY name", (owner_id,))
        return [Tag.from_row(row) for row in cur.fetchall()]

    # ==================== Links & Notes ====================

    @_locked
    def create_link(
        self,
        owner_id: str,
        url: str,
        name: str = "",
        description: str = "",
        folder_id: str | None = None,
        tag_ids: list[str] | None = None,
        created_at: datetime | None = None,
    ) -> Link:
        link = Link(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            url=url,
            name=name,
            description=description,
            folder_id=folder_id,
            tag_ids=list(tag_ids or []),
            created_at=created_at or utcnow(),
        )
        self.conn.execute(
            """
            INSERT INTO links (id, owner_id, url, name, description, folder_id, tag_ids, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                link.id,
                owner_id,
                url,
                name,
                description,
                folder_id,
                json.dumps(link.tag_ids),
                to_iso(link.created_at),
            ),
        )
        self.conn.commit()
        return link

    @_locked
    def create_note(
        self,
        owner_id: str,
        title: str = "",
        content: str = "",
        folder_id: str | None = None,
        tag_ids: list[str] | None = None,
        created_at: datetime | None = None,
    ) -> Note:
        note = Note(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=title,
            content=content,
            folder_id=folder_id,
            tag_ids=list(tag_ids or []),
            created_at=created_at or utcnow(),
        )
        self.conn.execute(
            """
            INSERT INTO notes (id, owner_id, title, content, folder_id, tag_ids, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (note.id, owner_id, title, content, folder_id, json.dumps(note.tag_ids), to_iso(note.created_at)),
        )
        self.conn.commit()
        return note

    @_locked
    def get_link(self, link_id: str, with_chunks: bool = False) -> Link | None:
        row = self.conn.execute("SELECT * FROM links WHERE id = ?", (link_id,)).fetchone()
        if row is None:
            return None
        link = Link.from_row(row)
        if with_chunks:
            link.chunks = self.get_chunks("link", link_id)
        return link

    @_locked
    def get_note(self, note_id: str, with_chunks: bool = False) -> Note | None:
        row = self.conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
        if row is None:
            return None
        note = Note.from_row(row)
        if with_chunks:
            note.chunks = self.get_chunks("note", note_id)
        return note

    @_locked
    def _chunks_by_parent(self, owner_id: str, parent_type: str) -> dict[str, list[StoredChunk]]:
        cur = self.conn.execute(
            """
            SELECT * FROM chunks
            WHERE owner_id = ? AND parent_type = ?
            ORDER BY parent_id, chunk_index
            """,
            (owner_id, parent_type),
        )
        grouped: dict[str, list[StoredChunk]] = {}
        for row in cur.fetchall():
            grouped.setdefault(row["parent_id"], []).append(StoredChunk.from_row(row))
        return grouped

    @_locked
    def list_links(self, owner_id: str, with_chunks: bool = True) -> list[Link]:
        """All links of an owner, newest first."""
        cur = self.conn.execute(
            "SELECT * FROM links WHERE owner_id = ? ORDER BY created_at DESC, id", (owner_id,)
        )
        links = [Link.from_row(row) for row in cur.fetchall()]
        if with_chunks:
            chunks = self._chunks_by_parent(owner_id, "link")
            for link in links:
                link.chunks = chunks.get(link.id, [])
        return links

    @_locked
    def list_notes(self, owner_id: str, with_chunks: bool = True) -> list[Note]:
        """All notes of an owner, newest first."""
        cur = self.conn.execute(
            "SELECT * FROM notes WHERE owner_id = ? ORDER BY created_at DESC, id", (owner_id,)
        )
        notes = [Note.from_row(row) for row in cur.fetchall()]
        if with_chunks:
            chunks = self._chunks_by_parent(owner_id, "note")
            for note in notes:
                note.chunks = chunks.get(note.id, [])
        return notes

    @_locked
    def save_link_metadata(self, link_id: str, metadata: dict[str, Any]) -> None:
        """Replace a link's page metadata."""
        self.conn.execute(
            "UPDATE links SET metadata = ?, updated_at = ? WHERE id = ?",
            (json.dumps(metadata), to_iso(utcnow()), link_id),
        )
        self.conn.commit()

    @_locked
    def save_link_content(
        self,
        link_id: str,
        metadata: dict[str, Any],
        full_content: str,
        content_type: str,
        author: str | None,
        published_date: str | None,
        word_count: int,
    ) -> None:
        """Replace a link's metadata and extracted full content."""
        self.conn.execute(
            """
            UPDATE links SET
                metadata = ?, full_content = ?, content_type = ?, author = ?,
                published_date = ?, word_count = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                json.dumps(metadata),
                full_content,
                content_type,
                author,
                published_date,
                word_count,
                to_iso(utcnow()),
                link_id,
            ),
        )
        self.conn.commit()

    # ==================== Embeddings & Chunks ====================

    @_locked
    def save_embedding(
        self,
        entity_type: str,
        entity_id: str,
        embedding: list[float],
        provider: str,
        model: str,
        word_count: int | None = None,
    ) -> None:
        """Replace the aggregate embedding of a link or note, with provenance."""
        table = ENTITY_TABLES[entity_type]
        self.conn.execute(
            f"""
            UPDATE {table} SET
                embedding = ?, embedding_provider = ?, embedding_model = ?,
                word_count = COALESCE(?, word_count), updated_at = ?
            WHERE id = ?
            """,
            (serialize_f32(embedding), provider, model, word_count, to_iso(utcnow()), entity_id),
        )
        self.conn.commit()

    @_locked
    def replace_chunks(
        self,
        owner_id: str,
        parent_type: str,
        parent_id: str,
        chunks: list[tuple[Chunk, list[float] | None]],
        model: str | None = None,
    ) -> int:
        """Delete all chunks of a parent and insert the new set atomically.

        Args:
            chunks: (chunk, embedding) pairs; chunk indexes must be dense.

        Returns:
            Number of chunks stored.
        """
        with self.conn:
            self.conn.execute(
                "DELETE FROM chunks WHERE parent_type = ? AND parent_id = ?",
                (parent_type, parent_id),
            )
            for chunk, embedding in chunks:
                self.conn.execute(
                    """
                    INSERT INTO chunks (
                        owner_id, parent_type, parent_id, chunk_index, chunk_text,
                        char_start, char_end, embedding, embedding_model
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        owner_id,
                        parent_type,
                        parent_id,
                        chunk.index,
                        chunk.text,
                        chunk.start_char,
                        chunk.end_char,
                        serialize_f32(embedding) if embedding is not None else None,
                        model if embedding is not None else None,
                    ),
                )
        return len(chunks)

    @_locked
    def get_chunks(self, parent_type: str, parent_id: str) -> list[StoredChunk]:
        cur = self.conn.execute(
            "SELECT * FROM chunks WHERE parent_type = ? AND parent_id = ? ORDER BY chunk_index",
            (parent_type, parent_id),
        )
        return [StoredChunk.from_row(row) for row in cur.fetchall()]

    @_locked
    def semantic_search(
        self,
        owner_id: str,
        query_embedding: list[float],
        model: str,
        limit: int = 20,
        threshold: float = 0.5,
    ) -> list[dict[str, Any]]:
        """Rank an owner's links and notes by cosine similarity to a query vector.

        Document-level and chunk-level embeddings are both searched; each
        document appears once, with its best similarity. ``chunkText`` is set
        when a chunk beat the document's own embedding. Only vectors produced
        by ``model`` with the query's dimensionality are compared.

        Returns:
            List of {type, item, similarity, chunkText?}, best first.
        """
        blob = serialize_f32(query_embedding)
        size = len(blob)
        best: dict[tuple[str, str], dict[str, Any]] = {}

        def consider(entity_type: str, entity_id: str, similarity: float, chunk_text: str | None) -> None:
            key = (entity_type, entity_id)
            current = best.get(key)
            if current is None or similarity > current["similarity"]:
                best[key] = {"type": entity_type, "id": entity_id, "similarity": similarity, "chunk_text": chunk_text}

        for entity_type, table in ENTITY_TABLES.items():
            cur = self.conn.execute(
                f"""
                SELECT id, similarity FROM (
                    SELECT id,
                           CASE WHEN length(embedding) = ? THEN 1 - vec_distance_cosine(embedding, ?) END
                               AS similarity
                    FROM {table}
                    WHERE owner_id = ? AND embedding IS NOT NULL
                      AND embedding_model = ? AND length(embedding) = ?
                )
                WHERE similarity >= ?
                """,
                (size, blob, owner_id, model, size, threshold),
            )
            for row in cur.fetchall():
                consider(entity_type, row["id"], row["similarity"], None)

        cur = self.conn.execute(
            """
            SELECT parent_type, parent_id, chunk_text, similarity FROM (
                SELECT parent_type, parent_id, chunk_text,
                       CASE WHEN length(embedding) = ? THEN 1 - vec_distance_cosine(embedding, ?) END
                           AS similarity
                FROM chunks
                WHERE owner_id = ? AND embedding IS NOT NULL
                  AND embedding_model = ? AND length(embedding) = ?
            )
            WHERE similarity >= ?
            """,
            (size, blob, owner_id, model, size, threshold),
        )
        for row in cur.fetchall():
            consider(row["parent_type"], row["parent_id"], row["similarity"], row["chunk_text"])

        ranked = sorted(best.values(), key=lambda hit: hit["similarity"], reverse=True)[:limit]
        results = []
        for hit in ranked:
            item = self.get_link(hit["id"]) if hit["type"] == "link" else self.get_note(hit["id"])
            if item is None:
                continue
            result = {"type": hit["type"], "item": item.to_dict(), "similarity": hit["similarity"]}
            if hit["chunk_text"] is not None:
                result["chunkText"] = hit["chunk_text"]
            results.append(result)
        return results


_db: DB | None = None


def init_db(settings: Settings | None = None) -> DB:
    global _db
    s = settings or Settings.from_env()
    if s.db_path != ":memory:":
        os.makedirs(os.path.dirname(s.db_path) or ".", exist_ok=True)

    conn = connect(s.db_path, s.db_busy_timeout)
    _db = DB(conn=conn)
    _db.init()
    logger.info(f"Database ready at {s.db_path}")
    return _db


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
