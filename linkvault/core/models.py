"""Stored documents (links, notes) and their organizing entities."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from linkvault.core.embeddings import deserialize_f32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Fixed-width ISO format so stored timestamps sort as strings."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Folder:
    id: str
    owner_id: str
    name: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Folder:
        return cls(id=row["id"], owner_id=row["owner_id"], name=row["name"])


@dataclass
class Tag:
    id: str
    owner_id: str
    name: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Tag:
        return cls(id=row["id"], owner_id=row["owner_id"], name=row["name"])


@dataclass
class StoredChunk:
    """A persisted chunk of a link or note."""

    id: int
    parent_type: str
    parent_id: str
    index: int
    text: str
    start_char: int | None = None
    end_char: int | None = None
    embedding: list[float] | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> StoredChunk:
        return cls(
            id=row["id"],
            parent_type=row["parent_type"],
            parent_id=row["parent_id"],
            index=row["chunk_index"],
            text=row["chunk_text"],
            start_char=row["char_start"],
            end_char=row["char_end"],
            embedding=deserialize_f32(row["embedding"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_index": self.index,
            "chunk_text": self.text,
            "char_start": self.start_char,
            "char_end": self.end_char,
        }


@dataclass
class Link:
    """A saved bookmark."""

    id: str
    owner_id: str
    url: str
    name: str = ""
    description: str = ""
    folder_id: str | None = None
    tag_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    full_content: str | None = None
    content_type: str | None = None
    author: str | None = None
    published_date: str | None = None
    word_count: int | None = None
    embedding: list[float] | None = None
    embedding_provider: str | None = None
    embedding_model: str | None = None
    chunks: list[StoredChunk] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None

    entity_type = "link"

    @property
    def title(self) -> str:
        return self.name or self.metadata.get("title") or ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Link:
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            url=row["url"],
            name=row["name"] or "",
            description=row["description"] or "",
            folder_id=row["folder_id"],
            tag_ids=json.loads(row["tag_ids"] or "[]"),
            metadata=json.loads(row["metadata"] or "{}"),
            full_content=row["full_content"],
            content_type=row["content_type"],
            author=row["author"],
            published_date=row["published_date"],
            word_count=row["word_count"],
            embedding=deserialize_f32(row["embedding"]),
            embedding_provider=row["embedding_provider"],
            embedding_model=row["embedding_model"],
            created_at=parse_ts(row["created_at"]) or utcnow(),
            updated_at=parse_ts(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "url": self.url,
            "name": self.name,
            "description": self.description,
            "folder_id": self.folder_id,
            "tag_ids": self.tag_ids,
            "metadata": self.metadata,
            "content_type": self.content_type,
            "author": self.author,
            "published_date": self.published_date,
            "word_count": self.word_count,
            "embedding_provider": self.embedding_provider,
            "embedding_model": self.embedding_model,
            "has_embedding": self.embedding is not None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Note:
    """A free-text note."""

    id: str
    owner_id: str
    title: str = ""
    content: str = ""
    folder_id: str | None = None
    tag_ids: list[str] = field(default_factory=list)
    word_count: int | None = None
    embedding: list[float] | None = None
    embedding_provider: str | None = None
    embedding_model: str | None = None
    chunks: list[StoredChunk] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None

    entity_type = "note"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Note:
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"] or "",
            content=row["content"] or "",
            folder_id=row["folder_id"],
            tag_ids=json.loads(row["tag_ids"] or "[]"),
            word_count=row["word_count"],
            embedding=deserialize_f32(row["embedding"]),
            embedding_provider=row["embedding_provider"],
            embedding_model=row["embedding_model"],
            created_at=parse_ts(row["created_at"]) or utcnow(),
            updated_at=parse_ts(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "content": self.content,
            "folder_id": self.folder_id,
            "tag_ids": self.tag_ids,
            "word_count": self.word_count,
            "embedding_provider": self.embedding_provider,
            "embedding_model": self.embedding_model,
            "has_embedding": self.embedding is not None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
