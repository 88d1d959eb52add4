"""
Data access for user-scoped memories and their embeddings.

All blocking SQLite work runs in a worker thread so the event loop keeps
serving other requests while a query is in flight.
"""

import asyncio
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import numpy as np

from .db import get_db, init_db, health_check as db_health_check
from .errors import StorageFailure
from .schema import Memory, MemoryEmbedding
from ..util.logging import logger

MAX_CREATE_ATTEMPTS = 3

_MEMORY_COLUMNS = "m.id, m.user_id, m.title, m.content, m.content_type, m.metadata, m.created_at, m.updated_at"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_memory(row) -> Memory:
    memory_id, user_id, title, content, content_type, metadata, created_at, updated_at = row
    return Memory(
        id=memory_id,
        user_id=user_id,
        title=title,
        content=content,
        content_type=content_type,
        metadata=json.loads(metadata) if metadata else {},
        created_at=datetime.fromisoformat(created_at),
        updated_at=datetime.fromisoformat(updated_at),
    )


def _vector_blob(vector) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _is_id_collision(error: sqlite3.IntegrityError) -> bool:
    return "memories.id" in str(error)


class MemoryStore:
    """SQLite-backed store for memories and their vectors, scoped per user."""

    def __init__(self, db_path: str = None, id_factory: Callable[[], str] = None,
                 max_create_attempts: int = MAX_CREATE_ATTEMPTS):
        self.db_path = db_path
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self.max_create_attempts = max_create_attempts
        init_db(db_path)

    async def create(self, memory: Memory, embedding: MemoryEmbedding = None) -> Memory:
        """Insert a memory (and optionally its embedding) under a fresh id.

        A primary-key collision regenerates the id and retries, up to
        ``max_create_attempts`` attempts in total.
        """
        return await asyncio.to_thread(self._create, memory, embedding)

    def _create(self, memory: Memory, embedding: Optional[MemoryEmbedding]) -> Memory:
        last_error = None
        for attempt in range(1, self.max_create_attempts + 1):
            memory_id = self.id_factory()
            now = _utcnow()
            try:
                with get_db(self.db_path) as conn:
                    cursor = conn.cursor()
                    cursor.execute(
                        "INSERT INTO memories (id, user_id, title, content, content_type, metadata, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (memory_id, memory.user_id, memory.title, memory.content, memory.content_type,
                         json.dumps(memory.metadata or {}), now.isoformat(), now.isoformat())
                    )
                    if embedding is not None:
                        cursor.execute(
                            "INSERT INTO memory_embeddings (memory_id, embedding, dimension, model_name, created_at) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (memory_id, _vector_blob(embedding.vector), embedding.dimension,
                             embedding.model_name, now.isoformat())
                        )
                    conn.commit()
            except sqlite3.IntegrityError as e:
                if not _is_id_collision(e):
                    raise StorageFailure(f"Failed to create memory for user '{memory.user_id}': {e}") from e
                last_error = e
                logger.warning(f"Memory id collision on attempt {attempt}/{self.max_create_attempts}, regenerating id")
                continue
            except sqlite3.Error as e:
                raise StorageFailure(f"Failed to create memory for user '{memory.user_id}': {e}") from e

            memory.id = memory_id
            memory.created_at = now
            memory.updated_at = now
            if embedding is not None:
                embedding.memory_id = memory_id
                embedding.created_at = now
            logger.log_memory_operation("create", memory_id, memory.user_id, details={
                "embedded": embedding is not None,
                "attempts": attempt
            })
            return memory

        raise StorageFailure(
            f"Failed to create memory after {self.max_create_attempts} attempts: {last_error}"
        )

    async def get(self, memory_id: str, user_id: str) -> Optional[Memory]:
        return await asyncio.to_thread(self._get, memory_id, user_id)

    def _get(self, memory_id: str, user_id: str) -> Optional[Memory]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT {_MEMORY_COLUMNS} FROM memories m WHERE m.id = ? AND m.user_id = ?",
                    (memory_id, user_id)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to read memory '{memory_id}': {e}") from e
        return _row_to_memory(row) if row else None

    async def list_by_user(self, user_id: str, page: int = 1, page_size: int = 20) -> List[Memory]:
        """List a user's memories, newest first."""
        return await asyncio.to_thread(self._list_by_user, user_id, page, page_size)

    def _list_by_user(self, user_id: str, page: int, page_size: int) -> List[Memory]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT {_MEMORY_COLUMNS} FROM memories m WHERE m.user_id = ? "
                    "ORDER BY m.created_at DESC, m.rowid DESC LIMIT ? OFFSET ?",
                    (user_id, page_size, (page - 1) * page_size)
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to list memories for user '{user_id}': {e}") from e
        return [_row_to_memory(row) for row in rows]

    async def count_by_user(self, user_id: str) -> int:
        return await asyncio.to_thread(self._count_by_user, user_id)

    def _count_by_user(self, user_id: str) -> int:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) FROM memories WHERE user_id = ?", (user_id,))
                return cursor.fetchone()[0]
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to count memories for user '{user_id}': {e}") from e

    async def update(self, memory: Memory, embedding: MemoryEmbedding = None,
                     clear_embedding: bool = False) -> Memory:
        """Persist changed fields.

        A given embedding replaces the stored one; ``clear_embedding`` drops the
        stored one so it is rebuilt later.
        """
        return await asyncio.to_thread(self._update, memory, embedding, clear_embedding)

    def _update(self, memory: Memory, embedding: Optional[MemoryEmbedding], clear_embedding: bool) -> Memory:
        now = _utcnow()
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "UPDATE memories SET title = ?, content = ?, content_type = ?, metadata = ?, updated_at = ? "
                    "WHERE id = ? AND user_id = ?",
                    (memory.title, memory.content, memory.content_type, json.dumps(memory.metadata or {}),
                     now.isoformat(), memory.id, memory.user_id)
                )
                if embedding is not None:
                    self._write_embedding(cursor, memory.id, embedding, now)
                elif clear_embedding:
                    cursor.execute("DELETE FROM memory_embeddings WHERE memory_id = ?", (memory.id,))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to update memory '{memory.id}': {e}") from e

        memory.updated_at = now
        logger.log_memory_operation("update", memory.id, memory.user_id, details={"embedded": embedding is not None})
        return memory

    async def set_embedding(self, memory_id: str, embedding: MemoryEmbedding) -> None:
        """Attach (or replace) the embedding of an existing memory."""
        await asyncio.to_thread(self._set_embedding, memory_id, embedding)

    def _set_embedding(self, memory_id: str, embedding: MemoryEmbedding) -> None:
        try:
            with get_db(self.db_path) as conn:
                self._write_embedding(conn.cursor(), memory_id, embedding, _utcnow())
                conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to store embedding for memory '{memory_id}': {e}") from e

    @staticmethod
    def _write_embedding(cursor, memory_id: str, embedding: MemoryEmbedding, now: datetime) -> None:
        cursor.execute(
            "INSERT OR REPLACE INTO memory_embeddings (memory_id, embedding, dimension, model_name, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (memory_id, _vector_blob(embedding.vector), embedding.dimension, embedding.model_name, now.isoformat())
        )
        embedding.memory_id = memory_id
        embedding.created_at = now

    async def delete(self, memory_id: str, user_id: str) -> bool:
        return await asyncio.to_thread(self._delete, memory_id, user_id)

    def _delete(self, memory_id: str, user_id: str) -> bool:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("DELETE FROM memories WHERE id = ? AND user_id = ?", (memory_id, user_id))
                conn.commit()
                deleted = cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to delete memory '{memory_id}': {e}") from e

        if deleted:
            logger.log_memory_operation("delete", memory_id, user_id)
        return deleted

    async def fetch_embeddings(self, user_id: str, dimension: int) -> List[Tuple[Memory, np.ndarray]]:
        """Return every (memory, vector) pair owned by ``user_id`` with the given dimension."""
        return await asyncio.to_thread(self._fetch_embeddings, user_id, dimension)

    def _fetch_embeddings(self, user_id: str, dimension: int) -> List[Tuple[Memory, np.ndarray]]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT {_MEMORY_COLUMNS}, e.embedding FROM memories m "
                    "JOIN memory_embeddings e ON e.memory_id = m.id "
                    "WHERE m.user_id = ? AND e.dimension = ?",
                    (user_id, dimension)
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to load embeddings for user '{user_id}': {e}") from e

        return [(_row_to_memory(row[:-1]), np.frombuffer(row[-1], dtype=np.float32)) for row in rows]

    async def list_unembedded(self, user_id: str, limit: int = 50) -> List[Memory]:
        """Memories of ``user_id`` that have no stored embedding yet, oldest first."""
        return await asyncio.to_thread(self._list_unembedded, user_id, limit)

    def _list_unembedded(self, user_id: str, limit: int) -> List[Memory]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT {_MEMORY_COLUMNS} FROM memories m "
                    "LEFT JOIN memory_embeddings e ON e.memory_id = m.id "
                    "WHERE m.user_id = ? AND e.memory_id IS NULL "
                    "ORDER BY m.created_at ASC, m.rowid ASC LIMIT ?",
                    (user_id, limit)
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageFailure(f"Failed to list unembedded memories for user '{user_id}': {e}") from e
        return [_row_to_memory(row) for row in rows]

    def health_check(self) -> bool:
        return db_health_check(self.db_path)
