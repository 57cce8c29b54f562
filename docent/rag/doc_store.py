"""SQLite storage for documents and chunks.

Tables:
- documents: one row per document key (latest ingested version)
- chunks: text and position of every committed chunk, keyed by chunk id

The vector index only knows chunk ids; text and provenance live here.
"""
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import structlog

from docent import config
from docent.rag.models import Chunk, Document, Section, document_key_for

logger = structlog.get_logger()

# SQLite's default host parameter limit is 999 on older builds
_MAX_PARAMS = 500


def _batches(items: List[str], size: int = _MAX_PARAMS) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class DocumentStore:
    """Owner of document and chunk rows."""

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path) if db_path is not None else config.DB_PATH

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection to the SQLite database.

        Returns:
            sqlite3.Connection with row_factory set to sqlite3.Row
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self.get_connection()
        cursor = conn.cursor()

        try:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    key TEXT PRIMARY KEY,
                    id TEXT NOT NULL,
                    source_path TEXT NOT NULL,
                    format TEXT NOT NULL,
                    content_digest TEXT NOT NULL,
                    sections_json TEXT,
                    ingested_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS chunks (
                    id TEXT PRIMARY KEY,
                    document_key TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    char_start INTEGER NOT NULL,
                    char_end INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    labels_json TEXT,
                    overlap_prev INTEGER NOT NULL DEFAULT 0
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_chunks_document_key
                ON chunks(document_key)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_source_path
                ON documents(source_path)
            """)

            conn.commit()
            logger.info("database_initialized", db_path=str(self.db_path))

        except sqlite3.Error as e:
            conn.rollback()
            logger.error("database_init_failed", error=str(e))
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Documents

    def save_document(self, document: Document) -> None:
        """Insert or replace the row for a document's key."""
        conn = self.get_connection()
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO documents (
                    key, id, source_path, format, content_digest,
                    sections_json, ingested_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document.key,
                    document.id,
                    document.source_path,
                    document.format,
                    document.content_digest,
                    json.dumps([s.to_dict() for s in document.sections]),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("document_save_failed", document_key=document.key, error=str(e))
            raise
        finally:
            conn.close()

    def get_document(self, key: str) -> Optional[Dict]:
        """Get the stored metadata for a document key, or None."""
        conn = self.get_connection()
        try:
            row = conn.execute("SELECT * FROM documents WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return self._document_row(row) if row else None

    def find_by_source(self, source_path: str) -> Optional[Dict]:
        """Get the stored document for a source path, or None."""
        return self.get_document(document_key_for(source_path))

    def list_documents(self) -> List[Dict]:
        """All stored documents with their chunk counts, ordered by path."""
        conn = self.get_connection()
        try:
            rows = conn.execute("""
                SELECT d.*, COUNT(c.id) AS chunk_count
                FROM documents d
                LEFT JOIN chunks c ON c.document_key = d.key
                GROUP BY d.key
                ORDER BY d.source_path
            """).fetchall()
        finally:
            conn.close()

        documents = []
        for row in rows:
            document = self._document_row(row)
            document["chunk_count"] = row["chunk_count"]
            documents.append(document)
        return documents

    def delete_document(self, key: str) -> int:
        """Delete a document row and all its chunk rows.

        Returns:
            Number of chunk rows deleted
        """
        conn = self.get_connection()
        try:
            cursor = conn.execute("DELETE FROM chunks WHERE document_key = ?", (key,))
            deleted = cursor.rowcount
            conn.execute("DELETE FROM documents WHERE key = ?", (key,))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("document_delete_failed", document_key=key, error=str(e))
            raise
        finally:
            conn.close()

        logger.info("document_deleted", document_key=key, chunks_deleted=deleted)
        return deleted

    @staticmethod
    def _document_row(row: sqlite3.Row) -> Dict:
        sections = json.loads(row["sections_json"]) if row["sections_json"] else []
        return {
            "key": row["key"],
            "id": row["id"],
            "source_path": row["source_path"],
            "format": row["format"],
            "content_digest": row["content_digest"],
            "sections": [Section.from_dict(s) for s in sections],
            "ingested_at": row["ingested_at"],
        }

    # ------------------------------------------------------------------
    # Chunks

    def insert_chunks(self, chunks: List[Chunk]) -> int:
        """Insert chunk rows; existing ids are left untouched.

        Returns:
            Number of chunks inserted
        """
        if not chunks:
            return 0

        conn = self.get_connection()
        try:
            cursor = conn.executemany(
                """
                INSERT OR IGNORE INTO chunks (
                    id, document_key, chunk_index, char_start, char_end,
                    content, labels_json, overlap_prev
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        c.id,
                        c.document_key,
                        c.index,
                        c.start,
                        c.end,
                        c.text,
                        json.dumps(list(c.labels)),
                        c.overlap_prev,
                    )
                    for c in chunks
                ],
            )
            conn.commit()
            inserted = cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("chunk_insert_failed", count=len(chunks), error=str(e))
            raise
        finally:
            conn.close()

        logger.debug("chunks_inserted", count=inserted)
        return inserted

    def update_chunk_positions(self, chunks: List[Chunk]) -> None:
        """Refresh ordinal, offsets and labels of surviving chunks after a re-chunk."""
        if not chunks:
            return
        conn = self.get_connection()
        try:
            conn.executemany(
                """
                UPDATE chunks
                SET chunk_index = ?, char_start = ?, char_end = ?,
                    labels_json = ?, overlap_prev = ?
                WHERE id = ?
                """,
                [
                    (c.index, c.start, c.end, json.dumps(list(c.labels)), c.overlap_prev, c.id)
                    for c in chunks
                ],
            )
            conn.commit()
        finally:
            conn.close()

    def get_chunks(self, chunk_ids: Iterable[str]) -> Dict[str, Chunk]:
        """Look up chunks by id. Missing ids are absent from the result."""
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return {}

        found: Dict[str, Chunk] = {}
        conn = self.get_connection()
        try:
            for batch in _batches(ids):
                placeholders = ",".join("?" * len(batch))
                rows = conn.execute(
                    f"SELECT * FROM chunks WHERE id IN ({placeholders})", batch
                ).fetchall()
                for row in rows:
                    found[row["id"]] = self._chunk_row(row)
        finally:
            conn.close()
        return found

    def get_chunks_for_document(self, key: str) -> List[Chunk]:
        """All chunks of a document in reading order."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE document_key = ? ORDER BY chunk_index, char_start",
                (key,),
            ).fetchall()
        finally:
            conn.close()
        return [self._chunk_row(row) for row in rows]

    def delete_chunks(self, chunk_ids: Iterable[str]) -> int:
        """Delete chunk rows by id; unknown ids are ignored."""
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return 0

        deleted = 0
        conn = self.get_connection()
        try:
            for batch in _batches(ids):
                placeholders = ",".join("?" * len(batch))
                cursor = conn.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", batch)
                deleted += cursor.rowcount
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("chunk_delete_failed", count=len(ids), error=str(e))
            raise
        finally:
            conn.close()

        logger.debug("chunks_deleted", count=deleted)
        return deleted

    def count_chunks(self) -> int:
        conn = self.get_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        finally:
            conn.close()

    @staticmethod
    def _chunk_row(row: sqlite3.Row) -> Chunk:
        labels = json.loads(row["labels_json"]) if row["labels_json"] else []
        return Chunk(
            id=row["id"],
            document_key=row["document_key"],
            text=row["content"],
            start=row["char_start"],
            end=row["char_end"],
            index=row["chunk_index"],
            labels=tuple(labels),
            overlap_prev=row["overlap_prev"],
        )
