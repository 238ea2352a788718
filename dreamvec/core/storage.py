from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import sqlite_vec

from dreamvec.core.content_types import ReferenceFragment, Theme
from dreamvec.core.embedding_providers import deserialize_f32, normalize, serialize_f32
from dreamvec.core.retrieval import cosine_similarity
from dreamvec.core.settings import Settings

logger = logging.getLogger(__name__)

# sqlite-vec rejects k above this value
MAX_KNN = 4096


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO timestamp so that string comparison orders correctly."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- Narratives (dream transcripts) with denormalized embedding status
CREATE TABLE IF NOT EXISTS narratives (
  id TEXT PRIMARY KEY,
  title TEXT,
  text TEXT,
  language TEXT,
  embedding_status TEXT
    CHECK (embedding_status IN ('pending', 'processing', 'completed', 'failed', 'skipped')),
  embedding_error TEXT,
  embedding_attempts INTEGER NOT NULL DEFAULT 0 CHECK (embedding_attempts >= 0),
  embedding_started_at TEXT,
  embedding_processed_at TEXT,
  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_narratives_embedding_status ON narratives(embedding_status);

-- Embedding job queue, one job per narrative
CREATE TABLE IF NOT EXISTS embedding_jobs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  narrative_id TEXT NOT NULL UNIQUE,
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'skipped')),
  priority INTEGER NOT NULL DEFAULT 0,
  attempts INTEGER NOT NULL DEFAULT 0,
  max_attempts INTEGER NOT NULL DEFAULT 3,
  scheduled_at TEXT NOT NULL,
  started_at TEXT,
  completed_at TEXT,
  last_error TEXT,
  created_at TEXT DEFAULT (datetime('now')),
  CHECK (attempts >= 0 AND attempts <= max_attempts),
  CHECK (status != 'processing' OR started_at IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_embedding_jobs_claim
  ON embedding_jobs(status, priority DESC, scheduled_at);

-- Chunk embeddings, keyed by (narrative, chunk, version)
CREATE TABLE IF NOT EXISTS embedding_chunks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  narrative_id TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  embedding_version TEXT NOT NULL,
  chunk_text TEXT NOT NULL,
  token_count INTEGER NOT NULL CHECK (token_count > 0),
  char_start INTEGER,
  char_end INTEGER,
  dimensions INTEGER NOT NULL,
  embedding BLOB NOT NULL,
  processing_time_ms INTEGER,
  created_at TEXT DEFAULT (datetime('now')),
  UNIQUE(narrative_id, chunk_index, embedding_version)
);

CREATE INDEX IF NOT EXISTS idx_embedding_chunks_narrative ON embedding_chunks(narrative_id);

-- Theme catalog
CREATE TABLE IF NOT EXISTS themes (
  code TEXT PRIMARY KEY,
  label TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  category TEXT,
  embedding BLOB,
  dimensions INTEGER,
  sparse TEXT,
  version TEXT,
  updated_at TEXT DEFAULT (datetime('now'))
);

-- Narrative <-> theme associations written by the theme extractor
CREATE TABLE IF NOT EXISTS narrative_theme_links (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  narrative_id TEXT NOT NULL,
  theme_code TEXT NOT NULL REFERENCES themes(code) ON DELETE CASCADE,
  similarity REAL NOT NULL CHECK (similarity >= 0 AND similarity <= 1),
  chunk_index INTEGER,
  extracted_at TEXT NOT NULL,
  UNIQUE(narrative_id, theme_code)
);

CREATE INDEX IF NOT EXISTS idx_theme_links_theme ON narrative_theme_links(theme_code);

-- Reference fragments used for retrieval
CREATE TABLE IF NOT EXISTS reference_fragments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  key TEXT NOT NULL UNIQUE,
  collection TEXT,
  source TEXT,
  chapter TEXT,
  text TEXT NOT NULL,
  embedding BLOB,
  dimensions INTEGER,
  sparse TEXT,
  tags TEXT NOT NULL DEFAULT '[]',
  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_reference_fragments_collection ON reference_fragments(collection, source);

-- FTS for lexical candidates (rowid = reference_fragments.id)
CREATE VIRTUAL TABLE IF NOT EXISTS reference_fragments_fts USING fts5(text);
"""


def _vec_table(prefix: str, dimensions: int) -> str:
    if not isinstance(dimensions, int) or dimensions <= 0:
        raise ValueError(f"Invalid vector dimensions: {dimensions!r}")
    return f"{prefix}_{dimensions}"


def _load_json(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        logger.warning(f"Ignoring malformed JSON column value: {value[:50]!r}")
        return None


def _fragment_from_row(row: sqlite3.Row) -> ReferenceFragment:
    tags = _load_json(row["tags"]) or []
    return ReferenceFragment(
        id=row["id"],
        key=row["key"],
        collection=row["collection"],
        source=row["source"],
        chapter=row["chapter"],
        text=row["text"],
        vector=deserialize_f32(row["embedding"]) if row["embedding"] is not None else None,
        sparse=_load_json(row["sparse"]),
        tags=frozenset(str(t) for t in tags) if isinstance(tags, list) else frozenset(),
    )


def _theme_from_row(row: sqlite3.Row) -> Theme:
    return Theme(
        code=row["code"],
        label=row["label"],
        description=row["description"] or "",
        category=row["category"],
        vector=deserialize_f32(row["embedding"]) if row["embedding"] is not None else None,
        sparse=_load_json(row["sparse"]),
        version=row["version"],
    )


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def _ensure_vec_table(self, prefix: str, dimensions: int) -> str:
        """Create the per-dimension vec0 table on first use."""
        table = _vec_table(prefix, dimensions)
        self.conn.execute(
            f"CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0(embedding float[{dimensions}])"
        )
        return table

    def _vec_table_exists(self, table: str) -> bool:
        cur = self.conn.execute("SELECT 1 FROM sqlite_master WHERE name = ?", (table,))
        return cur.fetchone() is not None

    def _knn(self, prefix: str, query_vector: list[float], k: int) -> list[tuple[int, float]]:
        """Nearest neighbors by rowid. Indexed vectors are unit length, so L2 order is cosine order."""
        table = _vec_table(prefix, len(query_vector))
        if not self._vec_table_exists(table):
            return []
        # sqlite-vec KNN queries don't allow JOINs in the same query
        cur = self.conn.execute(
            f"""
            SELECT rowid, distance
            FROM {table}
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance
            """,
            (serialize_f32(normalize(query_vector)), max(1, min(k, MAX_KNN))),
        )
        return [(row[0], row[1]) for row in cur.fetchall()]

    # ==================== Narratives ====================

    def save_narrative(
        self,
        narrative_id: str,
        text: str | None,
        title: str | None = None,
        language: str | None = None,
    ) -> None:
        """Insert or update a narrative's text. Embedding status fields are left alone."""
        self.conn.execute(
            """
            INSERT INTO narratives (id, title, text, language)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                text = excluded.text,
                language = excluded.language,
                updated_at = datetime('now')
            """,
            (narrative_id, title, text, language),
        )
        self.conn.commit()

    def get_narrative(self, narrative_id: str) -> dict[str, Any] | None:
        cur = self.conn.execute(
            """
            SELECT id, title, text, language, embedding_status, embedding_error,
                   embedding_attempts, embedding_started_at, embedding_processed_at
            FROM narratives
            WHERE id = ?
            """,
            (narrative_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        return {
            "id": row["id"],
            "title": row["title"],
            "text": row["text"],
            "language": row["language"],
            "embedding_status": row["embedding_status"],
            "embedding_error": row["embedding_error"],
            "embedding_attempts": row["embedding_attempts"],
            "embedding_started_at": row["embedding_started_at"],
            "embedding_processed_at": row["embedding_processed_at"],
        }

    # ==================== Chunk embeddings ====================

    def save_chunk_embeddings(
        self,
        narrative_id: str,
        embedding_version: str,
        dimensions: int,
        chunks: list[dict[str, Any]],
    ) -> int:
        """Upsert all chunk embeddings of a narrative in a single transaction.

        Rows are keyed by (narrative_id, chunk_index, embedding_version), so
        re-processing replaces content instead of duplicating it. Chunk
        indexes of this version beyond the new chunk count are removed.

        Args:
            narrative_id: The narrative ID
            embedding_version: Version tag (model + chunking generation)
            dimensions: Vector dimensions, identical for every chunk
            chunks: List of dicts with keys:
                - chunk_index: int
                - chunk_text: str
                - token_count: int
                - vector: list[float]
                - char_start / char_end: int (optional)
                - processing_time_ms: int (optional)

        Returns:
            Number of chunks written
        """
        vec_table = self._ensure_vec_table("chunk_vectors", dimensions)
        try:
            for chunk in chunks:
                vector = chunk["vector"]
                if len(vector) != dimensions:
                    raise ValueError(
                        f"Chunk {chunk['chunk_index']} has {len(vector)} dimensions, expected {dimensions}"
                    )
                cur = self.conn.execute(
                    """
                    INSERT INTO embedding_chunks (
                        narrative_id, chunk_index, embedding_version, chunk_text, token_count,
                        char_start, char_end, dimensions, embedding, processing_time_ms
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(narrative_id, chunk_index, embedding_version) DO UPDATE SET
                        chunk_text = excluded.chunk_text,
                        token_count = excluded.token_count,
                        char_start = excluded.char_start,
                        char_end = excluded.char_end,
                        dimensions = excluded.dimensions,
                        embedding = excluded.embedding,
                        processing_time_ms = excluded.processing_time_ms
                    RETURNING id
                    """,
                    (
                        narrative_id,
                        chunk["chunk_index"],
                        embedding_version,
                        chunk["chunk_text"],
                        chunk["token_count"],
                        chunk.get("char_start"),
                        chunk.get("char_end"),
                        dimensions,
                        serialize_f32(vector),
                        chunk.get("processing_time_ms"),
                    ),
                )
                chunk_id = cur.fetchone()[0]
                self.conn.execute(f"DELETE FROM {vec_table} WHERE rowid = ?", (chunk_id,))
                self.conn.execute(
                    f"INSERT INTO {vec_table} (rowid, embedding) VALUES (?, ?)",
                    (chunk_id, serialize_f32(normalize(vector))),
                )

            cur = self.conn.execute(
                """
                SELECT id, dimensions FROM embedding_chunks
                WHERE narrative_id = ? AND embedding_version = ? AND chunk_index >= ?
                """,
                (narrative_id, embedding_version, len(chunks)),
            )
            for stale_id, stale_dims in cur.fetchall():
                stale_table = _vec_table("chunk_vectors", stale_dims)
                if self._vec_table_exists(stale_table):
                    self.conn.execute(f"DELETE FROM {stale_table} WHERE rowid = ?", (stale_id,))
                self.conn.execute("DELETE FROM embedding_chunks WHERE id = ?", (stale_id,))

            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return len(chunks)

    def get_chunk_embeddings(self, narrative_id: str, embedding_version: str) -> list[dict[str, Any]]:
        """Get all chunk embeddings of one narrative/version, ordered by chunk_index."""
        cur = self.conn.execute(
            """
            SELECT id, chunk_index, chunk_text, token_count, char_start, char_end,
                   dimensions, embedding, processing_time_ms
            FROM embedding_chunks
            WHERE narrative_id = ? AND embedding_version = ?
            ORDER BY chunk_index
            """,
            (narrative_id, embedding_version),
        )
        return [
            {
                "id": row["id"],
                "chunk_index": row["chunk_index"],
                "chunk_text": row["chunk_text"],
                "token_count": row["token_count"],
                "char_start": row["char_start"],
                "char_end": row["char_end"],
                "dimensions": row["dimensions"],
                "vector": deserialize_f32(row["embedding"]),
                "processing_time_ms": row["processing_time_ms"],
            }
            for row in cur.fetchall()
        ]

    def count_chunks(self, narrative_id: str | None = None) -> int:
        if narrative_id is None:
            cur = self.conn.execute("SELECT COUNT(*) FROM embedding_chunks")
        else:
            cur = self.conn.execute(
                "SELECT COUNT(*) FROM embedding_chunks WHERE narrative_id = ?",
                (narrative_id,),
            )
        return cur.fetchone()[0]

    def find_similar_narratives(
        self,
        query_vector: list[float],
        embedding_version: str,
        similarity_threshold: float = 0.7,
        limit: int = 10,
        exclude_narrative_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Find narratives whose best chunk is close to the query vector.

        Returns one entry per narrative with its best chunk, ordered by
        similarity DESC then narrative_id ASC.
        """
        knn = self._knn("chunk_vectors", query_vector, limit * 5)
        best: dict[str, dict[str, Any]] = {}
        for chunk_id, _distance in knn:
            cur = self.conn.execute(
                """
                SELECT narrative_id, chunk_index, chunk_text, embedding
                FROM embedding_chunks
                WHERE id = ? AND embedding_version = ?
                """,
                (chunk_id, embedding_version),
            )
            row = cur.fetchone()
            if not row or row["narrative_id"] == exclude_narrative_id:
                continue
            similarity = cosine_similarity(query_vector, deserialize_f32(row["embedding"]))
            if similarity < similarity_threshold:
                continue
            existing = best.get(row["narrative_id"])
            if existing is None or similarity > existing["similarity"]:
                best[row["narrative_id"]] = {
                    "narrative_id": row["narrative_id"],
                    "similarity": similarity,
                    "chunk_index": row["chunk_index"],
                    "chunk_text": row["chunk_text"],
                }
        results = sorted(best.values(), key=lambda r: (-r["similarity"], r["narrative_id"]))
        return results[:limit]

    # ==================== Themes ====================

    def upsert_theme(
        self,
        code: str,
        label: str,
        description: str = "",
        category: str | None = None,
        sparse: dict[str, float] | None = None,
    ) -> None:
        """Insert or update a catalog entry. Existing vectors are kept."""
        self.conn.execute(
            """
            INSERT INTO themes (code, label, description, category, sparse)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(code) DO UPDATE SET
                label = excluded.label,
                description = excluded.description,
                category = excluded.category,
                sparse = COALESCE(excluded.sparse, themes.sparse),
                updated_at = datetime('now')
            """,
            (code, label, description, category, json.dumps(sparse) if sparse is not None else None),
        )
        self.conn.commit()

    def save_theme_vector(self, code: str, vector: list[float], version: str) -> None:
        self.conn.execute(
            """
            UPDATE themes
            SET embedding = ?, dimensions = ?, version = ?, updated_at = datetime('now')
            WHERE code = ?
            """,
            (serialize_f32(vector), len(vector), version, code),
        )
        self.conn.commit()

    def list_themes(self) -> list[Theme]:
        cur = self.conn.execute(
            "SELECT code, label, description, category, embedding, sparse, version FROM themes ORDER BY code"
        )
        return [_theme_from_row(row) for row in cur.fetchall()]

    def get_themes_with_vectors(self, dimensions: int) -> list[Theme]:
        """Themes that have a vector of the given dimension."""
        cur = self.conn.execute(
            """
            SELECT code, label, description, category, embedding, sparse, version
            FROM themes
            WHERE embedding IS NOT NULL AND dimensions = ?
            ORDER BY code
            """,
            (dimensions,),
        )
        return [_theme_from_row(row) for row in cur.fetchall()]

    def replace_theme_links(self, narrative_id: str, links: list[dict[str, Any]]) -> int:
        """Upsert theme links for a narrative and drop links not in the new set.

        Args:
            narrative_id: The narrative ID
            links: List of dicts with theme_code, similarity, chunk_index

        Returns:
            Number of links stored
        """
        extracted_at = iso(utc_now())
        try:
            for link in links:
                self.conn.execute(
                    """
                    INSERT INTO narrative_theme_links (narrative_id, theme_code, similarity, chunk_index, extracted_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(narrative_id, theme_code) DO UPDATE SET
                        similarity = excluded.similarity,
                        chunk_index = excluded.chunk_index,
                        extracted_at = excluded.extracted_at
                    """,
                    (narrative_id, link["theme_code"], link["similarity"], link.get("chunk_index"), extracted_at),
                )
            codes = [link["theme_code"] for link in links]
            placeholders = ",".join("?" for _ in codes)
            if codes:
                self.conn.execute(
                    f"DELETE FROM narrative_theme_links WHERE narrative_id = ? AND theme_code NOT IN ({placeholders})",
                    (narrative_id, *codes),
                )
            else:
                self.conn.execute("DELETE FROM narrative_theme_links WHERE narrative_id = ?", (narrative_id,))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return len(links)

    def get_themes(self, narrative_id: str, min_similarity: float = 0.0) -> list[dict[str, Any]]:
        """Extracted themes of a narrative, similarity DESC then theme_code ASC."""
        cur = self.conn.execute(
            """
            SELECT l.theme_code, t.label, l.similarity, l.chunk_index, l.extracted_at
            FROM narrative_theme_links l
            JOIN themes t ON t.code = l.theme_code
            WHERE l.narrative_id = ? AND l.similarity >= ?
            ORDER BY l.similarity DESC, l.theme_code ASC
            """,
            (narrative_id, min_similarity),
        )
        return [
            {
                "theme_code": row["theme_code"],
                "label": row["label"],
                "similarity": row["similarity"],
                "chunk_index": row["chunk_index"],
                "extracted_at": row["extracted_at"],
            }
            for row in cur.fetchall()
        ]

    # ==================== Reference fragments ====================

    def upsert_reference_fragment(
        self,
        key: str,
        text: str,
        collection: str | None = None,
        source: str | None = None,
        chapter: str | None = None,
        sparse: dict[str, float] | None = None,
        tags: list[str] | None = None,
    ) -> int:
        """Insert or update a fragment by key. A text change drops the stored vector.

        Returns:
            Fragment ID
        """
        cur = self.conn.execute("SELECT id, text, dimensions FROM reference_fragments WHERE key = ?", (key,))
        existing = cur.fetchone()
        try:
            cur = self.conn.execute(
                """
                INSERT INTO reference_fragments (key, collection, source, chapter, text, sparse, tags)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    collection = excluded.collection,
                    source = excluded.source,
                    chapter = excluded.chapter,
                    text = excluded.text,
                    sparse = excluded.sparse,
                    tags = excluded.tags,
                    updated_at = datetime('now')
                RETURNING id
                """,
                (
                    key,
                    collection,
                    source,
                    chapter,
                    text,
                    json.dumps(sparse) if sparse is not None else None,
                    json.dumps(sorted(set(tags or []))),
                ),
            )
            fragment_id = cur.fetchone()[0]

            if existing and existing["text"] != text and existing["dimensions"]:
                self.conn.execute(
                    "UPDATE reference_fragments SET embedding = NULL, dimensions = NULL WHERE id = ?",
                    (fragment_id,),
                )
                old_table = _vec_table("fragment_vectors", existing["dimensions"])
                if self._vec_table_exists(old_table):
                    self.conn.execute(f"DELETE FROM {old_table} WHERE rowid = ?", (fragment_id,))

            self.conn.execute("DELETE FROM reference_fragments_fts WHERE rowid = ?", (fragment_id,))
            self.conn.execute(
                "INSERT INTO reference_fragments_fts (rowid, text) VALUES (?, ?)",
                (fragment_id, text),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return fragment_id

    def save_fragment_vector(self, fragment_id: int, vector: list[float]) -> None:
        dimensions = len(vector)
        vec_table = self._ensure_vec_table("fragment_vectors", dimensions)
        self.conn.execute(
            "UPDATE reference_fragments SET embedding = ?, dimensions = ? WHERE id = ?",
            (serialize_f32(vector), dimensions, fragment_id),
        )
        self.conn.execute(f"DELETE FROM {vec_table} WHERE rowid = ?", (fragment_id,))
        self.conn.execute(
            f"INSERT INTO {vec_table} (rowid, embedding) VALUES (?, ?)",
            (fragment_id, serialize_f32(normalize(vector))),
        )
        self.conn.commit()

    def get_fragments_without_vector(self, limit: int = 100) -> list[ReferenceFragment]:
        cur = self.conn.execute(
            """
            SELECT id, key, collection, source, chapter, text, embedding, sparse, tags
            FROM reference_fragments
            WHERE embedding IS NULL
            ORDER BY id
            LIMIT ?
            """,
            (limit,),
        )
        return [_fragment_from_row(row) for row in cur.fetchall()]

    def get_fragments(self, fragment_ids: list[int]) -> list[ReferenceFragment]:
        if not fragment_ids:
            return []
        placeholders = ",".join("?" for _ in fragment_ids)
        cur = self.conn.execute(
            f"""
            SELECT id, key, collection, source, chapter, text, embedding, sparse, tags
            FROM reference_fragments
            WHERE id IN ({placeholders})
            ORDER BY id
            """,
            list(fragment_ids),
        )
        return [_fragment_from_row(row) for row in cur.fetchall()]

    def get_reference_candidates(
        self,
        query_vector: list[float] | None,
        fts_query: str | None,
        limit: int,
        collection: str | None = None,
        source: str | None = None,
    ) -> list[ReferenceFragment]:
        """Candidate generation for hybrid retrieval.

        Union of the vector nearest neighbors and the FTS matches (each up to
        `limit`), filtered by collection/source. Without a query vector or
        FTS query, every fragment matching the filters is a candidate.
        """
        ids: set[int] = set()
        if query_vector:
            # KNN runs before filtering, so over-fetch when filters are set
            k = limit * 4 if (collection or source) else limit
            ids.update(rowid for rowid, _ in self._knn("fragment_vectors", query_vector, k))
        if fts_query:
            cur = self.conn.execute(
                """
                SELECT rowid FROM reference_fragments_fts
                WHERE reference_fragments_fts MATCH ?
                ORDER BY rank
                LIMIT ?
                """,
                (fts_query, limit),
            )
            ids.update(row[0] for row in cur.fetchall())
        if not query_vector and not fts_query:
            cur = self.conn.execute("SELECT id FROM reference_fragments ORDER BY id LIMIT ?", (limit,))
            ids.update(row[0] for row in cur.fetchall())

        fragments = self.get_fragments(sorted(ids))
        if collection:
            fragments = [f for f in fragments if f.collection == collection]
        if source:
            fragments = [f for f in fragments if f.source == source]
        return fragments

    # ==================== Stats ====================

    def get_embedding_stats(self) -> dict[str, Any]:
        """Narrative status counts plus catalog sizes."""
        cur = self.conn.execute(
            "SELECT COALESCE(embedding_status, 'none'), COUNT(*) FROM narratives GROUP BY 1"
        )
        by_status = {row[0]: row[1] for row in cur.fetchall()}
        cur = self.conn.execute("SELECT COUNT(*), COUNT(embedding) FROM themes")
        themes_total, themes_embedded = cur.fetchone()
        cur = self.conn.execute("SELECT COUNT(*), COUNT(embedding) FROM reference_fragments")
        fragments_total, fragments_embedded = cur.fetchone()
        return {
            "narratives_by_status": by_status,
            "chunks": self.count_chunks(),
            "themes_total": themes_total,
            "themes_embedded": themes_embedded,
            "fragments_total": fragments_total,
            "fragments_embedded": fragments_embedded,
        }


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with sqlite-vec loaded and rows addressable by name."""
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row

    # sqlite-vec must be loaded into this connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


_db: DB | None = None


def init_db(settings: Settings | None = None) -> DB:
    global _db
    from dreamvec.core.job_queue import init_job_queue

    s = settings or Settings.from_env()
    if s.db_path != ":memory:":
        os.makedirs(os.path.dirname(s.db_path) or ".", exist_ok=True)

    conn = connect(s.db_path)

    _db = DB(conn=conn)
    _db.init()

    # Job queue shares the connection
    init_job_queue(conn, s)
    return _db


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
