"""Embedding generation for a single narrative.

Chunks the narrative, embeds the chunks in batches, stores them and runs
theme extraction. Outcomes are reported as a ProcessingResult; whether a
failure is retried is decided by the job queue, not here.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from dreamvec.core.chunking import chunk_narrative
from dreamvec.core.embedding_providers import EmbeddingError, EmbeddingProvider, validate_vectors
from dreamvec.core.settings import Settings
from dreamvec.core.themes import extract_and_store_themes

if TYPE_CHECKING:
    from dreamvec.core.storage import DB

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ProcessingResult:
    """Outcome of processing one narrative."""

    narrative_id: str
    outcome: Outcome
    chunks: int = 0
    themes: list[str] = field(default_factory=list)
    reason: str | None = None  # skip reason or error message
    retriable: bool = False
    processing_time_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "narrative_id": self.narrative_id,
            "outcome": self.outcome.value,
            "chunks": self.chunks,
            "themes": self.themes,
            "reason": self.reason,
            "retriable": self.retriable,
            "processing_time_ms": self.processing_time_ms,
        }


def check_eligibility(narrative: dict[str, Any] | None, settings: Settings) -> str | None:
    """Reason a narrative can't be embedded, or None if it can."""
    if narrative is None:
        return "narrative not found"
    text = (narrative.get("text") or "").strip()
    if not text:
        return "no text"
    if len(text) < settings.min_text_length:
        return f"text too short ({len(text)} < {settings.min_text_length} chars)"
    language = (narrative.get("language") or "").strip().lower()
    if language and settings.allowed_languages and language not in settings.allowed_languages:
        return f"unsupported language '{language}'"
    return None


async def process_narrative(
    db: DB,
    provider: EmbeddingProvider,
    narrative_id: str,
    settings: Settings | None = None,
) -> ProcessingResult:
    """Chunk, embed and theme-tag one narrative.

    Args:
        db: Storage.
        provider: Embedding provider; must return vectors of the configured dimension.
        narrative_id: Narrative to process.
        settings: Chunking, batch size, embedding version and theme settings.

    Returns:
        ProcessingResult. Provider and storage errors are reported, not raised.
    """
    s = settings or Settings.from_env()
    start = time.time()

    def elapsed_ms() -> int:
        return int((time.time() - start) * 1000)

    narrative = db.get_narrative(narrative_id)
    reason = check_eligibility(narrative, s)
    if reason:
        logger.info(f"Skipping narrative {narrative_id}: {reason}")
        return ProcessingResult(narrative_id, Outcome.SKIPPED, reason=reason, processing_time_ms=elapsed_ms())

    chunks = chunk_narrative(
        narrative["text"],
        chunk_size_tokens=s.chunk_size_tokens,
        chunk_overlap_tokens=s.chunk_overlap_tokens,
        max_tokens_per_chunk=s.max_tokens_per_chunk,
    )

    try:
        records = []
        batch_size = max(1, s.embed_batch_size)
        for i in range(0, len(chunks), batch_size):
            batch = chunks[i : i + batch_size]
            batch_start = time.time()
            vectors = await provider.embed([c.text for c in batch])
            validate_vectors(vectors, len(batch), s.embedding_dimensions, provider.name)
            per_chunk_ms = int((time.time() - batch_start) * 1000 / len(batch))
            for chunk, vector in zip(batch, vectors):
                records.append({**chunk.to_dict(), "vector": vector, "processing_time_ms": per_chunk_ms})

        db.save_chunk_embeddings(narrative_id, s.embedding_version, s.embedding_dimensions, records)
        matches = extract_and_store_themes(
            db,
            narrative_id,
            [(r["chunk_index"], r["vector"]) for r in records],
            s,
        )
    except EmbeddingError as e:
        logger.warning(f"Embedding failed for narrative {narrative_id} ({e.provider}): {e}")
        return ProcessingResult(
            narrative_id,
            Outcome.FAILED,
            reason=str(e),
            retriable=e.retriable,
            processing_time_ms=elapsed_ms(),
        )
    except sqlite3.OperationalError as e:
        logger.warning(f"Storage unavailable for narrative {narrative_id}: {e}")
        return ProcessingResult(
            narrative_id, Outcome.FAILED, reason=f"storage: {e}", retriable=True, processing_time_ms=elapsed_ms()
        )
    except (sqlite3.IntegrityError, ValueError) as e:
        logger.error(f"Invalid data for narrative {narrative_id}: {e}")
        return ProcessingResult(
            narrative_id, Outcome.FAILED, reason=str(e), retriable=False, processing_time_ms=elapsed_ms()
        )

    result = ProcessingResult(
        narrative_id,
        Outcome.COMPLETED,
        chunks=len(records),
        themes=[m.theme_code for m in matches],
        processing_time_ms=elapsed_ms(),
    )
    logger.info(f"Embedded narrative {narrative_id}: {result.chunks} chunk(s) in {result.processing_time_ms}ms")
    return result
