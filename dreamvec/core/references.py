"""Reference fragment ingestion (source passages returned by retrieval)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from dreamvec.core.embedding_providers import EmbeddingProvider, validate_vectors
from dreamvec.core.settings import Settings

if TYPE_CHECKING:
    from dreamvec.core.storage import DB

logger = logging.getLogger(__name__)


async def ingest_reference_fragments(
    db: DB,
    provider: EmbeddingProvider,
    fragments: list[dict[str, Any]],
    settings: Settings | None = None,
) -> dict[str, int]:
    """Upsert fragments by key, then embed every fragment that has no vector.

    Each fragment dict needs `key` and `text`; `collection`, `source`,
    `chapter`, `sparse` and `tags` are optional. Re-ingesting the same key
    updates the row in place, and a changed text is re-embedded.

    Returns:
        Dict with counts: upserted, embedded
    """
    s = settings or Settings.from_env()

    upserted = 0
    for fragment in fragments:
        key = str(fragment.get("key") or "").strip()
        text = (fragment.get("text") or "").strip()
        if not key or not text:
            raise ValueError(f"Reference fragment needs key and text: {fragment!r}")
        db.upsert_reference_fragment(
            key=key,
            text=text,
            collection=fragment.get("collection"),
            source=fragment.get("source"),
            chapter=fragment.get("chapter"),
            sparse=fragment.get("sparse"),
            tags=fragment.get("tags"),
        )
        upserted += 1

    embedded = 0
    batch_size = max(1, s.embed_batch_size)
    while True:
        pending = db.get_fragments_without_vector(limit=batch_size)
        if not pending:
            break
        vectors = await provider.embed([f.text for f in pending])
        validate_vectors(vectors, len(pending), s.embedding_dimensions, provider.name)
        for fragment, vector in zip(pending, vectors):
            db.save_fragment_vector(fragment.id, vector)
            embedded += 1

    logger.info(f"Reference fragments: {upserted} upserted, {embedded} embedded")
    return {"upserted": upserted, "embedded": embedded}
