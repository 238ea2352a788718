"""Theme catalog and theme extraction for narratives."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dreamvec.core.content_types import Theme
from dreamvec.core.embedding_providers import EmbeddingProvider, validate_vectors
from dreamvec.core.retrieval import cosine_similarity
from dreamvec.core.settings import Settings

if TYPE_CHECKING:
    from dreamvec.core.storage import DB

logger = logging.getLogger(__name__)

SEED_THEMES_PATH = Path(__file__).resolve().parent.parent / "data" / "themes.json"


@dataclass
class ThemeMatch:
    """Best similarity of one theme over all chunks of a narrative."""

    theme_code: str
    similarity: float
    chunk_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "theme_code": self.theme_code,
            "similarity": self.similarity,
            "chunk_index": self.chunk_index,
        }


def extract_themes(
    chunk_vectors: list[tuple[int, list[float]]],
    themes: list[Theme],
    threshold: float,
    max_themes: int = 0,
) -> list[ThemeMatch]:
    """Match chunk vectors against the theme catalog.

    Per theme the maximum similarity over all chunks is kept (the lower
    chunk_index wins a tie). Themes without a vector, or with a vector of
    another dimension, are ignored.

    Args:
        chunk_vectors: (chunk_index, vector) pairs.
        themes: Catalog entries.
        threshold: Minimum similarity for a theme to count.
        max_themes: Keep only the top N after ordering (0 = all).

    Returns:
        Matches ordered by similarity DESC, theme_code ASC
    """
    best: dict[str, ThemeMatch] = {}
    for theme in themes:
        if not theme.vector:
            continue
        for chunk_index, vector in sorted(chunk_vectors, key=lambda c: c[0]):
            if len(vector) != len(theme.vector):
                continue
            similarity = min(1.0, max(0.0, cosine_similarity(vector, theme.vector)))
            if similarity < threshold:
                continue
            current = best.get(theme.code)
            if current is None or similarity > current.similarity:
                best[theme.code] = ThemeMatch(theme.code, similarity, chunk_index)

    matches = sorted(best.values(), key=lambda m: (-m.similarity, m.theme_code))
    if max_themes > 0:
        matches = matches[:max_themes]
    return matches


def extract_and_store_themes(
    db: DB,
    narrative_id: str,
    chunk_vectors: list[tuple[int, list[float]]],
    settings: Settings,
) -> list[ThemeMatch]:
    """Extract themes for a narrative and replace its stored links."""
    dimensions = len(chunk_vectors[0][1]) if chunk_vectors else settings.embedding_dimensions
    themes = db.get_themes_with_vectors(dimensions)
    if not themes:
        logger.warning(f"No embedded themes with {dimensions} dimensions; narrative {narrative_id} gets no themes")

    matches = extract_themes(
        chunk_vectors,
        themes,
        threshold=settings.theme_similarity_threshold,
        max_themes=settings.max_themes_per_narrative,
    )
    db.replace_theme_links(narrative_id, [m.to_dict() for m in matches])
    logger.info(f"Narrative {narrative_id}: {len(matches)} theme(s) {[m.theme_code for m in matches]}")
    return matches


# ==================== Catalog ====================


def load_seed_themes(path: Path | str | None = None) -> list[dict[str, Any]]:
    """Read catalog entries (code, label, description, category) from JSON."""
    with open(path or SEED_THEMES_PATH, encoding="utf-8") as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise ValueError("Theme catalog must be a JSON list")
    return entries


def dedupe_catalog(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Collapse entries by code; the last entry for a code wins."""
    by_code: dict[str, dict[str, Any]] = {}
    for entry in entries:
        code = str(entry.get("code") or "").strip()
        if not code or not entry.get("label"):
            raise ValueError(f"Theme entry needs code and label: {entry!r}")
        if code in by_code:
            logger.warning(f"Duplicate theme code '{code}' in catalog, keeping last entry")
        by_code[code] = {**entry, "code": code}
    return list(by_code.values())


async def ingest_theme_catalog(
    db: DB,
    provider: EmbeddingProvider,
    entries: list[dict[str, Any]] | None = None,
    settings: Settings | None = None,
) -> dict[str, int]:
    """Upsert catalog entries and embed themes whose vector is missing or outdated.

    Args:
        db: Storage.
        provider: Embedding provider for theme vectors.
        entries: Catalog entries. Defaults to the bundled seed themes.
        settings: Embedding version and batch size.

    Returns:
        Dict with counts: themes, duplicates, embedded
    """
    s = settings or Settings.from_env()
    raw = entries if entries is not None else load_seed_themes()
    catalog = dedupe_catalog(raw)

    for entry in catalog:
        db.upsert_theme(
            code=entry["code"],
            label=entry["label"],
            description=entry.get("description") or "",
            category=entry.get("category"),
            sparse=entry.get("sparse"),
        )

    codes = {e["code"] for e in catalog}
    to_embed = [
        t
        for t in db.list_themes()
        if t.code in codes
        and (t.vector is None or t.version != s.embedding_version or len(t.vector) != provider.dimensions)
    ]

    embedded = 0
    batch_size = max(1, s.embed_batch_size)
    for i in range(0, len(to_embed), batch_size):
        batch = to_embed[i : i + batch_size]
        vectors = await provider.embed([t.embedding_text() for t in batch])
        validate_vectors(vectors, len(batch), provider.dimensions, provider.name)
        for theme, vector in zip(batch, vectors):
            db.save_theme_vector(theme.code, vector, s.embedding_version)
            embedded += 1

    logger.info(f"Theme catalog: {len(catalog)} themes, {len(raw) - len(catalog)} duplicates, {embedded} embedded")
    return {"themes": len(catalog), "duplicates": len(raw) - len(catalog), "embedded": embedded}
