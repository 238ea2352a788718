from __future__ import annotations

import logging

from fastapi import Body, FastAPI

from dreamvec.core.chunking import get_chunking_info
from dreamvec.core.embedding_providers import EmbeddingError, get_provider
from dreamvec.core.job_queue import get_job_queue
from dreamvec.core.references import ingest_reference_fragments
from dreamvec.core.retrieval import RetrievalFilters, retrieve
from dreamvec.core.settings import Settings
from dreamvec.core.storage import get_db, init_db
from dreamvec.core.themes import ingest_theme_catalog
from dreamvec.core.worker import get_worker, init_worker

logger = logging.getLogger(__name__)

app = FastAPI(title="dreamvec")


def _provider(s: Settings):
    return get_provider(s.embedding_provider, model=s.embedding_model, dimensions=s.embedding_dimensions)


@app.on_event("startup")
async def _startup() -> None:
    s = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, s.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db = init_db(s)
    worker = init_worker(db, get_job_queue(), _provider(s), s)
    if s.worker_autostart:
        worker.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await get_worker().stop()


# ==================== Embedding pipeline ====================


@app.get("/api/embedding/status")
def api_embedding_status():
    """Worker status plus queue and catalog statistics."""
    s = Settings.from_env()
    return {
        "worker": get_worker().get_status(),
        "jobs": get_job_queue().counts(),
        "stats": get_db().get_embedding_stats(),
        "chunking": get_chunking_info(s.chunk_size_tokens, s.chunk_overlap_tokens, s.max_tokens_per_chunk),
        "embedding_version": s.embedding_version,
    }


@app.get("/api/providers/health")
async def api_providers_health():
    """Check the configured embedding provider."""
    s = Settings.from_env()
    try:
        health = await _provider(s).health_check()
    except (ValueError, EmbeddingError) as e:
        return {"provider": s.embedding_provider, "model": s.embedding_model, "healthy": False, "message": str(e)}
    return health.to_dict()


@app.put("/api/narratives/{narrative_id}")
def api_save_narrative(narrative_id: str, payload: dict = Body(...), priority: int = 0):
    """Store a narrative's text and queue it for embedding."""
    text = payload.get("text")
    if not isinstance(text, str):
        return {"error": "text is required"}
    get_db().save_narrative(narrative_id, text, title=payload.get("title"), language=payload.get("language"))
    job = get_job_queue().enqueue(narrative_id, priority=priority)
    return {"narrative_id": narrative_id, "job": job.to_dict() if job else None}


@app.post("/api/narratives/{narrative_id}/enqueue")
def api_enqueue_narrative(narrative_id: str, priority: int = 0):
    """Queue a narrative for embedding. Idempotent."""
    job = get_job_queue().enqueue(narrative_id, priority=priority)
    if not job:
        return {"error": "Could not enqueue narrative", "narrative_id": narrative_id}
    return job.to_dict()


@app.get("/api/narratives/{narrative_id}/themes")
def api_narrative_themes(narrative_id: str, min_similarity: float = 0.0):
    """Extracted themes, most similar first."""
    db = get_db()
    narrative = db.get_narrative(narrative_id)
    if not narrative:
        return {"error": "Narrative not found"}
    return {
        "narrative_id": narrative_id,
        "embedding_status": narrative["embedding_status"],
        "themes": db.get_themes(narrative_id, min_similarity=min_similarity),
    }


# ==================== Retrieval ====================


@app.post("/api/retrieve")
async def api_retrieve(payload: dict = Body(...)):
    """Hybrid retrieval of reference fragments.

    Body:
        query_vector: list[float] (optional if query_text is given; the text is embedded)
        query_sparse: {token: weight} (optional)
        query_text: str (optional)
        theme_hints / concept_hints: list[str] (optional)
        collection / source: filters (optional)
        k: int (default 10)
    """
    s = Settings.from_env()
    query_vector = payload.get("query_vector")
    query_text = payload.get("query_text")

    if not query_vector and not (query_text and query_text.strip()):
        return {"results": [], "error": "query_vector or query_text is required"}

    if not query_vector:
        try:
            query_vector = await _provider(s).embed_single(query_text.strip())
        except EmbeddingError as e:
            return {"results": [], "error": str(e)}

    results = retrieve(
        get_db(),
        query_vector=query_vector,
        query_sparse=payload.get("query_sparse"),
        query_text=query_text,
        theme_hints=payload.get("theme_hints"),
        concept_hints=payload.get("concept_hints"),
        filters=RetrievalFilters(collection=payload.get("collection"), source=payload.get("source")),
        k=int(payload.get("k", 10)),
        settings=s,
    )
    return {"results": [r.to_dict() for r in results], "count": len(results)}


# ==================== Catalog ingestion ====================


@app.post("/api/themes/ingest")
async def api_themes_ingest(payload: dict | None = Body(None)):
    """Upsert the theme catalog and embed new or outdated themes.

    Body (optional): {"themes": [{code, label, description, category}, ...]}.
    Without a body the bundled seed themes are ingested.
    """
    s = Settings.from_env()
    entries = (payload or {}).get("themes")
    try:
        return await ingest_theme_catalog(get_db(), _provider(s), entries, settings=s)
    except (ValueError, EmbeddingError) as e:
        return {"error": str(e)}


@app.post("/api/references/ingest")
async def api_references_ingest(payload: dict = Body(...)):
    """Upsert reference fragments by key and embed the new ones.

    Body: {"fragments": [{key, text, collection, source, chapter, sparse, tags}, ...]}
    """
    s = Settings.from_env()
    fragments = payload.get("fragments") or []
    try:
        return await ingest_reference_fragments(get_db(), _provider(s), fragments, settings=s)
    except (ValueError, EmbeddingError) as e:
        return {"error": str(e)}
