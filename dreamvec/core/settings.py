from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    log_level: str

    # Embedding provider
    embedding_provider: str
    embedding_model: str
    embedding_dimensions: int
    embedding_version: str

    # Narrative eligibility and chunking
    min_text_length: int
    allowed_languages: tuple[str, ...]
    chunk_size_tokens: int
    chunk_overlap_tokens: int
    max_tokens_per_chunk: int
    embed_batch_size: int

    # Theme extraction
    theme_similarity_threshold: float
    max_themes_per_narrative: int

    # Job queue
    max_attempts: int
    backoff_base_seconds: float
    backoff_max_seconds: float

    # Worker pool and reaper
    worker_count: int
    worker_autostart: bool
    poll_interval_seconds: float
    job_timeout_seconds: float
    reaper_interval_seconds: float
    stale_job_timeout_seconds: float

    # Hybrid retrieval
    semantic_weight: float
    sparse_weight: float
    lexical_weight: float
    boost_theme: float
    boost_concept: float
    retrieval_min_similarity: float
    candidate_multiplier: int

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        def _list(name: str, default: str) -> tuple[str, ...]:
            raw = os.getenv(name, default)
            return tuple(p.strip().lower() for p in raw.split(",") if p.strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/dreamvec.db").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "ollama").strip(),
            embedding_model=os.getenv("EMBEDDING_MODEL", "bge-m3").strip(),
            embedding_dimensions=_i("EMBEDDING_DIMENSIONS", "1024"),
            embedding_version=os.getenv("EMBEDDING_VERSION", "bge-m3-v1").strip(),
            min_text_length=_i("EMBED_MIN_TEXT_LENGTH", "40"),
            allowed_languages=_list("EMBED_ALLOWED_LANGUAGES", "en"),
            chunk_size_tokens=_i("CHUNK_SIZE_TOKENS", "750"),
            chunk_overlap_tokens=_i("CHUNK_OVERLAP_TOKENS", "100"),
            max_tokens_per_chunk=_i("CHUNK_MAX_TOKENS", "1000"),
            embed_batch_size=_i("EMBED_BATCH_SIZE", "5"),
            theme_similarity_threshold=_f("THEME_SIMILARITY_THRESHOLD", "0.5"),
            max_themes_per_narrative=_i("MAX_THEMES_PER_NARRATIVE", "5"),
            max_attempts=_i("JOB_MAX_ATTEMPTS", "3"),
            backoff_base_seconds=_f("JOB_BACKOFF_BASE", "60"),
            backoff_max_seconds=_f("JOB_BACKOFF_MAX", "3600"),
            worker_count=_i("WORKER_COUNT", "2"),
            worker_autostart=_b("WORKER_AUTOSTART", "1"),
            poll_interval_seconds=_f("WORKER_POLL_INTERVAL", "5"),
            job_timeout_seconds=_f("JOB_TIMEOUT", "120"),
            reaper_interval_seconds=_f("REAPER_INTERVAL", "300"),
            stale_job_timeout_seconds=_f("STALE_JOB_TIMEOUT", "1800"),
            semantic_weight=_f("RETRIEVAL_SEMANTIC_WEIGHT", "0.4"),
            sparse_weight=_f("RETRIEVAL_SPARSE_WEIGHT", "0.3"),
            lexical_weight=_f("RETRIEVAL_LEXICAL_WEIGHT", "0.3"),
            boost_theme=_f("RETRIEVAL_BOOST_THEME", "0.2"),
            boost_concept=_f("RETRIEVAL_BOOST_CONCEPT", "0.1"),
            retrieval_min_similarity=_f("RETRIEVAL_MIN_SIMILARITY", "0.35"),
            candidate_multiplier=_i("RETRIEVAL_CANDIDATE_MULTIPLIER", "4"),
        )
