"""Shared fixtures: in-memory database, fake embedding provider, fixed clock."""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from dreamvec.core.embedding_providers import EmbeddingError, EmbeddingProvider
from dreamvec.core.settings import Settings
from dreamvec.core.storage import DB, connect

DIMS = 4


class FakeProvider(EmbeddingProvider):
    """Deterministic provider: fixed vectors per text, hashed vectors otherwise."""

    def __init__(self, dimensions=DIMS, vectors=None, error=None, delay=0.0, wrong_dimensions=None):
        self._dimensions = dimensions
        self.vectors = vectors or {}
        self.error = error
        self.delay = delay
        self.wrong_dimensions = wrong_dimensions
        self.calls = []

    @property
    def name(self):
        return "Fake"

    @property
    def model_id(self):
        return "fake-embed"

    @property
    def dimensions(self):
        return self._dimensions

    def vector_for(self, text):
        if text in self.vectors:
            return list(self.vectors[text])
        seed = sum(ord(c) for c in text)
        return [float((seed * (i + 3)) % 17 + 1) for i in range(self._dimensions)]

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.error, EmbeddingError):
            raise self.error
        if self.wrong_dimensions:
            return [[0.1] * self.wrong_dimensions for _ in texts]
        return [self.vector_for(t) for t in texts]


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def db():
    """Create an in-memory database for testing."""
    database = DB(conn=connect(":memory:"))
    database.init()
    return database


@pytest.fixture
def settings():
    return dataclasses.replace(
        Settings.from_env(),
        db_path=":memory:",
        embedding_dimensions=DIMS,
        embedding_version="fake-v1",
        min_text_length=40,
        allowed_languages=("en",),
        embed_batch_size=2,
        theme_similarity_threshold=0.5,
        max_themes_per_narrative=5,
        max_attempts=3,
        backoff_base_seconds=60.0,
        backoff_max_seconds=3600.0,
        worker_count=2,
        poll_interval_seconds=0.01,
        job_timeout_seconds=5.0,
        reaper_interval_seconds=3600.0,
        stale_job_timeout_seconds=1800.0,
        semantic_weight=0.4,
        sparse_weight=0.3,
        lexical_weight=0.3,
        boost_theme=0.2,
        boost_concept=0.1,
        retrieval_min_similarity=0.0,
        candidate_multiplier=4,
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FakeClock()
