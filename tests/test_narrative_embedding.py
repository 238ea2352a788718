"""Tests for per-narrative embedding generation."""

import dataclasses

import pytest
from conftest import FakeProvider

from dreamvec.core.chunking import chunk_narrative
from dreamvec.core.embedding_providers import EmbeddingError
from dreamvec.core.narrative_embedding import Outcome, check_eligibility, process_narrative

DREAM = (
    "I was standing at the edge of a cliff above a grey ocean. "
    "The wind pushed me forward and suddenly I was falling, the water rushing up to meet me."
)


def long_dream(paragraphs=12):
    para = ("The corridor kept changing shape while I searched for a door. " * 15).strip()
    return "\n\n".join(f"{para} Room {i}." for i in range(paragraphs))


def test_check_eligibility(settings):
    assert check_eligibility(None, settings) == "narrative not found"
    assert check_eligibility({"text": "   "}, settings) == "no text"
    assert "too short" in check_eligibility({"text": "x" * 39}, settings)
    assert "language" in check_eligibility({"text": DREAM, "language": "de"}, settings)
    assert check_eligibility({"text": DREAM, "language": "EN"}, settings) is None
    assert check_eligibility({"text": DREAM, "language": None}, settings) is None


@pytest.mark.asyncio
async def test_short_text_is_skipped_without_chunks(db, provider, settings):
    db.save_narrative("n1", "I dreamt of a blue door today.")  # 30 chars

    result = await process_narrative(db, provider, "n1", settings)

    assert result.outcome == Outcome.SKIPPED
    assert result.ok
    assert "too short" in result.reason
    assert db.count_chunks("n1") == 0
    assert provider.calls == []


@pytest.mark.asyncio
async def test_missing_narrative_is_skipped(db, provider, settings):
    result = await process_narrative(db, provider, "nope", settings)
    assert result.outcome == Outcome.SKIPPED
    assert result.reason == "narrative not found"


@pytest.mark.asyncio
async def test_process_short_narrative(db, provider, settings):
    db.save_narrative("n1", DREAM, language="en")

    result = await process_narrative(db, provider, "n1", settings)

    assert result.outcome == Outcome.COMPLETED
    assert result.chunks == 1
    chunks = db.get_chunk_embeddings("n1", settings.embedding_version)
    assert len(chunks) == 1
    assert chunks[0]["chunk_text"] == DREAM
    assert chunks[0]["dimensions"] == settings.embedding_dimensions
    assert chunks[0]["vector"] == pytest.approx(provider.vector_for(DREAM))


@pytest.mark.asyncio
async def test_long_narrative_is_embedded_in_batches(db, provider, settings):
    text = long_dream()
    expected = chunk_narrative(text)
    assert len(expected) > 2
    db.save_narrative("n1", text)

    result = await process_narrative(db, provider, "n1", settings)

    assert result.chunks == len(expected)
    assert [len(batch) for batch in provider.calls][0] == settings.embed_batch_size
    assert sum(len(batch) for batch in provider.calls) == len(expected)
    stored = db.get_chunk_embeddings("n1", settings.embedding_version)
    assert [c["chunk_index"] for c in stored] == list(range(len(expected)))


@pytest.mark.asyncio
async def test_reprocessing_is_idempotent(db, provider, settings):
    db.save_narrative("n1", long_dream())

    await process_narrative(db, provider, "n1", settings)
    first = db.get_chunk_embeddings("n1", settings.embedding_version)
    await process_narrative(db, provider, "n1", settings)
    second = db.get_chunk_embeddings("n1", settings.embedding_version)

    assert len(first) == len(second)
    assert [c["id"] for c in first] == [c["id"] for c in second]
    assert db.count_chunks("n1") == len(first)


@pytest.mark.asyncio
async def test_reprocessing_shorter_text_removes_stale_chunks(db, provider, settings):
    db.save_narrative("n1", long_dream())
    await process_narrative(db, provider, "n1", settings)
    assert db.count_chunks("n1") > 1

    db.save_narrative("n1", DREAM)
    await process_narrative(db, provider, "n1", settings)

    assert db.count_chunks("n1") == 1


@pytest.mark.asyncio
async def test_new_version_does_not_overwrite_old(db, provider, settings):
    db.save_narrative("n1", DREAM)
    await process_narrative(db, provider, "n1", settings)
    v2 = dataclasses.replace(settings, embedding_version="fake-v2")
    await process_narrative(db, provider, "n1", v2)

    assert len(db.get_chunk_embeddings("n1", "fake-v1")) == 1
    assert len(db.get_chunk_embeddings("n1", "fake-v2")) == 1


@pytest.mark.asyncio
async def test_dimension_mismatch_is_permanent_failure(db, settings):
    db.save_narrative("n1", DREAM)
    provider = FakeProvider(wrong_dimensions=settings.embedding_dimensions + 1)

    result = await process_narrative(db, provider, "n1", settings)

    assert result.outcome == Outcome.FAILED
    assert result.retriable is False
    assert "dimensions" in result.reason
    assert db.count_chunks("n1") == 0


@pytest.mark.asyncio
async def test_transient_provider_error_is_retriable(db, settings):
    db.save_narrative("n1", DREAM)
    provider = FakeProvider(error=EmbeddingError("timed out", provider="Fake", retriable=True))

    result = await process_narrative(db, provider, "n1", settings)

    assert result.outcome == Outcome.FAILED
    assert result.retriable is True
    assert not result.ok


@pytest.mark.asyncio
async def test_themes_are_extracted_after_embedding(db, settings):
    provider = FakeProvider(vectors={DREAM: [1.0, 0.0, 0.0, 0.0]})
    db.upsert_theme("falling", "Falling")
    db.save_theme_vector("falling", [1.0, 0.0, 0.0, 0.0], settings.embedding_version)
    db.upsert_theme("flying", "Flying")
    db.save_theme_vector("flying", [0.0, 1.0, 0.0, 0.0], settings.embedding_version)
    db.save_narrative("n1", DREAM)

    result = await process_narrative(db, provider, "n1", settings)

    assert result.themes == ["falling"]
    themes = db.get_themes("n1")
    assert [t["theme_code"] for t in themes] == ["falling"]
    assert themes[0]["similarity"] == pytest.approx(1.0)
    assert result.to_dict()["outcome"] == "completed"
