"""Tests for theme extraction and the theme catalog."""

import dataclasses
import logging
import math

import pytest
from conftest import FakeProvider

from dreamvec.core.content_types import Theme
from dreamvec.core.themes import (
    dedupe_catalog,
    extract_and_store_themes,
    extract_themes,
    ingest_theme_catalog,
    load_seed_themes,
)

FALLING = Theme(code="falling", label="Falling", vector=[1.0, 0.0])


def at_similarity(s):
    """Unit vector whose cosine with [1, 0] is s."""
    return [s, math.sqrt(1 - s * s)]


def test_max_similarity_over_chunks():
    chunks = [(0, at_similarity(0.2)), (1, at_similarity(0.6)), (2, at_similarity(0.1))]

    matches = extract_themes(chunks, [FALLING], threshold=0.1)

    assert len(matches) == 1
    assert matches[0].similarity == pytest.approx(0.6)
    assert matches[0].chunk_index == 1


def test_threshold_applies_to_best_chunk():
    chunks = [(0, at_similarity(0.9)), (1, at_similarity(0.85))]

    matches = extract_themes(chunks, [FALLING], threshold=0.5)

    assert [(m.theme_code, m.chunk_index) for m in matches] == [("falling", 0)]
    assert matches[0].similarity == pytest.approx(0.9)


def test_below_threshold_is_dropped():
    assert extract_themes([(0, at_similarity(0.3))], [FALLING], threshold=0.5) == []


def test_tie_keeps_lower_chunk_index():
    chunks = [(3, at_similarity(0.7)), (1, at_similarity(0.7))]
    matches = extract_themes(chunks, [FALLING], threshold=0.5)
    assert matches[0].chunk_index == 1


def test_ordering_and_cap():
    themes = [
        Theme(code="water", label="Water", vector=[1.0, 0.0]),
        Theme(code="falling", label="Falling", vector=[1.0, 0.0]),
        Theme(code="flying", label="Flying", vector=at_similarity(0.8)),
        Theme(code="teeth", label="Teeth", vector=at_similarity(0.6)),
    ]
    chunks = [(0, [1.0, 0.0])]

    matches = extract_themes(chunks, themes, threshold=0.5)
    assert [m.theme_code for m in matches] == ["falling", "water", "flying", "teeth"]

    capped = extract_themes(chunks, themes, threshold=0.5, max_themes=2)
    assert [m.theme_code for m in capped] == ["falling", "water"]


def test_themes_without_matching_vector_are_ignored():
    themes = [
        Theme(code="no_vector", label="No vector"),
        Theme(code="wrong_dims", label="Wrong dims", vector=[1.0, 0.0, 0.0]),
        FALLING,
    ]
    matches = extract_themes([(0, [1.0, 0.0])], themes, threshold=0.5)
    assert [m.theme_code for m in matches] == ["falling"]


def test_similarity_is_clamped():
    matches = extract_themes([(0, [-1.0, 0.0])], [FALLING], threshold=0.0)
    assert matches[0].similarity == 0.0


def test_extract_and_store_replaces_links(db, settings):
    db.upsert_theme("falling", "Falling")
    db.save_theme_vector("falling", [1.0, 0.0, 0.0, 0.0], settings.embedding_version)
    db.upsert_theme("water", "Water")
    db.save_theme_vector("water", [0.0, 1.0, 0.0, 0.0], settings.embedding_version)

    extract_and_store_themes(db, "n1", [(0, [1.0, 0.0, 0.0, 0.0])], settings)
    assert [t["theme_code"] for t in db.get_themes("n1")] == ["falling"]

    extract_and_store_themes(db, "n1", [(0, [0.0, 1.0, 0.0, 0.0])], settings)
    themes = db.get_themes("n1")
    assert [t["theme_code"] for t in themes] == ["water"]
    assert themes[0]["label"] == "Water"
    assert themes[0]["chunk_index"] == 0


def test_get_themes_min_similarity(db, settings):
    db.upsert_theme("falling", "Falling")
    db.upsert_theme("water", "Water")
    db.replace_theme_links(
        "n1",
        [
            {"theme_code": "water", "similarity": 0.55, "chunk_index": 0},
            {"theme_code": "falling", "similarity": 0.9, "chunk_index": 2},
        ],
    )

    assert [t["theme_code"] for t in db.get_themes("n1")] == ["falling", "water"]
    assert [t["theme_code"] for t in db.get_themes("n1", min_similarity=0.6)] == ["falling"]


def test_dedupe_catalog_last_entry_wins(caplog):
    entries = [
        {"code": "falling", "label": "Falling", "description": "first"},
        {"code": "flying", "label": "Flying"},
        {"code": "falling", "label": "Falling", "description": "second"},
    ]
    with caplog.at_level(logging.WARNING):
        catalog = dedupe_catalog(entries)

    assert [e["code"] for e in catalog] == ["falling", "flying"]
    assert catalog[0]["description"] == "second"
    assert "Duplicate theme code 'falling'" in caplog.text


def test_dedupe_catalog_rejects_incomplete_entries():
    with pytest.raises(ValueError):
        dedupe_catalog([{"code": "", "label": "Nothing"}])


def test_seed_themes():
    entries = load_seed_themes()
    codes = [e["code"] for e in entries]
    assert {"falling", "flying", "being_chased", "teeth", "water", "snake"} <= set(codes)
    assert len(codes) == len(set(codes))
    assert all(e["label"] and e["description"] for e in entries)


@pytest.mark.asyncio
async def test_ingest_theme_catalog(db, settings):
    provider = FakeProvider()
    entries = [
        {"code": "falling", "label": "Falling", "description": "Dropping from heights"},
        {"code": "water", "label": "Water", "description": "Oceans and rivers", "category": "nature"},
        {"code": "water", "label": "Water", "description": "Oceans, rivers, drowning", "category": "nature"},
    ]

    result = await ingest_theme_catalog(db, provider, entries, settings=settings)

    assert result == {"themes": 2, "duplicates": 1, "embedded": 2}
    themes = {t.code: t for t in db.list_themes()}
    assert themes["water"].description == "Oceans, rivers, drowning"
    assert themes["water"].vector == pytest.approx(provider.vector_for("Water: Oceans, rivers, drowning"))
    assert themes["falling"].version == settings.embedding_version

    again = await ingest_theme_catalog(db, provider, entries, settings=settings)
    assert again["embedded"] == 0

    bumped = dataclasses.replace(settings, embedding_version="fake-v2")
    assert (await ingest_theme_catalog(db, provider, entries, settings=bumped))["embedded"] == 2
