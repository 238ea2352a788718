"""Catalog content types: dream themes and reference fragments."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Theme:
    """A catalog concept (e.g. "falling") matched against narrative chunks."""

    code: str
    label: str
    description: str = ""
    category: str | None = None
    vector: list[float] | None = None
    sparse: Any = None  # token -> weight map; validated where it is used
    version: str | None = None

    def embedding_text(self) -> str:
        """Text sent to the embedding provider for this theme."""
        if self.description:
            return f"{self.label}: {self.description}"
        return self.label

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "label": self.label,
            "description": self.description,
            "category": self.category,
            "has_vector": self.vector is not None,
            "version": self.version,
        }


@dataclass(frozen=True)
class ReferenceFragment:
    """A unit of source material that retrieval can return."""

    id: int
    text: str
    key: str | None = None
    collection: str | None = None  # corpus, e.g. "jung"
    source: str | None = None
    chapter: str | None = None
    vector: list[float] | None = None
    sparse: Any = None
    tags: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "collection": self.collection,
            "source": self.source,
            "chapter": self.chapter,
            "text": self.text,
            "tags": sorted(self.tags),
        }
