"""
Field and entity name suggestions.

Used in two places:
  - the executor's self-correction retry, when the ERP rejects a group-by
    or order field as invalid (``closest_field``)
  - batch validation, to offer "did you mean" hints for unknown entities
    (``suggest_entities``)

Ranking combines edit-distance similarity, token overlap and a prefix
bonus.  Pure Python.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from erp_copilot.core.logging import get_logger
from erp_copilot.governance.entity_catalog import EntityCatalog, EntityDef

logger = get_logger(__name__)


@dataclass
class Suggestion:
    name: str
    kind: str  # "field" or "entity"
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "kind": self.kind, "score": round(self.score, 3)}


# ── Similarity helpers ──────────────────────────────────


def _levenshtein(a: str, b: str) -> int:
    """Compute Levenshtein edit distance between two strings."""
    if len(a) < len(b):
        return _levenshtein(b, a)
    if not b:
        return len(a)

    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a):
        curr = [i + 1]
        for j, cb in enumerate(b):
            cost = 0 if ca == cb else 1
            curr.append(min(curr[j] + 1, prev[j + 1] + 1, prev[j] + cost))
        prev = curr
    return prev[-1]


def _edit_sim(a: str, b: str) -> float:
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - _levenshtein(a, b) / max_len


def _tokens(text: str) -> set[str]:
    return {t for t in text.lower().replace("_", " ").replace(".", " ").split() if t}


def _jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    return len(a & b) / len(union) if union else 1.0


def _score(query: str, name: str) -> float:
    """Composite similarity: 0.65 edit distance, 0.25 token overlap, 0.10 prefix bonus."""
    q = query.lower().strip()
    n = name.lower().strip()
    prefix = 1.0 if n.startswith(q) or q.startswith(n) else 0.0
    return 0.65 * _edit_sim(q, n) + 0.25 * _jaccard(_tokens(q), _tokens(n)) + 0.10 * prefix


def _rank(query: str, candidates: Iterable[str], kind: str, min_score: float) -> list[Suggestion]:
    ranked = [Suggestion(c, kind, _score(query, c)) for c in set(candidates)]
    ranked = [s for s in ranked if s.score >= min_score]
    ranked.sort(key=lambda s: (-s.score, s.name))
    return ranked


# ── Public API ──────────────────────────────────────────


def suggest_fields(query: str, entity: EntityDef, top_k: int = 3, min_score: float = 0.5) -> list[Suggestion]:
    return _rank(query, entity.known_fields, "field", min_score)[:top_k]


def closest_field(query: str, entity: EntityDef, min_score: float = 0.5) -> str | None:
    """Best known field for a rejected field name, or ``None``.

    Date-grouping suffixes (``date_order:month``) are kept on the corrected name.
    """
    base, sep, suffix = query.partition(":")
    if base in entity.known_fields:
        return None
    ranked = suggest_fields(base, entity, top_k=1, min_score=min_score)
    if not ranked:
        return None
    fixed = ranked[0].name + (sep + suffix if sep else "")
    logger.info("Suggesting field '%s' for '%s' on %s", fixed, query, entity.name)
    return fixed


def suggest_entities(query: str, catalog: EntityCatalog, top_k: int = 3, min_score: float = 0.45) -> list[Suggestion]:
    names: list[str] = []
    for ent in catalog.entities.values():
        names.extend((ent.name, *ent.aliases))
    ranked = _rank(query, names, "entity", min_score)
    out: list[Suggestion] = []
    seen: set[str] = set()
    for s in ranked:
        canonical = catalog.resolve(s.name).name
        if canonical not in seen:
            seen.add(canonical)
            out.append(Suggestion(canonical, "entity", s.score))
    return out[:top_k]
