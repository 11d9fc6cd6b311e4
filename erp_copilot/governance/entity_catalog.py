"""
Loads, parses, and caches the entity catalog YAML into strongly-typed objects.

The entity catalog is the single source of truth for:
  - which ERP models the copilot may read (and the names users call them)
  - the date / amount / state field of every entity
  - group-by aliases ("customer" -> partner_id)
  - status vocabulary used by the filter translator
  - the state-filter hint attached to state warnings
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from functools import lru_cache
from typing import Any

import yaml

from erp_copilot.core.config import get_settings


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class StatusRule:
    keywords: tuple[str, ...]
    predicates: tuple[tuple[str, str, Any], ...]

    def matches(self, text: str) -> bool:
        return any(_keyword_regex(kw).search(text) for kw in self.keywords)


@dataclass(frozen=True)
class EntityDef:
    name: str
    model: str
    description: str
    date_field: str
    amount_field: str | None = None
    state_field: str | None = None
    stateful: bool = False
    label_field: str = "name"
    line_entity: str | None = None
    aliases: tuple[str, ...] = ()
    default_fields: tuple[str, ...] = ()
    fields: tuple[str, ...] = ()
    group_aliases: dict[str, str] = field(default_factory=dict)
    statuses: dict[str, tuple[StatusRule, ...]] = field(default_factory=dict)
    state_hint: str = ""

    @property
    def known_fields(self) -> set[str]:
        """Every field name the catalog knows for this entity."""
        names = set(self.fields) | set(self.default_fields) | {self.date_field, "id", "create_date"}
        for optional in (self.amount_field, self.state_field, self.label_field):
            if optional:
                names.add(optional)
        names.update(self.group_aliases.values())
        return names

    def group_field(self, name: str) -> str:
        """Resolve a user-facing group-by name to the ERP field.

        Date groupings such as ``date_order:month`` pass through untouched.
        """
        key = name.strip().lower()
        return self.group_aliases.get(key, name.strip())


@dataclass
class EntityCatalog:
    """Fully parsed entity catalog."""

    version: int
    entities: dict[str, EntityDef]   # keyed by canonical name
    _index: dict[str, str] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        for ent in self.entities.values():
            for key in (ent.name, ent.model, *ent.aliases):
                self._index[key.strip().lower()] = ent.name

    # ── Convenience look-ups ─────────────────────────

    def resolve(self, name: str) -> EntityDef | None:
        """Find an entity by canonical name, ERP model name or alias."""
        if not name:
            return None
        canonical = self._index.get(name.strip().lower())
        return self.entities.get(canonical) if canonical else None

    def entity_names(self) -> list[str]:
        return list(self.entities.keys())

    def fields_for(self, name: str) -> set[str]:
        ent = self.resolve(name)
        return ent.known_fields if ent else set()

    def get_entities_list(self) -> list[dict[str, Any]]:
        """Return entities as a list of dicts (for API responses)."""
        return [
            {
                "name": e.name,
                "model": e.model,
                "description": e.description,
                "date_field": e.date_field,
                "amount_field": e.amount_field,
                "state_field": e.state_field,
                "stateful": e.stateful,
                "group_by": sorted(e.group_aliases),
            }
            for e in self.entities.values()
        ]


# ── Parsing ──────────────────────────────────────────────

@lru_cache(maxsize=256)
def _keyword_regex(keyword: str) -> re.Pattern[str]:
    words = r"\s+".join(re.escape(w) for w in keyword.lower().split())
    return re.compile(rf"\b{words}", re.IGNORECASE)


def _freeze(value: Any) -> Any:
    """Lists become tuples so predicates stay hashable."""
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _parse_rule(raw: dict[str, Any]) -> StatusRule:
    return StatusRule(
        keywords=tuple(str(k).lower() for k in raw.get("keywords", [])),
        predicates=tuple(
            (str(p[0]), str(p[1]), _freeze(p[2])) for p in raw.get("predicates", [])
        ),
    )


def _parse_entity(raw: dict[str, Any]) -> EntityDef:
    statuses = {
        group: tuple(_parse_rule(r) for r in rules or [])
        for group, rules in (raw.get("statuses") or {}).items()
    }
    return EntityDef(
        name=raw["name"],
        model=raw["model"],
        description=raw.get("description", ""),
        date_field=raw.get("date_field", "create_date"),
        amount_field=raw.get("amount_field"),
        state_field=raw.get("state_field"),
        stateful=bool(raw.get("stateful", False)),
        label_field=raw.get("label_field", "name"),
        line_entity=raw.get("line_entity"),
        aliases=tuple(raw.get("aliases") or []),
        default_fields=tuple(raw.get("default_fields") or []),
        fields=tuple(raw.get("fields") or []),
        group_aliases={k.lower(): v for k, v in (raw.get("group_aliases") or {}).items()},
        statuses=statuses,
        state_hint=(raw.get("state_hint") or "").strip(),
    )


def parse_catalog(raw_yaml: dict[str, Any]) -> EntityCatalog:
    entities = {e["name"]: _parse_entity(e) for e in raw_yaml.get("entities", [])}
    return EntityCatalog(version=raw_yaml.get("version", 1), entities=entities)


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_entity_catalog(path: str | None = None) -> EntityCatalog:
    """Load and cache the entity catalog from YAML."""
    catalog_path = Path(path or get_settings().entity_catalog_path)
    with open(catalog_path) as f:
        raw = yaml.safe_load(f)
    return parse_catalog(raw)
