"""
Validates a batch of sub-queries against the entity catalog.

Checks performed:
  1. The batch is non-empty and holds at most ``max_batch_size`` queries
  2. Query ids are present and unique within the batch
  3. Every entity resolves in the catalog
  4. Every operation is supported
  5. ``distinct`` carries a groupBy field
  6. Explicit date ranges are ordered (start <= end)
  7. Limits are positive and within ``max_limit``
"""
from __future__ import annotations

from typing import Sequence

from erp_copilot.copilot.spec import OPERATIONS, SubQuerySpec
from erp_copilot.copilot.suggestions import suggest_entities
from erp_copilot.core.config import Settings, get_settings
from erp_copilot.governance.entity_catalog import EntityCatalog, load_entity_catalog


def validate_batch(
    specs: Sequence[SubQuerySpec],
    catalog: EntityCatalog | None = None,
    settings: Settings | None = None,
) -> list[str]:
    """Return a list of validation error messages (empty list = batch is valid)."""
    if catalog is None:
        catalog = load_entity_catalog()
    s = settings or get_settings()

    errors: list[str] = []

    if not specs:
        errors.append("Empty batch: at least one query is required.")
        return errors

    if len(specs) > s.max_batch_size:
        errors.append(f"Too many queries: {len(specs)} given, at most {s.max_batch_size} allowed per batch.")

    seen: set[str] = set()
    for spec in specs:
        if not spec.id.strip():
            errors.append("Every query needs a non-empty id.")
        elif spec.id in seen:
            errors.append(f"Duplicate query id '{spec.id}'.")
        seen.add(spec.id)

    for spec in specs:
        prefix = f"Query '{spec.id}':"

        if catalog.resolve(spec.entity) is None:
            hints = [h.name for h in suggest_entities(spec.entity, catalog)]
            hint = f" Did you mean: {', '.join(hints)}?" if hints else ""
            errors.append(
                f"{prefix} unknown entity '{spec.entity}'. "
                f"Allowed: {', '.join(catalog.entity_names())}.{hint}"
            )

        if spec.operation not in OPERATIONS:
            errors.append(f"{prefix} unknown operation '{spec.operation}'. Allowed: {', '.join(OPERATIONS)}.")
        elif spec.operation == "distinct" and not spec.group_by:
            errors.append(f"{prefix} operation 'distinct' requires a groupBy field.")

        rng = spec.explicit_date_range
        if rng is not None and rng.start > rng.end:
            errors.append(f"{prefix} date range starts ({rng.start}) after it ends ({rng.end}).")

        if spec.limit is not None and not 0 < spec.limit <= s.max_limit:
            errors.append(f"{prefix} limit {spec.limit} outside the allowed range 1..{s.max_limit}.")

    return errors
