"""
State-mix guard.

An aggregate over a stateful entity with no state predicate silently sums
drafts, confirmed and cancelled documents together.  The guard asks the ERP
for the state distribution of the same domain and, when more than one state
is present, returns a ``StateWarning`` with a narrower-filter suggestion.

The guard is advisory: it never blocks the result and never fails it.
"""
from __future__ import annotations

import httpx

from erp_copilot.copilot.filter_translator import DomainFilter
from erp_copilot.copilot.spec import StateWarning
from erp_copilot.core.logging import get_logger
from erp_copilot.erp.client import ErpClient, ErpError, display_label
from erp_copilot.governance.entity_catalog import EntityDef

logger = get_logger(__name__)


def needs_state_check(entity: EntityDef, domain: DomainFilter) -> bool:
    return bool(entity.stateful and entity.state_field and not domain.has_field(entity.state_field))


def state_distribution(client: ErpClient, entity: EntityDef, domain: DomainFilter) -> dict[str, int]:
    field = entity.state_field
    rows = client.read_group(entity.model, domain.as_rpc(), [field], [field])
    distribution: dict[str, int] = {}
    for row in rows:
        label = display_label(row.get(field))
        count = int(row.get("__count", row.get(f"{field}_count", 0)) or 0)
        distribution[label] = distribution.get(label, 0) + count
    return dict(sorted(distribution.items(), key=lambda kv: (-kv[1], kv[0])))


def check_state_mix(client: ErpClient, entity: EntityDef, domain: DomainFilter) -> StateWarning | None:
    """Return a warning when the matched set spans several lifecycle states."""
    if not needs_state_check(entity, domain):
        return None
    try:
        distribution = state_distribution(client, entity, domain)
    except (ErpError, httpx.HTTPError) as exc:
        logger.warning("State distribution for %s unavailable: %s", entity.model, exc)
        return None

    if len(distribution) <= 1:
        return None

    total = sum(distribution.values())
    parts = ", ".join(f"{state}: {n}" for state, n in distribution.items())
    logger.info("State mix on %s without state filter (%s)", entity.model, parts)
    return StateWarning(
        message=(
            f"This result mixes {len(distribution)} states of {entity.name} "
            f"({parts}) because no state filter was given."
        ),
        field=entity.state_field,
        distribution=distribution,
        total_records=total,
        suggestion=entity.state_hint or f"Add a filter on '{entity.state_field}' to narrow the result.",
    )
