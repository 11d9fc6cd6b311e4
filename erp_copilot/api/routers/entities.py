"""
GET /entities, GET /entities/{name} -- entity catalog metadata.
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from erp_copilot.governance.entity_catalog import load_entity_catalog

router = APIRouter()


class EntityItem(BaseModel):
    name: str
    model: str
    description: str
    date_field: str
    amount_field: str | None
    state_field: str | None
    stateful: bool
    group_by: list[str]


class EntityDetail(EntityItem):
    aliases: list[str]
    fields: list[str]
    group_aliases: dict[str, str]
    status_groups: dict[str, list[str]]
    line_entity: str | None
    state_hint: str


@router.get("", response_model=list[EntityItem])
def list_entities() -> list[EntityItem]:
    """Return every entity the copilot may read."""
    return [EntityItem(**e) for e in load_entity_catalog().get_entities_list()]


@router.get("/{name}", response_model=EntityDetail)
def entity_detail(name: str) -> EntityDetail:
    """Return one entity by name, alias or ERP model."""
    ent = load_entity_catalog().resolve(name)
    if ent is None:
        raise HTTPException(status_code=404, detail=f"Unknown entity '{name}'")
    return EntityDetail(
        name=ent.name,
        model=ent.model,
        description=ent.description,
        date_field=ent.date_field,
        amount_field=ent.amount_field,
        state_field=ent.state_field,
        stateful=ent.stateful,
        group_by=sorted(ent.group_aliases),
        aliases=list(ent.aliases),
        fields=sorted(ent.known_fields),
        group_aliases=dict(ent.group_aliases),
        status_groups={
            group: [kw for rule in rules for kw in rule.keywords] for group, rules in ent.statuses.items()
        },
        line_entity=ent.line_entity,
        state_hint=ent.state_hint,
    )
