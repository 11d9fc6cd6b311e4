"""
Request / result models exchanged between the tool-calling loop and the
query engine.

JSON payloads use camelCase keys (``filterText``, ``groupBy``); Python code
uses the snake_case attribute names.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Operation = Literal["search", "count", "aggregate", "discover", "distinct", "inspect"]
CompareMode = Literal["month-over-month", "year-over-year"]
Trend = Literal["up", "down", "flat"]

OPERATIONS: tuple[str, ...] = ("search", "count", "aggregate", "discover", "distinct", "inspect")

_COMPARE_SHORTHAND = {
    "mom": "month-over-month",
    "month_over_month": "month-over-month",
    "yoy": "year-over-year",
    "year_over_year": "year-over-year",
}


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Request side ────────────────────────────────────────


class DateRange(_Model):
    start: dt.date
    end: dt.date
    label: str | None = None


class SubQuerySpec(_Model):
    """One structured sub-query proposed by the language model."""

    id: str = Field(..., description="Unique within a batch; correlates partial results")
    entity: str = Field(..., description="Entity name, alias or ERP model (e.g. 'orders')")
    # Kept as a plain string so unknown operations reach batch validation
    # and become a clarification instead of a schema error.
    operation: str = Field("search", description="search | count | aggregate | discover | distinct | inspect")
    filter_text: str | None = Field(None, description="Natural-language filter phrase")
    explicit_date_range: DateRange | None = None
    group_by: list[str] = Field(default_factory=list)
    limit: int | None = None
    order_by: str | None = None
    compare_mode: CompareMode | None = None

    @field_validator("group_by", mode="before")
    @classmethod
    def _coerce_group_by(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("compare_mode", mode="before")
    @classmethod
    def _expand_shorthand(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _COMPARE_SHORTHAND.get(v.strip().lower(), v.strip().lower())
        return v

    @field_validator("operation", mode="before")
    @classmethod
    def _lower_operation(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class ToolRequest(_Model):
    """The single tool invocation carrying a batch of sub-queries."""

    queries: list[SubQuerySpec]
    include_comparison: bool = False
    include_insights: bool = True


# ── Result side ─────────────────────────────────────────


class GroupTotals(_Model):
    count: int = 0
    total: float = 0.0


class StateWarning(_Model):
    message: str
    field: str
    distribution: dict[str, int]
    total_records: int
    suggestion: str


class QueryResult(_Model):
    query_id: str
    success: bool
    records: list[dict[str, Any]] | None = None
    count: int | None = None
    total: float | None = None
    grouped: dict[str, GroupTotals] | None = None
    state_warning: StateWarning | None = None
    cached: bool = False
    execution_ms: int = 0
    error: str | None = None

    @property
    def is_empty(self) -> bool:
        if not self.success:
            return False
        if self.grouped:
            return False
        if self.records:
            return False
        return not (self.count or self.total)


class Variation(_Model):
    absolute: float
    percent: float | None = None
    trend: Trend = "flat"
    label: str = ""
    indeterminate: bool = False


class LabelVariation(_Model):
    label: str
    current: float
    previous: float
    variation: Variation


class ComparisonResult(_Model):
    query_id: str
    current_total: float
    previous_total: float
    current_grouped: dict[str, GroupTotals] = Field(default_factory=dict)
    previous_grouped: dict[str, GroupTotals] = Field(default_factory=dict)
    variation: Variation
    period_labels: dict[str, str]
    windows: dict[str, DateRange]
    by_label: list[LabelVariation] = Field(default_factory=list)
    declining: list[str] = Field(default_factory=list)
    new_labels: list[str] = Field(default_factory=list)
    lost_labels: list[str] = Field(default_factory=list)


class Insight(_Model):
    kind: str
    text: str
    priority: int = 0


class GroundingIssue(_Model):
    kind: Literal["name", "amount", "period", "zero", "reasoning", "failure"]
    token: str = ""
    detail: str = ""


class ValidationVerdict(_Model):
    is_clean: bool
    issues: list[GroundingIssue] = Field(default_factory=list)
    ground_truth_names: list[str] = Field(default_factory=list)
    repaired_answer: str | None = None


class QueryMetadata(_Model):
    query_id: str
    entity: str
    model: str | None = None
    operation: str
    filter_text: str | None = None
    domain: list[Any] = Field(default_factory=list)
    cached: bool = False
    success: bool = False


class ChartDataset(_Model):
    label: str
    data: list[float]


class ChartData(_Model):
    type: Literal["bar", "line"]
    title: str
    labels: list[str]
    datasets: list[ChartDataset]


class ToolResult(_Model):
    """Merged answer handed back to the drafting model."""

    success: bool
    data: list[dict[str, Any]] | None = None
    count: int = 0
    total: float | None = None
    grouped: dict[str, GroupTotals] | None = None
    comparison: ComparisonResult | None = None
    comparisons: list[ComparisonResult] = Field(default_factory=list)
    insights: list[Insight] = Field(default_factory=list)
    chart_data: ChartData | None = None
    state_warning: StateWarning | None = None
    cached: bool = False
    execution_ms: int = 0
    query_metadata: list[QueryMetadata] = Field(default_factory=list, alias="query_metadata")
    results: list[QueryResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    clarification: str | None = None


class ValidateRequest(_Model):
    """Body of the grounding-check endpoint."""

    answer: str
    question: str = ""
    result: ToolResult | None = None
