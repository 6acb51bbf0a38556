"""
Pydantic models for the AskGraph query engine.

Contains data models for search conditions, compiled plans, result items,
stored result sets and tool responses.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import SecurityMode
from .utils import sanitize_regex

ConditionKind = Literal["text", "node_ref", "entry_ref", "regex"]
MatchMode = Literal["exact", "contains", "regex"]
Combinator = Literal["AND", "OR"]
SearchScope = Literal["block", "content"]
ExpansionStrategy = Literal[
    "fuzzy", "synonyms", "related_concepts", "broader_terms", "all", "custom"
]
AttributeValueType = Literal["text", "node_ref", "regex"]
SetOperation = Literal["union", "intersection", "difference", "symmetric_difference"]
StorePurpose = Literal["final", "intermediate", "replacement", "completion"]
StoreStatus = Literal["active", "stale"]
SortBy = Literal["relevance", "recent", "creation", "modification", "alphabetical", "random"]
DateMode = Literal["created", "modified", "either"]


# ============== Conditions ==============

class Condition(BaseModel):
    """A single search condition over entry content or references."""

    model_config = ConfigDict(frozen=True)

    kind: ConditionKind = "text"
    value: str
    negated: bool = False
    weight: float = 1.0
    match_mode: MatchMode = "contains"
    expansion_strategy: ExpansionStrategy | None = None
    # Set on conditions generated by expansion
    matched_term: str | None = None
    expansion_level: int = 0

    @field_validator("value")
    @classmethod
    def value_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("condition value must not be empty")
        return v

    @model_validator(mode="after")
    def check_regex(self) -> Condition:
        if self.kind == "regex" or self.match_mode == "regex":
            pattern, _ = sanitize_regex(self.value)
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"invalid regex {self.value!r}: {e}") from e
        return self

    @property
    def is_regex(self) -> bool:
        return self.kind == "regex" or (self.kind == "text" and self.match_mode == "regex")

    @property
    def label(self) -> str:
        prefix = "NOT " if self.negated else ""
        if self.kind == "node_ref":
            return f"{prefix}[[{self.value}]]"
        if self.kind == "entry_ref":
            return f"{prefix}(({self.value}))"
        if self.is_regex:
            return f"{prefix}/{self.value}/"
        return f"{prefix}{self.value}"


class AttributeValue(BaseModel):
    """A typed value inside an attribute condition."""

    model_config = ConfigDict(frozen=True)

    value: str
    operator: Literal["+", "|", "-"] = "+"
    # Expanded alternatives, any of which satisfies the value
    alternatives: tuple[str, ...] = ()


class AttributeCondition(BaseModel):
    """Condition over a `key:: value` attribute entry."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["attribute"] = "attribute"
    key: str
    value_type: AttributeValueType = "text"
    values: list[AttributeValue]
    negated: bool = False
    weight: float = 1.0

    @property
    def label(self) -> str:
        parts = [f"{v.operator}{v.value}" for v in self.values]
        return f"{self.key}::{' '.join(parts)}"


AnyCondition = Union[Condition, AttributeCondition]


class ConditionGroup(BaseModel):
    """A boolean group of conditions or nested groups."""

    combinator: Combinator = "AND"
    children: list[Union[Condition, ConditionGroup]]


class ParseError(BaseModel):
    """Structured error returned by the pure parsers."""

    text: str
    reason: str


class ScopeSyntax(BaseModel):
    """Result of parsing `page:(content:...)` / `page:(block:(...))` syntax."""

    scope: SearchScope
    expression: str


# ============== Expansion ==============

class ExpansionRequest(BaseModel):
    """A request for alternative terms for one condition."""

    model_config = ConfigDict(frozen=True)

    condition: Condition
    strategy: ExpansionStrategy
    hints: dict[str, Any] = Field(default_factory=dict)


class ExpansionResult(BaseModel):
    """Generated terms for one expansion request."""

    request: ExpansionRequest
    terms: list[str] = Field(default_factory=list)
    error: str | None = None


class ExpansionOptions(BaseModel):
    """Caller options controlling semantic expansion."""

    strategy: ExpansionStrategy | None = None
    automatic: bool | None = None
    min_results_threshold: int | None = None
    max_expansions: int = 3
    custom_terms: list[str] = Field(default_factory=list)


# ============== Results ==============

class HierarchyItem(BaseModel):
    """A parent or child entry attached to a result."""

    id: str
    content: str | None = None
    depth: int = 1
    order: int = 0


class ResultItem(BaseModel):
    """A single entry or node returned by a search."""

    id: str
    parent_node_id: str | None = None
    node_title: str | None = None
    created: datetime | None = None
    modified: datetime | None = None
    is_node: bool = False
    is_leaf_of_interest: bool = True
    is_daily: bool = False
    content: str | None = None
    children: list[HierarchyItem] | None = None
    parents: list[HierarchyItem] | None = None
    score: float = 0.0
    weight: float = 1.0
    matched_term: str | None = None
    expansion_used: list[str] = Field(default_factory=list)
    expansion_level: int = 0
    matched_conditions: list[str] = Field(default_factory=list)
    source_result_ids: list[str] = Field(default_factory=list)


class ResultScope(BaseModel):
    """Node and entry identifiers a follow-up search is restricted to."""

    model_config = ConfigDict(frozen=True)

    node_ids: tuple[str, ...] = ()
    entry_ids: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.node_ids and not self.entry_ids


class ResultStoreEntry(BaseModel):
    """A result set registered in the conversation's result store."""

    model_config = ConfigDict(frozen=True)

    result_id: str
    tool_name: str
    items: list[ResultItem]
    purpose: StorePurpose = "final"
    status: StoreStatus = "active"
    turn: int = 0
    selection: str | None = None
    truncated: bool = False
    total_count: int = 0
    timestamp: datetime
    replaces: str | None = None


# ============== Query plans ==============

class QueryPlan(BaseModel):
    """A compiled query ready to send to a graph executor."""

    model_config = ConfigDict(frozen=True)

    text: str
    scope: SearchScope
    variables: tuple[str, ...]
    combinator: Combinator = "AND"
    conditions: tuple[Condition, ...] = ()
    optimizations: tuple[str, ...] = ()
    # Independent per-condition reads whose node sets are intersected
    sub_plans: tuple[QueryPlan, ...] = ()
    # Per-condition reads whose node sets are subtracted
    exclusion_plans: tuple[QueryPlan, ...] = ()


# ============== Requests and responses ==============

class DateRange(BaseModel):
    """Inclusive date window applied to created or modified times."""

    start: datetime | None = None
    end: datetime | None = None
    mode: DateMode = "modified"


class RandomSample(BaseModel):
    """Seeded random sampling parameters."""

    size: int = Field(gt=0)
    seed: int | None = None


class SearchRequest(BaseModel):
    """Input of the search pipeline."""

    conditions: list[AnyCondition] = Field(default_factory=list)
    combinator: Combinator = "AND"
    groups: ConditionGroup | None = None
    attribute_conditions: list[str] = Field(default_factory=list)
    scope: SearchScope = "block"
    include_daily: bool = True
    exclude_id: str | None = None
    from_result_id: str | None = None
    date_range: DateRange | None = None
    sort_by: SortBy = "relevance"
    sort_order: Literal["asc", "desc"] | None = None
    limit: int | None = Field(default=None, gt=0)
    random_sample: RandomSample | None = None
    seed: int | None = None
    fuzzy_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    include_children: bool | None = None
    include_parents: bool | None = None
    expansion: ExpansionOptions = Field(default_factory=ExpansionOptions)
    user_query: str = ""
    purpose: StorePurpose = "final"
    replaces: str | None = None

    @model_validator(mode="after")
    def check_conditions(self) -> SearchRequest:
        if not self.conditions and self.groups is None and not self.attribute_conditions:
            raise ValueError("at least one condition, group or attribute condition is required")
        return self


class SearchGuidance(BaseModel):
    """Hints for the agent about how to refine a search."""

    result_quality: Literal["no_results", "sparse", "good", "abundant"]
    suggestions: list[str] = Field(default_factory=list)
    expandable: bool = False


class ResultMetadata(BaseModel):
    """Metadata describing a processed result set."""

    total_found: int = 0
    returned_count: int = 0
    was_limited: bool = False
    can_expand_results: bool = False
    sort_applied: SortBy | None = None
    sampling_applied: bool = False
    result_mode: SecurityMode = "balanced"
    expansion_applied: list[str] = Field(default_factory=list)
    execution_time_ms: float = 0.0
    search_guidance: SearchGuidance | None = None


class ToolResponse(BaseModel):
    """Uniform response returned by every tool."""

    success: bool
    result_id: str | None = None
    results: list[ResultItem] = Field(default_factory=list)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    query: str | None = None


ConditionGroup.model_rebuild()
QueryPlan.model_rebuild()
SearchRequest.model_rebuild()
