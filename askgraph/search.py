"""
Search pipeline for the AskGraph query engine.

Orchestrates a search end to end: condition preparation, semantic expansion,
compilation, bounded concurrent execution, attribute evaluation, result
processing and registration in the result store.
"""

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog

from .cache import ResultStore
from .compiler import (
    attribute_query,
    children_query,
    compile_search,
    group_leaves,
    map_leaves,
    node_entries_query,
)
from .config import AUTOMATIC_EXPANSION_SEQUENCE, SecurityMode, settings
from .expansion import EXPANDABLE_KINDS, ExpansionEngine, TermGenerator
from .graph import GraphExecutor
from .models import (
    AttributeCondition,
    Condition,
    ConditionGroup,
    ExpansionRequest,
    ExpansionStrategy,
    ParseError,
    ResultItem,
    ResultMetadata,
    ResultScope,
    SearchRequest,
    SetOperation,
    ToolResponse,
)
from .parser import extract_user_requested_limit, parse_attribute_condition, parse_semantic_suffix
from .processor import (
    annotate,
    apply_limits,
    apply_security_mode,
    attribute_value_matches,
    attribute_value_text,
    enrich_hierarchy,
    entry_items_from_rows,
    filter_by_date_range,
    fuzzy_filter,
    hierarchy_config,
    items_from_rows,
    sample_items,
    score_items,
    search_guidance,
    sort_items,
)
from .utils import (
    CancellationToken,
    CompilationError,
    ExecutionError,
    ResultNotFoundError,
    SearchCancelled,
    gather_bounded,
)

logger = structlog.get_logger(__name__)

SEARCH_TOOL_NAME = "graph_search"
COMBINE_TOOL_NAME = "graph_combine_results"


@dataclass
class SearchContext:
    """Per-conversation state shared by every search."""

    store: ResultStore
    executor: GraphExecutor
    expansion: ExpansionEngine
    security_mode: SecurityMode = field(default_factory=lambda: settings.security_mode)

    @classmethod
    def create(
        cls,
        executor: GraphExecutor,
        generator: TermGenerator | None = None,
        **kwargs: Any,
    ) -> "SearchContext":
        return cls(store=ResultStore(), executor=executor, expansion=ExpansionEngine(generator), **kwargs)

    async def run_query(self, text: str, cancel: CancellationToken | None = None) -> list[list[Any]]:
        """Run one read through the executor with timeout and cancellation.

        Raises:
            ExecutionError: If the executor fails, rejects the query or times out
            SearchCancelled: If the token fires first
        """
        call = asyncio.wait_for(self.executor.execute(text), timeout=settings.query_timeout)
        try:
            if cancel is not None:
                return await cancel.run(call)
            return await call
        except (SearchCancelled, ExecutionError):
            raise
        except asyncio.TimeoutError:
            raise ExecutionError("query timed out", query=text) from None
        except Exception as e:
            raise ExecutionError(str(e), query=text) from e


@dataclass
class _Prepared:
    tree: ConditionGroup | None
    attributes: list[AttributeCondition]
    warnings: list[str]


# ============== Condition Preparation ==============

def _prepare_condition(condition: Condition, default_strategy: ExpansionStrategy | None) -> Condition:
    if condition.kind not in EXPANDABLE_KINDS or condition.is_regex:
        return condition
    value, strategy = parse_semantic_suffix(condition.value, default_strategy)
    strategy = strategy or condition.expansion_strategy or default_strategy
    if value == condition.value and strategy == condition.expansion_strategy:
        return condition
    return condition.model_copy(update={"value": value, "expansion_strategy": strategy})


def _drop_attribute(parsed: ParseError, warnings: list[str]) -> None:
    logger.warning("attribute_condition_dropped", text=parsed.text, reason=parsed.reason)
    warnings.append(f"Failed to parse attribute condition '{parsed.text}': {parsed.reason}")


def prepare_conditions(request: SearchRequest) -> _Prepared:
    """Split attribute conditions off, parse suffixes and build the tree."""
    default_strategy = request.expansion.strategy
    warnings: list[str] = []
    attributes: list[AttributeCondition] = []
    regular: list[Condition | ConditionGroup] = []

    for condition in request.conditions:
        if isinstance(condition, AttributeCondition):
            attributes.append(condition)
        elif condition.kind == "text" and condition.value.startswith("attr:"):
            parsed = parse_attribute_condition(condition.value)
            if isinstance(parsed, AttributeCondition):
                attributes.append(parsed.model_copy(update={"negated": condition.negated}))
            else:
                _drop_attribute(parsed, warnings)
        else:
            regular.append(condition)

    for text in request.attribute_conditions:
        parsed = parse_attribute_condition(text)
        if isinstance(parsed, AttributeCondition):
            attributes.append(parsed)
        else:
            _drop_attribute(parsed, warnings)

    if request.groups is not None:
        regular.append(request.groups)

    tree = None
    if regular:
        tree = map_leaves(
            ConditionGroup(combinator=request.combinator, children=regular),
            partial(_prepare_condition, default_strategy=default_strategy),
        )
    return _Prepared(tree=tree, attributes=attributes, warnings=warnings)


# ============== Expansion ==============

async def _expand_tree(
    tree: ConditionGroup,
    context: SearchContext,
    request: SearchRequest,
    cancel: CancellationToken,
    *,
    strategy: ExpansionStrategy | None = None,
    level: int = 1,
) -> tuple[ConditionGroup, list[str], list[str], list[str]]:
    """Expand every expandable leaf, with its own strategy or the one given.

    Returns:
        Tuple of (expanded tree, expansion terms, strategies applied, warnings)
    """
    requests: dict[tuple, ExpansionRequest] = {}
    for leaf in group_leaves(tree):
        leaf_strategy = strategy or leaf.expansion_strategy
        if leaf.kind not in EXPANDABLE_KINDS or leaf.is_regex or not leaf_strategy:
            continue
        hints: dict[str, Any] = {"user_query": request.user_query}
        if leaf_strategy == "custom":
            hints["custom_terms"] = list(request.expansion.custom_terms)
        key = (leaf.kind, leaf.value, leaf.negated)
        requests.setdefault(key, ExpansionRequest(condition=leaf, strategy=leaf_strategy, hints=hints))

    if not requests:
        return tree, [], [], []

    results = await context.expansion.generate_many(list(requests.values()), cancel)
    warnings = [r.error for r in results if r.error]
    terms_by_key = {key: result.terms for key, result in zip(requests, results)}
    used = [term for result in results for term in result.terms]
    applied = list(dict.fromkeys(r.request.strategy for r in results if r.terms))

    def merge(leaf: Condition) -> Condition | ConditionGroup:
        terms = terms_by_key.get((leaf.kind, leaf.value, leaf.negated))
        if not terms:
            return leaf
        return context.expansion.merge(leaf, terms, level)

    return map_leaves(tree, merge), used, applied, warnings


# ============== Execution ==============

def _node_id(item: ResultItem) -> str | None:
    return item.id if item.is_node else item.parent_node_id


async def _execute_tree(
    tree: ConditionGroup,
    request: SearchRequest,
    restrict: ResultScope | None,
    context: SearchContext,
    cancel: CancellationToken,
) -> tuple[list[ResultItem], str]:
    plan = compile_search(
        tree,
        scope=request.scope,
        include_daily=request.include_daily,
        exclude_id=request.exclude_id,
        restrict=restrict,
    )
    run = partial(context.run_query, cancel=cancel)

    if not plan.sub_plans:
        rows = await run(plan.text)
        return items_from_rows(rows, plan.scope), plan.text

    # Independent per-condition reads, intersected by node
    reads = [p.text for p in plan.sub_plans + plan.exclusion_plans]
    results = await gather_bounded((run(text) for text in reads), settings.max_concurrent_queries)
    positive = results[:len(plan.sub_plans)]
    negative = results[len(plan.sub_plans):]

    common = set.intersection(*({row[0] for row in rows} for rows in positive))
    for rows in negative:
        common -= {row[0] for row in rows}
    kept = [row for row in positive[0] if row[0] in common]
    logger.debug("content_intersection", reads=len(reads), nodes=len(kept))
    return items_from_rows(kept, plan.scope), plan.text


async def _attribute_matches(
    condition: AttributeCondition,
    request: SearchRequest,
    restrict: ResultScope | None,
    context: SearchContext,
    cancel: CancellationToken,
) -> list[ResultItem]:
    """Entries declaring the attribute whose value satisfies the condition.

    Attribute entries with an empty value are matched through their
    direct children.
    """
    rows = await context.run_query(
        attribute_query(condition.key, include_daily=request.include_daily, restrict=restrict), cancel
    )
    entries = entry_items_from_rows(rows)
    matched: list[ResultItem] = []
    empty: list[ResultItem] = []
    for entry in entries:
        value = attribute_value_text(entry.content or "")
        if not value:
            empty.append(entry)
        elif attribute_value_matches(value, condition.values, condition.value_type):
            matched.append(entry)

    if empty:
        child_rows = await context.run_query(children_query([e.id for e in empty]), cancel)
        by_parent: dict[str, list[str]] = {}
        for parent_uid, _, content, _ in child_rows:
            by_parent.setdefault(parent_uid, []).append(content)
        for entry in empty:
            if any(
                attribute_value_matches(text, condition.values, condition.value_type)
                for text in by_parent.get(entry.id, [])
            ):
                matched.append(entry)
    return matched


async def _apply_attributes(
    items: list[ResultItem] | None,
    prepared: _Prepared,
    request: SearchRequest,
    restrict: ResultScope | None,
    context: SearchContext,
    cancel: CancellationToken,
) -> tuple[list[ResultItem], list[str]]:
    """Combine attribute matches with the regular results by node."""
    expanded = []
    warnings: list[str] = []
    for condition in prepared.attributes:
        condition, attr_warnings = await context.expansion.expand_attribute(
            condition, request.expansion.strategy, cancel
        )
        expanded.append(condition)
        warnings.extend(attr_warnings)

    matches = await gather_bounded(
        (_attribute_matches(c, request, restrict, context, cancel) for c in expanded),
        settings.max_concurrent_queries,
    )

    positive = [found for c, found in zip(expanded, matches) if not c.negated]
    positive_sets = [{_node_id(e) for e in found} for found in positive]
    negative_nodes: set[str | None] = set()
    for c, found in zip(expanded, matches):
        if c.negated:
            negative_nodes.update(_node_id(e) for e in found)

    def as_scope_item(entry: ResultItem) -> ResultItem:
        if request.scope == "block":
            return entry
        return ResultItem(
            id=entry.parent_node_id, node_title=entry.node_title, is_node=True,
            is_leaf_of_interest=False, is_daily=entry.is_daily,
        )

    if items is None:
        # Attribute-only search: every positive attribute must hold
        candidates = [as_scope_item(e) for found in positive for e in found]
        result = [item for item in candidates if all(_node_id(item) in nodes for nodes in positive_sets)]
    elif request.combinator == "OR":
        result = list(items) + [as_scope_item(e) for found in positive for e in found]
    else:
        result = [item for item in items if all(_node_id(item) in nodes for nodes in positive_sets)]

    seen: set[str] = set()
    kept = []
    for item in result:
        if item.id in seen or _node_id(item) in negative_nodes:
            continue
        seen.add(item.id)
        kept.append(item)
    return kept, warnings


async def _node_entries(items: list[ResultItem], context: SearchContext, cancel: CancellationToken) -> dict[str, list[str]]:
    node_ids = [item.id for item in items if item.is_node]
    if not node_ids:
        return {}
    rows = await context.run_query(node_entries_query(node_ids), cancel)
    entries: dict[str, list[str]] = {}
    for node_uid, _, content in rows:
        entries.setdefault(node_uid, []).append(content)
    return entries


# ============== Pipeline ==============

async def _run_search(
    request: SearchRequest,
    context: SearchContext,
    tool_name: str,
    cancel: CancellationToken,
    warnings: list[str],
) -> ToolResponse:
    start_time = time.perf_counter()
    restrict = context.store.scope_from(request.from_result_id) if request.from_result_id else None
    prepared = prepare_conditions(request)
    warnings.extend(prepared.warnings)

    options = request.expansion
    threshold = options.min_results_threshold
    automatic = options.automatic if options.automatic is not None else settings.automatic_expansion
    expansion_applied: list[str] = []
    expansion_terms: list[str] = []
    tree = prepared.tree
    query_text = None

    if tree is None and not prepared.attributes:
        raise CompilationError("no usable conditions")

    explicit = tree is not None and any(
        leaf.expansion_strategy for leaf in group_leaves(tree) if leaf.kind in EXPANDABLE_KINDS
    )

    async def expand(current: ConditionGroup, strategy: ExpansionStrategy | None, level: int) -> ConditionGroup | None:
        expanded, terms, applied, expand_warnings = await _expand_tree(
            current, context, request, cancel, strategy=strategy, level=level
        )
        warnings.extend(expand_warnings)
        if not terms:
            return None
        expansion_terms.extend(t for t in terms if t not in expansion_terms)
        expansion_applied.extend(s for s in applied if s not in expansion_applied)
        return expanded

    items: list[ResultItem] | None = None
    if tree is not None:
        base_tree = tree
        # Explicit strategy without threshold: expand up front
        if explicit and threshold is None:
            tree = await expand(base_tree, None, 1) or base_tree
        items, query_text = await _execute_tree(tree, request, restrict, context, cancel)

        minimum = threshold or settings.min_results_threshold
        if explicit and threshold is not None and len(items) < threshold:
            expanded = await expand(base_tree, None, 1)
            if expanded is not None:
                tree = expanded
                items, query_text = await _execute_tree(tree, request, restrict, context, cancel)
        elif not explicit and automatic and len(items) < minimum:
            for level, strategy in enumerate(AUTOMATIC_EXPANSION_SEQUENCE, start=1):
                expanded = await expand(base_tree, strategy, level)
                if expanded is None:
                    continue
                tree = expanded
                items, query_text = await _execute_tree(tree, request, restrict, context, cancel)
                if len(items) >= minimum:
                    break

    if prepared.attributes:
        items, attr_warnings = await _apply_attributes(items, prepared, request, restrict, context, cancel)
        warnings.extend(attr_warnings)

    conditions = group_leaves(tree) if tree is not None else []
    node_entries = await _node_entries(items, context, cancel) if request.scope == "content" else {}
    items = annotate(items, conditions, expansion_terms, node_entries)
    items = filter_by_date_range(items, request.date_range)
    if request.fuzzy_threshold is not None:
        items = fuzzy_filter(items, conditions, request.fuzzy_threshold)
    items = score_items(items, conditions, node_entries)
    total_found = len(items)

    user_limit = extract_user_requested_limit(request.user_query)
    limit = user_limit or request.limit
    sampling_applied = False
    if request.random_sample is not None:
        sample = request.random_sample
        items = sample_items(items, sample.size, sample.seed if sample.seed is not None else request.seed)
        sampling_applied = len(items) < total_found
        limit = limit or sample.size
    else:
        items = sort_items(items, request.sort_by, request.sort_order, request.seed)
    items, was_limited = apply_limits(items, context.security_mode, limit)
    was_limited = was_limited or sampling_applied

    if request.scope == "block":
        config = hierarchy_config(total_found, request.user_query, request.include_children, request.include_parents)
        if config is not None:
            items = await enrich_hierarchy(items, config, partial(context.run_query, cancel=cancel))
    items = apply_security_mode(items, context.security_mode)

    cancel.raise_if_cancelled()
    result_id = context.store.put(
        tool_name,
        items,
        purpose=request.purpose,
        total_count=total_found,
        truncated=was_limited,
        replaces=request.replaces,
    )

    guidance_threshold = threshold or settings.min_results_threshold
    metadata = ResultMetadata(
        total_found=total_found,
        returned_count=len(items),
        was_limited=was_limited,
        can_expand_results=was_limited or (total_found < max(guidance_threshold, 3) and not expansion_applied),
        sort_applied=None if request.random_sample is not None else request.sort_by,
        sampling_applied=sampling_applied,
        result_mode=context.security_mode,
        expansion_applied=expansion_applied,
        execution_time_ms=round((time.perf_counter() - start_time) * 1000, 2),
        search_guidance=search_guidance(len(items), was_limited, request.scope),
    )
    logger.info("search_completed", tool=tool_name, result_id=result_id,
                total=total_found, returned=len(items), expansions=expansion_applied)
    return ToolResponse(
        success=True, result_id=result_id, results=items, metadata=metadata,
        warnings=warnings, query=query_text,
    )


async def search(
    request: SearchRequest,
    context: SearchContext,
    *,
    tool_name: str = SEARCH_TOOL_NAME,
    cancel: CancellationToken | None = None,
) -> ToolResponse:
    """Run a search and register its results.

    Compilation failures and unknown result ids come back as unsuccessful
    responses. Execution failures and cancellation roll the result store back
    and propagate so the caller can retry or abandon.

    Raises:
        ExecutionError: If the graph executor fails or rejects a query
        SearchCancelled: If the cancellation token fires
    """
    cancel = cancel or CancellationToken()
    snapshot = context.store.snapshot()
    warnings: list[str] = []
    try:
        return await _run_search(request, context, tool_name, cancel, warnings)
    except SearchCancelled:
        context.store.restore(snapshot)
        logger.info("search_cancelled", tool=tool_name)
        raise
    except ExecutionError as e:
        context.store.restore(snapshot)
        logger.warning("search_execution_failed", tool=tool_name, error=str(e))
        raise
    except CompilationError as e:
        logger.warning("search_compilation_failed", tool=tool_name, error=str(e), condition=e.condition)
        detail = f"{e} ({e.condition})" if e.condition else str(e)
        return ToolResponse(success=False, error=f"Compilation error: {detail}", warnings=warnings)
    except ResultNotFoundError as e:
        logger.warning("search_scope_missing", tool=tool_name, result_id=e.result_id)
        return ToolResponse(success=False, error=str(e), warnings=warnings)


def combine_results(
    context: SearchContext,
    operation: SetOperation,
    result_ids: Sequence[str],
    *,
    deduplicate: bool = True,
    preserve_order: bool = True,
) -> ToolResponse:
    """Combine stored result sets and register the combination."""
    try:
        result_id, items = context.store.combine(
            operation, result_ids, deduplicate=deduplicate, preserve_order=preserve_order,
            tool_name=COMBINE_TOOL_NAME,
        )
    except (ResultNotFoundError, ValueError) as e:
        return ToolResponse(success=False, error=str(e))

    metadata = ResultMetadata(
        total_found=len(items),
        returned_count=len(items),
        result_mode=context.security_mode,
        search_guidance=search_guidance(len(items)),
    )
    return ToolResponse(success=True, result_id=result_id, results=items, metadata=metadata)
