"""
Result processing for the AskGraph query engine.

Converts executor rows into ResultItems, then annotates, filters, scores,
sorts, samples, enriches with hierarchy context and limits them according
to the active security mode.
"""

import asyncio
import re
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from .compiler import children_query, condition_pattern, parents_query
from .config import SecurityMode, settings
from .models import (
    AttributeValue,
    AttributeValueType,
    Condition,
    DateRange,
    HierarchyItem,
    ResultItem,
    SearchGuidance,
    SearchScope,
    SortBy,
)
from .utils import (
    ATTRIBUTE_KEY_PATTERN,
    escape_regex,
    fuzzy_match,
    has_word_boundary_match,
    is_daily_uid,
    node_ref_pattern,
    seeded_sample,
    seeded_shuffle,
    truncate_content,
)

logger = structlog.get_logger(__name__)

RunQuery = Callable[[str], Awaitable[list[list[Any]]]]

# Ranking bonus by expansion level (0 = original term)
EXPANSION_LEVEL_BONUS = {0: 100, 1: 75, 2: 50, 3: 25}

CONTEXT_KEYWORDS_PATTERN = re.compile(r'\b(context|children|parent|around|under|hierarchy|structure)\b', re.IGNORECASE)

SUBSTANTIAL_CONTENT_LENGTH = 100


# ============== Row Conversion ==============

def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def entry_items_from_rows(rows: Sequence[Sequence[Any]]) -> list[ResultItem]:
    """Convert (uid, content, created, modified, node title, node uid) rows."""
    items = []
    for uid, content, created, modified, node_title, node_uid in rows:
        items.append(ResultItem(
            id=uid,
            content=content,
            created=_timestamp(created),
            modified=_timestamp(modified),
            node_title=node_title,
            parent_node_id=node_uid,
            is_daily=is_daily_uid(node_uid),
        ))
    return items


def node_items_from_rows(rows: Sequence[Sequence[Any]]) -> list[ResultItem]:
    """Convert (node uid, node title, created, modified) rows."""
    items = []
    for uid, title, created, modified in rows:
        items.append(ResultItem(
            id=uid,
            node_title=title,
            created=_timestamp(created),
            modified=_timestamp(modified),
            is_node=True,
            is_leaf_of_interest=False,
            is_daily=is_daily_uid(uid),
        ))
    return items


def items_from_rows(rows: Sequence[Sequence[Any]], scope: SearchScope) -> list[ResultItem]:
    if scope == "block":
        return entry_items_from_rows(rows)
    return node_items_from_rows(rows)


# ============== Condition Matching ==============

def condition_matches(condition: Condition, text: str | None) -> bool:
    """Evaluate a condition (ignoring negation) against entry text."""
    if text is None:
        return False
    if condition.kind == "text" and condition.match_mode == "exact":
        return text == condition.value
    return re.search(condition_pattern(condition), text, re.IGNORECASE) is not None


def match_strength(condition: Condition, text: str | None) -> float:
    """Score how strongly text satisfies a condition (0 when it does not).

    Exact matches score 5, whole-word text matches and references 3,
    partial and regex matches 1.
    """
    if not condition_matches(condition, text):
        return 0.0
    if condition.kind == "text" and condition.match_mode == "contains":
        if text.strip().lower() == condition.value.lower():
            return 5.0
        if has_word_boundary_match(condition.value, text):
            return 3.0
        return 1.0
    if condition.kind == "text" and condition.match_mode == "exact":
        return 5.0
    if condition.kind in ("node_ref", "entry_ref"):
        return 3.0
    return 1.0


def _value_pattern(value: str, value_type: AttributeValueType) -> str:
    if value_type == "node_ref":
        return node_ref_pattern(value.lstrip("#"))
    if value_type == "regex":
        return value
    return escape_regex(value)


def _value_satisfied(content: str, value: AttributeValue, value_type: AttributeValueType) -> bool:
    candidates = (value.value, *value.alternatives)
    return any(
        re.search(_value_pattern(candidate, value_type), content, re.IGNORECASE)
        for candidate in candidates
    )


def attribute_value_matches(
    content: str, values: Sequence[AttributeValue], value_type: AttributeValueType
) -> bool:
    """Check an attribute's value text against its AND / OR / NOT values."""
    required = [v for v in values if v.operator == "+"]
    alternatives = [v for v in values if v.operator == "|"]
    excluded = [v for v in values if v.operator == "-"]

    if not all(_value_satisfied(content, v, value_type) for v in required):
        return False
    if alternatives and not any(_value_satisfied(content, v, value_type) for v in alternatives):
        return False
    return not any(_value_satisfied(content, v, value_type) for v in excluded)


def attribute_value_text(content: str) -> str:
    """Return the part of a `key:: value` entry after the separator."""
    match = ATTRIBUTE_KEY_PATTERN.match(content.lstrip())
    if not match:
        return content
    return content.lstrip()[match.end():].strip()


# ============== Annotation and Scoring ==============

def annotate(
    items: list[ResultItem],
    conditions: Sequence[Condition],
    expansion_terms: Sequence[str] = (),
    node_entries: dict[str, list[str]] | None = None,
) -> list[ResultItem]:
    """Attach weight and provenance from the best matching condition."""
    positives = [c for c in conditions if not c.negated]
    annotated = []
    for item in items:
        texts = node_entries.get(item.id, []) if item.is_node and node_entries else [item.content]
        matched = [c for c in positives if any(condition_matches(c, t) for t in texts)]
        update: dict[str, Any] = {"matched_conditions": [c.label for c in matched]}
        if matched:
            best = max(matched, key=lambda c: (c.weight, -c.expansion_level))
            update["weight"] = best.weight
            update["expansion_level"] = best.expansion_level
            update["matched_term"] = best.matched_term or best.value
        if expansion_terms:
            update["expansion_used"] = list(expansion_terms)
        annotated.append(item.model_copy(update=update))
    return annotated


def _text_score(text: str | None, conditions: Sequence[Condition]) -> float:
    score = sum(match_strength(c, text) * c.weight for c in conditions)
    if text and len(text) > SUBSTANTIAL_CONTENT_LENGTH:
        score += 1
    return score


def score_item(
    item: ResultItem,
    conditions: Sequence[Condition],
    node_entries: dict[str, list[str]] | None = None,
) -> float:
    """Deterministic relevance score for an entry or node result."""
    positives = [c for c in conditions if not c.negated]
    bonus = EXPANSION_LEVEL_BONUS.get(item.expansion_level, 0)

    if not item.is_node:
        return _text_score(item.content, positives) + bonus

    entries = (node_entries or {}).get(item.id, [])
    matching = [t for t in entries if any(condition_matches(c, t) for c in positives)]
    score = 2.0 * len(matching)
    if entries:
        score += len(matching) / len(entries) * 10
    score += sum(_text_score(t, positives) for t in matching)
    return score + bonus


def score_items(
    items: list[ResultItem],
    conditions: Sequence[Condition],
    node_entries: dict[str, list[str]] | None = None,
) -> list[ResultItem]:
    return [item.model_copy(update={"score": score_item(item, conditions, node_entries)}) for item in items]


# ============== Filtering ==============

def _in_range(value: datetime | None, date_range: DateRange) -> bool:
    if date_range.start and value < date_range.start:
        return False
    if date_range.end and value > date_range.end:
        return False
    return True


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def filter_by_date_range(items: list[ResultItem], date_range: DateRange | None) -> list[ResultItem]:
    """Keep items whose created/modified time falls inside the range.

    Items carrying no date at all are kept.
    """
    if date_range is None or (date_range.start is None and date_range.end is None):
        return items
    window = DateRange(start=_aware(date_range.start), end=_aware(date_range.end), mode=date_range.mode)

    kept = []
    for item in items:
        created, modified = item.created, item.modified
        if created is None and modified is None:
            kept.append(item)
            continue
        if window.mode == "created":
            ok = created is None or _in_range(created, window)
        elif window.mode == "modified":
            ok = modified is None or _in_range(modified, window)
        else:
            ok = any(d is not None and _in_range(d, window) for d in (created, modified))
        if ok:
            kept.append(item)
    return kept


def fuzzy_filter(items: list[ResultItem], conditions: Sequence[Condition], threshold: float) -> list[ResultItem]:
    """Keep items where at least one text condition fuzzily matches."""
    terms = [c.value for c in conditions if c.kind == "text" and not c.negated and not c.is_regex]
    if not terms:
        return items
    return [
        item for item in items
        if any(fuzzy_match(item.content or item.node_title or "", term, threshold) for term in terms)
    ]


# ============== Sorting and Sampling ==============

def _timestamp_key(item: ResultItem) -> float:
    moment = item.modified or item.created
    return moment.timestamp() if moment else 0.0


def _created_key(item: ResultItem) -> float:
    return item.created.timestamp() if item.created else 0.0


def _modified_key(item: ResultItem) -> float:
    return item.modified.timestamp() if item.modified else 0.0


_TIMESTAMP_KEYS = {"recent": _timestamp_key, "creation": _created_key, "modification": _modified_key}


def _alphabetical_key(item: ResultItem) -> str:
    return ((item.node_title if item.is_node else item.content) or item.node_title or "").lower()


def sort_items(
    items: list[ResultItem],
    sort_by: SortBy = "relevance",
    sort_order: str | None = None,
    seed: int | None = None,
) -> list[ResultItem]:
    """Sort results deterministically.

    Relevance ties break on recency, then id. Random order requires a seed
    and is reproducible for it.
    """
    if sort_by == "random":
        return seeded_shuffle(items, seed if seed is not None else 0)

    if sort_by == "alphabetical":
        ordered = sorted(items, key=lambda i: (_alphabetical_key(i), i.id))
        return list(reversed(ordered)) if sort_order == "desc" else ordered

    if sort_by in ("recent", "creation", "modification"):
        key = _TIMESTAMP_KEYS[sort_by]
        ordered = sorted(items, key=lambda i: (-key(i), i.id))
        return list(reversed(ordered)) if sort_order == "asc" else ordered

    ordered = sorted(items, key=lambda i: (-i.score, -_timestamp_key(i), i.id))
    return list(reversed(ordered)) if sort_order == "asc" else ordered


def sample_items(items: list[ResultItem], size: int, seed: int | None) -> list[ResultItem]:
    """Seeded random sample; the same seed always yields the same subset."""
    return seeded_sample(items, size, seed if seed is not None else 0)


# ============== Hierarchy Enrichment ==============

@dataclass(frozen=True)
class HierarchyConfig:
    include_children: bool
    include_parents: bool
    depth: int
    truncate_length: int


def hierarchy_config(
    result_count: int,
    user_query: str = "",
    include_children: bool | None = None,
    include_parents: bool | None = None,
) -> HierarchyConfig | None:
    """Decide how much hierarchy context to attach for a result count.

    Small result sets get children and parents three levels deep, medium
    ones direct children only, large ones none. Explicit flags or context
    words in the user's request ("children", "parent", ...) override the
    size-based choice.
    """
    structural = bool(CONTEXT_KEYWORDS_PATTERN.search(user_query or ""))
    explicit = include_children is not None or include_parents is not None

    if explicit or structural:
        depth = 3 if result_count < 10 else 1
        return HierarchyConfig(
            include_children=include_children if include_children is not None else True,
            include_parents=include_parents if include_parents is not None else structural,
            depth=depth,
            truncate_length=settings.hierarchy_content_length,
        )

    if result_count < 10:
        return HierarchyConfig(True, True, 3, settings.hierarchy_content_length)
    if result_count <= settings.hierarchy_result_threshold:
        return HierarchyConfig(True, False, 1, 200)
    return None


async def _collect_children(ids: list[str], depth: int, truncate: int, run: RunQuery) -> dict[str, list[HierarchyItem]]:
    collected: dict[str, list[HierarchyItem]] = defaultdict(list)
    roots_of = {uid: [uid] for uid in ids}
    level = ids
    for current_depth in range(1, depth + 1):
        if not level:
            break
        rows = await run(children_query(level))
        rows.sort(key=lambda r: (r[0], r[3], r[1]))
        next_roots: dict[str, list[str]] = defaultdict(list)
        for parent_uid, uid, content, order in rows:
            for root in roots_of[parent_uid]:
                collected[root].append(HierarchyItem(
                    id=uid, content=truncate_content(content, truncate), depth=current_depth, order=order,
                ))
                next_roots[uid].append(root)
        roots_of = next_roots
        level = list(next_roots)
    return collected


async def _collect_parents(ids: list[str], depth: int, truncate: int, run: RunQuery) -> dict[str, list[HierarchyItem]]:
    collected: dict[str, list[HierarchyItem]] = defaultdict(list)
    roots_of = {uid: [uid] for uid in ids}
    level = ids
    for current_depth in range(1, depth + 1):
        if not level:
            break
        rows = await run(parents_query(level))
        next_roots: dict[str, list[str]] = defaultdict(list)
        for child_uid, uid, content in sorted(rows):
            for root in roots_of[child_uid]:
                collected[root].append(HierarchyItem(
                    id=uid, content=truncate_content(content, truncate), depth=current_depth,
                ))
                next_roots[uid].append(root)
        roots_of = next_roots
        level = list(next_roots)
    return collected


async def enrich_hierarchy(items: list[ResultItem], config: HierarchyConfig, run: RunQuery) -> list[ResultItem]:
    """Attach children and/or parents to entry results.

    Each depth level is one batched read; the child and parent walks run
    concurrently.
    """
    ids = [item.id for item in items if not item.is_node]
    if not ids:
        return items

    async def nothing() -> dict[str, list[HierarchyItem]]:
        return {}

    children, parents = await asyncio.gather(
        _collect_children(ids, config.depth, config.truncate_length, run) if config.include_children else nothing(),
        _collect_parents(ids, config.depth, config.truncate_length, run) if config.include_parents else nothing(),
    )

    enriched = []
    for item in items:
        if item.is_node:
            enriched.append(item)
            continue
        update: dict[str, Any] = {}
        if config.include_children:
            update["children"] = children.get(item.id, [])
        if config.include_parents:
            update["parents"] = parents.get(item.id, [])
        enriched.append(item.model_copy(update=update))
    logger.debug("hierarchy_enriched", items=len(ids), depth=config.depth)
    return enriched


# ============== Limits and Security ==============

def apply_limits(
    items: list[ResultItem], mode: SecurityMode, limit: int | None = None
) -> tuple[list[ResultItem], bool]:
    """Truncate results for the security mode.

    An explicit limit replaces the mode's default but never exceeds its
    hard cap.

    Returns:
        Tuple of (limited items, was_limited)
    """
    default_limit, max_results = settings.limits_for(mode)
    cap = min(limit if limit is not None else default_limit, max_results)
    return items[:cap], len(items) > cap


def _strip_hierarchy(hierarchy: list[HierarchyItem] | None) -> list[HierarchyItem] | None:
    if hierarchy is None:
        return None
    return [h.model_copy(update={"content": None}) for h in hierarchy]


def apply_security_mode(items: list[ResultItem], mode: SecurityMode) -> list[ResultItem]:
    """Private mode exposes metadata only; other modes keep content."""
    if mode != "private":
        return items
    return [
        item.model_copy(update={
            "content": None,
            "children": _strip_hierarchy(item.children),
            "parents": _strip_hierarchy(item.parents),
        })
        for item in items
    ]


def search_guidance(result_count: int, was_limited: bool = False, scope: SearchScope = "block") -> SearchGuidance:
    """Summarize result quality and suggest next steps to the agent."""
    suggestions: list[str] = []
    if result_count == 0:
        suggestions.extend(["try_semantic_expansion", "broaden_search_terms", "check_spelling"])
    elif result_count < 3:
        suggestions.extend(["consider_semantic_expansion", "try_related_concepts"])
    elif result_count > 50 and scope == "block":
        suggestions.append("consider_content_scope_for_analysis")
    elif result_count > 20 and scope == "content":
        suggestions.append("results_look_comprehensive")
    if scope == "block" and result_count > 5:
        suggestions.append("try_combine_results_for_complex_queries")

    if result_count == 0:
        quality = "no_results"
    elif result_count < 3:
        quality = "sparse"
    elif result_count < 20:
        quality = "good"
    else:
        quality = "abundant"
    return SearchGuidance(result_quality=quality, suggestions=suggestions, expandable=was_limited)
