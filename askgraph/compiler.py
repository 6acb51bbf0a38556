"""
Structured query compiler.

Turns condition trees into QueryPlans over the graph schema:

- nodes:   :node/uid, :node/title, :create/time, :edit/time
- entries: :entry/uid, :entry/string, :entry/node, :entry/parent,
           :entry/order, :entry/refs, :create/time, :edit/time

Block scope binds every condition to one shared entry variable. Content
scope gives each condition its own entry variable anchored to the shared
node variable, so conditions may be satisfied by different entries of the
same node.
"""

import itertools
from collections.abc import Iterator, Sequence

import structlog

from .models import (
    AttributeCondition,
    Combinator,
    Condition,
    ConditionGroup,
    QueryPlan,
    ResultScope,
    SearchScope,
)
from .query import (
    And,
    Clause,
    DataPattern,
    FindQuery,
    FnBinding,
    Keyword,
    Not,
    NotJoin,
    OrJoin,
    Predicate,
    SetLiteral,
    Var,
    serialize,
)
from .utils import (
    CASE_FLAG_PREFIX,
    CompilationError,
    ENTRY_REF_PATTERN,
    entry_ref_pattern,
    escape_regex,
    node_ref_pattern,
    sanitize_regex,
)

logger = structlog.get_logger(__name__)

# Schema attributes
NODE_TITLE_ATTR = Keyword(":node/title")
NODE_UID_ATTR = Keyword(":node/uid")
ENTRY_UID_ATTR = Keyword(":entry/uid")
ENTRY_STRING_ATTR = Keyword(":entry/string")
ENTRY_NODE_ATTR = Keyword(":entry/node")
ENTRY_PARENT_ATTR = Keyword(":entry/parent")
ENTRY_ORDER_ATTR = Keyword(":entry/order")
ENTRY_REFS_ATTR = Keyword(":entry/refs")
CREATE_TIME_ATTR = Keyword(":create/time")
EDIT_TIME_ATTR = Keyword(":edit/time")

# Shared variables
ENTRY = Var("?e")
CONTENT = Var("?content")
NODE = Var("?node")
UID = Var("?uid")
NODE_UID = Var("?node-uid")
NODE_TITLE = Var("?node-title")
CREATED = Var("?created")
MODIFIED = Var("?modified")

ENTRY_FIND = (UID, CONTENT, CREATED, MODIFIED, NODE_TITLE, NODE_UID)
NODE_FIND = (NODE_UID, NODE_TITLE, CREATED, MODIFIED)

DAILY_UID_REGEX = r"^\d{2}-\d{2}-\d{4}$"


# ============== Condition Patterns ==============

def condition_pattern(condition: Condition) -> str:
    """Regex source (without flags) matching the text form of a condition.

    Text conditions match case-insensitively once the caller adds the `(?i)`
    prefix; reference patterns stay case-sensitive.
    """
    if condition.kind == "regex" or (condition.kind == "text" and condition.match_mode == "regex"):
        return sanitize_regex(condition.value)[0]
    if condition.kind == "text":
        escaped = escape_regex(condition.value)
        return f"^{escaped}$" if condition.match_mode == "exact" else escaped
    if condition.kind == "node_ref":
        return node_ref_pattern(condition.value)
    return entry_ref_pattern(condition.value)


def is_foldable(condition: Condition, allow_regex: bool = False) -> bool:
    """Whether a condition can join an OR-to-regex fold."""
    if condition.negated:
        return False
    if condition.kind in ("node_ref", "entry_ref"):
        return True
    if condition.kind == "text":
        return condition.match_mode == "contains" or (allow_regex and condition.match_mode == "regex")
    return allow_regex


def fold_or_to_regex(conditions: Sequence[Condition], allow_regex: bool = False) -> Condition:
    """Fold OR'ed plain-text and reference conditions into one regex condition.

    A string matches the folded pattern iff it matches at least one of the
    original conditions.

    Raises:
        CompilationError: If a condition is negated, exact-match or (unless
            allow_regex) already a regex
    """
    for condition in conditions:
        if not is_foldable(condition, allow_regex):
            raise CompilationError("condition cannot be folded into a regex", condition.label)
    if len(conditions) == 1 and conditions[0].is_regex:
        return conditions[0]

    alternatives = []
    for condition in conditions:
        pattern = condition_pattern(condition)
        if pattern not in alternatives:
            alternatives.append(pattern)

    return Condition(
        kind="regex",
        value=CASE_FLAG_PREFIX + "(?:" + "|".join(alternatives) + ")",
        match_mode="regex",
        weight=max(c.weight for c in conditions),
    )


# ============== Group Normalization ==============

def _condition_key(condition: Condition) -> tuple:
    return (condition.kind, condition.value, condition.negated, condition.match_mode)


def _finish_group(combinator: Combinator, children: list, notes: list[str]) -> Condition | ConditionGroup | None:
    flat: list = []
    seen: set[tuple] = set()
    for child in children:
        if child is None:
            continue
        if isinstance(child, ConditionGroup) and child.combinator == combinator:
            candidates = child.children
        else:
            candidates = [child]
        for candidate in candidates:
            if isinstance(candidate, Condition):
                key = _condition_key(candidate)
                if key in seen:
                    notes.append(f"duplicate condition {candidate.label} merged")
                    continue
                seen.add(key)
            flat.append(candidate)

    if combinator == "OR":
        foldable = [c for c in flat if isinstance(c, Condition) and is_foldable(c)]
        if len(foldable) > 1:
            rest = [c for c in flat if not (isinstance(c, Condition) and is_foldable(c))]
            flat = [fold_or_to_regex(foldable)] + rest
            notes.append(f"{len(foldable)} OR-terms folded into one regex alternation")

    if not flat:
        return None
    if len(flat) == 1:
        return flat[0]
    return ConditionGroup(combinator=combinator, children=flat)


def normalize_groups(root: ConditionGroup, notes: list[str] | None = None) -> ConditionGroup:
    """Flatten and simplify a condition tree without recursion.

    Same-combinator nesting and single-child groups collapse, duplicate
    conditions are merged and OR groups of plain-text or reference
    conditions fold into one regex. Each rewrite is appended to notes.

    Raises:
        CompilationError: If the tree holds an attribute condition or only
            empty groups
    """
    notes = notes if notes is not None else []
    result = None
    frames: list[tuple[ConditionGroup, Iterator, list]] = [(root, iter(root.children), [])]
    while frames:
        group, children, built = frames[-1]
        child = next(children, None)
        if child is None:
            frames.pop()
            finished = _finish_group(group.combinator, built, notes)
            if frames:
                frames[-1][2].append(finished)
            else:
                result = finished
        elif isinstance(child, ConditionGroup):
            frames.append((child, iter(child.children), []))
        elif isinstance(child, AttributeCondition):
            raise CompilationError("attribute conditions are evaluated separately", child.label)
        else:
            built.append(child)

    if result is None:
        raise CompilationError("condition group is empty")
    if isinstance(result, Condition):
        return ConditionGroup(combinator="AND", children=[result])
    return result


def map_leaves(root: ConditionGroup, fn) -> ConditionGroup:
    """Rebuild a tree with every condition replaced by fn(condition).

    fn may return a condition or a whole group.
    """
    frames: list[tuple[ConditionGroup, Iterator, list]] = [(root, iter(root.children), [])]
    while True:
        group, children, built = frames[-1]
        child = next(children, None)
        if child is None:
            frames.pop()
            rebuilt = ConditionGroup(combinator=group.combinator, children=built)
            if not frames:
                return rebuilt
            frames[-1][2].append(rebuilt)
        elif isinstance(child, ConditionGroup):
            frames.append((child, iter(child.children), []))
        else:
            built.append(fn(child))


def group_leaves(root: ConditionGroup) -> list[Condition]:
    """Collect the conditions of a tree in depth-first order."""
    leaves: list[Condition] = []
    stack: list = [root]
    while stack:
        item = stack.pop()
        if isinstance(item, ConditionGroup):
            stack.extend(reversed(item.children))
        else:
            leaves.append(item)
    return leaves


# ============== Clause Builders ==============

def _match_clauses(condition: Condition, entity: Var, content: Var, index: int) -> list[Clause]:
    """Clauses asserting that one entry satisfies a (non-negated) condition."""
    if condition.kind == "text" and condition.match_mode == "exact":
        return [Predicate("=", (content, condition.value))]

    if condition.kind == "node_ref":
        ref = Var(f"?ref-{index}")
        return [DataPattern(ref, NODE_TITLE_ATTR, condition.value), DataPattern(entity, ENTRY_REFS_ATTR, ref)]

    if condition.kind == "entry_ref":
        if not ENTRY_REF_PATTERN.fullmatch(f"(({condition.value}))"):
            raise CompilationError("entry references must be plain uids", condition.label)
        ref = Var(f"?ref-{index}")
        return [DataPattern(ref, ENTRY_UID_ATTR, condition.value), DataPattern(entity, ENTRY_REFS_ATTR, ref)]

    pattern_var = Var(f"?pattern-{index}")
    return [
        FnBinding("re-pattern", (CASE_FLAG_PREFIX + condition_pattern(condition),), pattern_var),
        Predicate("re-find", (pattern_var, content)),
    ]


def _entry_leaf(condition: Condition, index: int) -> list[Clause]:
    clauses = _match_clauses(condition, ENTRY, CONTENT, index)
    if not condition.negated:
        return clauses
    if condition.kind in ("node_ref", "entry_ref"):
        return [NotJoin((ENTRY,), tuple(clauses))]
    # Pattern binding stays outside so `not` only sees bound variables
    *bindings, test = clauses
    return bindings + [Not((test,))]


def _content_anchor(index: int, exclude_id: str | None) -> tuple[Var, Var, list[Clause]]:
    entity = Var(f"?e-{index}")
    content = Var(f"?content-{index}")
    clauses: list[Clause] = [
        DataPattern(entity, ENTRY_NODE_ATTR, NODE),
        DataPattern(entity, ENTRY_STRING_ATTR, content),
    ]
    if exclude_id:
        uid = Var(f"?uid-{index}")
        clauses.append(DataPattern(entity, ENTRY_UID_ATTR, uid))
        clauses.append(Predicate("not=", (uid, exclude_id)))
    return entity, content, clauses


def _content_leaf(condition: Condition, index: int, exclude_id: str | None) -> list[Clause]:
    entity, content, anchor = _content_anchor(index, exclude_id)
    clauses = anchor + _match_clauses(condition, entity, content, index)
    if condition.negated:
        return [NotJoin((NODE,), tuple(clauses))]
    return clauses


def _tree_clauses(root: ConditionGroup, scope: SearchScope, exclude_id: str | None) -> list[Clause]:
    """Emit clauses for a normalized tree, post-order and without recursion."""
    join_vars = (ENTRY, CONTENT) if scope == "block" else (NODE,)
    counter = itertools.count()
    result: list[Clause] = []
    frames: list[tuple[ConditionGroup, Iterator, list]] = [(root, iter(root.children), [])]
    while frames:
        group, children, built = frames[-1]
        child = next(children, None)
        if child is None:
            frames.pop()
            if group.combinator == "AND" or len(built) == 1:
                clauses = [c for part in built for c in part]
            else:
                branches = tuple(part[0] if len(part) == 1 else And(tuple(part)) for part in built)
                clauses = [OrJoin(join_vars, branches)]
            if frames:
                frames[-1][2].append(clauses)
            else:
                result = clauses
        elif isinstance(child, ConditionGroup):
            frames.append((child, iter(child.children), []))
        elif scope == "block":
            built.append(_entry_leaf(child, next(counter)))
        else:
            built.append(_content_leaf(child, next(counter), exclude_id))
    return result


def _daily_exclusion() -> list[Clause]:
    daily = Var("?daily-pattern")
    return [
        FnBinding("re-pattern", (DAILY_UID_REGEX,), daily),
        Not((Predicate("re-find", (daily, NODE_UID)),)),
    ]


def _entry_base() -> list[Clause]:
    return [
        DataPattern(ENTRY, ENTRY_STRING_ATTR, CONTENT),
        DataPattern(ENTRY, ENTRY_UID_ATTR, UID),
        DataPattern(ENTRY, ENTRY_NODE_ATTR, NODE),
        DataPattern(NODE, NODE_TITLE_ATTR, NODE_TITLE),
        DataPattern(NODE, NODE_UID_ATTR, NODE_UID),
        DataPattern(ENTRY, CREATE_TIME_ATTR, CREATED),
        DataPattern(ENTRY, EDIT_TIME_ATTR, MODIFIED),
    ]


def _node_base() -> list[Clause]:
    return [
        DataPattern(NODE, NODE_TITLE_ATTR, NODE_TITLE),
        DataPattern(NODE, NODE_UID_ATTR, NODE_UID),
        DataPattern(NODE, CREATE_TIME_ATTR, CREATED),
        DataPattern(NODE, EDIT_TIME_ATTR, MODIFIED),
    ]


def _scope_clauses(
    scope: SearchScope,
    include_daily: bool,
    exclude_id: str | None,
    restrict: ResultScope | None,
) -> list[Clause]:
    clauses: list[Clause] = []
    if restrict is not None:
        if scope == "block" and restrict.entry_ids:
            clauses.append(Predicate("contains?", (SetLiteral(tuple(sorted(restrict.entry_ids))), UID)))
        else:
            clauses.append(Predicate("contains?", (SetLiteral(tuple(sorted(restrict.node_ids))), NODE_UID)))
    if not include_daily:
        clauses.extend(_daily_exclusion())
    if scope == "block" and exclude_id:
        clauses.append(Predicate("not=", (UID, exclude_id)))
    return clauses


# ============== Compilation ==============

def _as_group(conditions: ConditionGroup | Sequence[Condition], combinator: Combinator) -> ConditionGroup:
    if isinstance(conditions, ConditionGroup):
        return conditions
    if not conditions:
        raise CompilationError("no conditions to compile")
    return ConditionGroup(combinator=combinator, children=list(conditions))


def _plan(
    tree: ConditionGroup,
    scope: SearchScope,
    include_daily: bool,
    exclude_id: str | None,
    restrict: ResultScope | None,
) -> QueryPlan:
    base = _entry_base() if scope == "block" else _node_base()
    find = ENTRY_FIND if scope == "block" else NODE_FIND
    where = (
        base
        + _scope_clauses(scope, include_daily, exclude_id, restrict)
        + _tree_clauses(tree, scope, exclude_id)
    )
    query = FindQuery(find=find, where=tuple(where))
    return QueryPlan(
        text=serialize(query),
        scope=scope,
        variables=query.variables,
        combinator=tree.combinator,
        conditions=tuple(group_leaves(tree)),
    )


def compile_search(
    conditions: ConditionGroup | Sequence[Condition],
    combinator: Combinator = "AND",
    scope: SearchScope = "block",
    *,
    include_daily: bool = True,
    exclude_id: str | None = None,
    restrict: ResultScope | None = None,
) -> QueryPlan:
    """Compile conditions into a query plan.

    Args:
        conditions: Flat condition list or a nested condition group
        combinator: Combinator for a flat list
        scope: "block" (all conditions on one entry) or "content" (anywhere in a node)
        include_daily: Whether daily-note nodes may match
        exclude_id: Entry uid that must never match
        restrict: Node/entry ids a follow-up search is limited to

    Returns:
        The compiled plan. Content-scope AND plans carry one sub-plan per
        positive condition so callers may intersect independent reads.

    Raises:
        CompilationError: If a condition cannot be expressed in the dialect
    """
    notes: list[str] = []
    tree = normalize_groups(_as_group(conditions, combinator), notes)
    plan = _plan(tree, scope, include_daily, exclude_id, restrict)

    if scope == "content" and tree.combinator == "AND" and len(tree.children) > 1:
        positives = [c for c in tree.children if not (isinstance(c, Condition) and c.negated)]
        negatives = [c for c in tree.children if isinstance(c, Condition) and c.negated]
        if positives:
            sub_plans = tuple(
                _plan(_single(child), scope, include_daily, exclude_id, restrict) for child in positives
            )
            exclusion_plans = tuple(
                _plan(
                    _single(child.model_copy(update={"negated": False})),
                    scope, include_daily, exclude_id, restrict,
                )
                for child in negatives
            )
            plan = plan.model_copy(update={"sub_plans": sub_plans, "exclusion_plans": exclusion_plans})
            notes.append(f"content AND split into {len(sub_plans)} node-intersected reads")

    if notes:
        plan = plan.model_copy(update={"optimizations": tuple(notes)})

    logger.debug("query_compiled", scope=scope, combinator=tree.combinator,
                 conditions=len(plan.conditions), sub_plans=len(plan.sub_plans))
    return plan


def _single(child: Condition | ConditionGroup) -> ConditionGroup:
    if isinstance(child, ConditionGroup):
        return child
    return ConditionGroup(combinator="AND", children=[child])


# ============== Auxiliary Reads ==============

def attribute_query(
    key: str,
    *,
    include_daily: bool = True,
    restrict: ResultScope | None = None,
) -> str:
    """Query entries declaring `key::`, returning entry rows."""
    condition = Condition(kind="regex", value=rf"^\s*{escape_regex(key)}::", match_mode="regex")
    restrict = ResultScope(node_ids=restrict.node_ids) if restrict is not None else None
    return compile_search([condition], scope="block", include_daily=include_daily, restrict=restrict).text


def _id_filter(var: Var, ids: Sequence[str]) -> Predicate:
    return Predicate("contains?", (SetLiteral(tuple(sorted(set(ids)))), var))


def children_query(parent_ids: Sequence[str]) -> str:
    """Rows of (parent uid, child uid, child content, child order)."""
    parent, child = Var("?parent"), Var("?child")
    parent_uid, order = Var("?parent-uid"), Var("?order")
    query = FindQuery(
        find=(parent_uid, UID, CONTENT, order),
        where=(
            DataPattern(parent, ENTRY_UID_ATTR, parent_uid),
            _id_filter(parent_uid, parent_ids),
            DataPattern(child, ENTRY_PARENT_ATTR, parent),
            DataPattern(child, ENTRY_UID_ATTR, UID),
            DataPattern(child, ENTRY_STRING_ATTR, CONTENT),
            DataPattern(child, ENTRY_ORDER_ATTR, order),
        ),
    )
    return serialize(query)


def parents_query(child_ids: Sequence[str]) -> str:
    """Rows of (child uid, parent uid, parent content)."""
    parent, child = Var("?parent"), Var("?child")
    child_uid = Var("?child-uid")
    query = FindQuery(
        find=(child_uid, UID, CONTENT),
        where=(
            DataPattern(child, ENTRY_UID_ATTR, child_uid),
            _id_filter(child_uid, child_ids),
            DataPattern(child, ENTRY_PARENT_ATTR, parent),
            DataPattern(parent, ENTRY_UID_ATTR, UID),
            DataPattern(parent, ENTRY_STRING_ATTR, CONTENT),
        ),
    )
    return serialize(query)


def node_entries_query(node_ids: Sequence[str]) -> str:
    """Rows of (node uid, entry uid, entry content) for every entry of the nodes."""
    query = FindQuery(
        find=(NODE_UID, UID, CONTENT),
        where=(
            DataPattern(NODE, NODE_UID_ATTR, NODE_UID),
            _id_filter(NODE_UID, node_ids),
            DataPattern(ENTRY, ENTRY_NODE_ATTR, NODE),
            DataPattern(ENTRY, ENTRY_UID_ATTR, UID),
            DataPattern(ENTRY, ENTRY_STRING_ATTR, CONTENT),
        ),
    )
    return serialize(query)
