"""
Graph executors for the AskGraph query engine.

Defines the GraphExecutor protocol the search pipeline talks to, and a local
executor that loads an exported outline graph (JSON or YAML) into an
in-memory datom index and evaluates dialect queries against it.
"""

import asyncio
import json
import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiofiles
import structlog
import yaml

from .query import (
    And,
    Clause,
    DataPattern,
    FindQuery,
    FnBinding,
    Keyword,
    Not,
    NotJoin,
    Or,
    OrJoin,
    Predicate,
    SetLiteral,
    Var,
    read_query,
)
from .utils import ExecutionError, extract_references

logger = structlog.get_logger(__name__)


@runtime_checkable
class GraphExecutor(Protocol):
    """Anything that can run a dialect query and return result rows."""

    async def execute(self, query: str) -> list[list[Any]]:
        ...


@dataclass(frozen=True)
class Ref:
    """Internal entity id, kept distinct from plain integer values."""

    id: int


_UNBOUND = object()


@lru_cache(maxsize=512)
def _compile_pattern(source: str) -> re.Pattern:
    try:
        return re.compile(source)
    except re.error as e:
        raise ExecutionError(f"invalid regex {source!r}: {e}") from e


def _compare(fn: str, a: Any, b: Any) -> bool:
    try:
        if fn == "<":
            return a < b
        if fn == ">":
            return a > b
        if fn == "<=":
            return a <= b
        return a >= b
    except TypeError:
        return False


class OutlineGraph:
    """In-memory datom index over nodes and their nested entries.

    Accepts the common outline export shape: a list (or {"nodes": [...]})
    of nodes with `title`, `uid`, `create-time`, `edit-time` and nested
    `children` entries carrying `string` and `uid`.
    """

    def __init__(self):
        self._next_id = 0
        self._by_attr: dict[str, list[tuple[Ref, Any]]] = defaultdict(list)
        self._eav: dict[Ref, dict[str, list[Any]]] = defaultdict(lambda: defaultdict(list))
        self._ave: dict[tuple[str, Any], list[Ref]] = defaultdict(list)
        self._titles: dict[str, Ref] = {}
        self._uids: dict[str, Ref] = {}
        self.node_count = 0
        self.entry_count = 0

    def _new_entity(self) -> Ref:
        self._next_id += 1
        return Ref(self._next_id)

    def add(self, entity: Ref, attribute: str, value: Any) -> None:
        self._by_attr[attribute].append((entity, value))
        self._eav[entity][attribute].append(value)
        self._ave[(attribute, value)].append(entity)

    def _add_node(self, title: str, uid: str, created: int, modified: int) -> Ref:
        node = self._new_entity()
        self.add(node, ":node/title", title)
        self.add(node, ":node/uid", uid)
        self.add(node, ":create/time", created)
        self.add(node, ":edit/time", modified)
        self._titles[title] = node
        self._uids[uid] = node
        self.node_count += 1
        return node

    def _node_for_title(self, title: str) -> Ref:
        node = self._titles.get(title)
        if node is None:
            node = self._add_node(title, f"ref-{len(self._titles)}", 0, 0)
        return node

    @classmethod
    def from_export(cls, data: dict | list) -> "OutlineGraph":
        """Build the index from exported data without recursion."""
        graph = cls()
        nodes = data.get("nodes", []) if isinstance(data, dict) else data
        pending_refs: list[tuple[Ref, str]] = []

        for raw_node in nodes:
            title = raw_node["title"]
            node = graph._add_node(
                title,
                raw_node.get("uid") or title,
                int(raw_node.get("create-time", 0)),
                int(raw_node.get("edit-time", 0)),
            )
            stack = [(child, node, order) for order, child in enumerate(raw_node.get("children") or [])]
            stack.reverse()
            while stack:
                raw, parent, order = stack.pop()
                entry = graph._new_entity()
                text = raw.get("string", "")
                uid = raw["uid"]
                graph.add(entry, ":entry/uid", uid)
                graph.add(entry, ":entry/string", text)
                graph.add(entry, ":entry/node", node)
                graph.add(entry, ":entry/parent", parent)
                graph.add(entry, ":entry/order", int(raw.get("order", order)))
                graph.add(entry, ":create/time", int(raw.get("create-time", 0)))
                graph.add(entry, ":edit/time", int(raw.get("edit-time", 0)))
                graph._uids[uid] = entry
                graph.entry_count += 1
                pending_refs.append((entry, text))
                children = raw.get("children") or []
                stack.extend((c, entry, i) for i, c in reversed(list(enumerate(children))))

        for entry, text in pending_refs:
            titles, uids = extract_references(text)
            for title in titles:
                graph.add(entry, ":entry/refs", graph._node_for_title(title))
            for uid in uids:
                target = graph._uids.get(uid)
                if target is not None:
                    graph.add(entry, ":entry/refs", target)

        return graph

    # ============== Evaluation ==============

    def _resolve(self, term: Any, binding: dict) -> Any:
        if isinstance(term, Var):
            return binding.get(term.name, _UNBOUND)
        if isinstance(term, SetLiteral):
            return frozenset(term.values)
        if isinstance(term, Keyword):
            return term.name
        return term

    def _args(self, args: tuple, binding: dict, fn: str) -> list:
        values = [self._resolve(a, binding) for a in args]
        if any(v is _UNBOUND for v in values):
            raise ExecutionError(f"insufficient binding for ({fn} ...)")
        return values

    def _pattern(self, clause: DataPattern, bindings: list[dict]) -> list[dict]:
        attr = clause.attribute.name
        out = []
        for binding in bindings:
            entity = self._resolve(clause.entity, binding)
            value = self._resolve(clause.value, binding)
            if entity is not _UNBOUND:
                if not isinstance(entity, Ref):
                    continue
                pairs = ((entity, v) for v in self._eav.get(entity, {}).get(attr, ()))
            elif value is not _UNBOUND:
                pairs = ((e, value) for e in self._ave.get((attr, value), ()))
            else:
                pairs = iter(self._by_attr.get(attr, ()))

            for e, v in pairs:
                if value is not _UNBOUND and v != value:
                    continue
                extended = dict(binding)
                if isinstance(clause.entity, Var):
                    extended[clause.entity.name] = e
                if isinstance(clause.value, Var):
                    extended[clause.value.name] = v
                out.append(extended)
        return out

    def _call(self, fn: str, values: list) -> Any:
        if fn == "re-pattern":
            return _compile_pattern(values[0])
        if fn == "re-find":
            pattern, text = values
            if isinstance(pattern, str):
                pattern = _compile_pattern(pattern)
            return isinstance(text, str) and pattern.search(text) is not None
        if fn == "=":
            return all(v == values[0] for v in values[1:])
        if fn == "not=":
            return not all(v == values[0] for v in values[1:])
        if fn == "contains?":
            return values[1] in values[0]
        if fn == "clojure.string/includes?":
            return isinstance(values[0], str) and values[1] in values[0]
        if fn == "clojure.string/lower-case":
            return values[0].lower()
        if fn in ("<", ">", "<=", ">="):
            return _compare(fn, values[0], values[1])
        raise ExecutionError(f"unknown function: {fn}")

    def _clause(self, clause: Clause, bindings: list[dict]) -> list[dict]:
        if isinstance(clause, DataPattern):
            return self._pattern(clause, bindings)

        if isinstance(clause, Predicate):
            return [b for b in bindings if self._call(clause.fn, self._args(clause.args, b, clause.fn))]

        if isinstance(clause, FnBinding):
            out = []
            for b in bindings:
                result = self._call(clause.fn, self._args(clause.args, b, clause.fn))
                out.append({**b, clause.output.name: result})
            return out

        if isinstance(clause, Not):
            return [b for b in bindings if not self._clauses(clause.clauses, [b])]

        if isinstance(clause, NotJoin):
            names = [v.name for v in clause.join_vars]
            return [
                b for b in bindings
                if not self._clauses(clause.clauses, [{n: b[n] for n in names if n in b}])
            ]

        if isinstance(clause, Or):
            out = []
            for b in bindings:
                for branch in clause.branches:
                    out.extend(self._clause(branch, [b]))
            return _dedupe(out)

        if isinstance(clause, OrJoin):
            names = [v.name for v in clause.join_vars]
            out = []
            for b in bindings:
                projected = {n: b[n] for n in names if n in b}
                for branch in clause.branches:
                    for result in self._clause(branch, [projected]):
                        out.append({**b, **{n: result[n] for n in names if n in result}})
            return _dedupe(out)

        if isinstance(clause, And):
            return self._clauses(clause.clauses, bindings)

        raise ExecutionError(f"unsupported clause: {clause!r}")

    def _clauses(self, clauses: Iterable[Clause], bindings: list[dict]) -> list[dict]:
        for clause in clauses:
            if not bindings:
                break
            bindings = self._clause(clause, bindings)
        return bindings

    def evaluate(self, query: FindQuery) -> list[list[Any]]:
        """Evaluate a parsed query and return de-duplicated rows."""
        bindings = self._clauses(query.where, [{}])
        rows: list[list[Any]] = []
        seen: set[tuple] = set()
        for binding in bindings:
            row = []
            for var in query.find:
                value = binding.get(var.name, _UNBOUND)
                if value is _UNBOUND:
                    raise ExecutionError(f"find variable {var.name} is never bound")
                row.append(value.id if isinstance(value, Ref) else value)
            key = tuple(row)
            if key not in seen:
                seen.add(key)
                rows.append(row)
        return rows


def _dedupe(bindings: list[dict]) -> list[dict]:
    seen: set = set()
    out = []
    for b in bindings:
        key = tuple(sorted((k, v) for k, v in b.items() if not isinstance(v, re.Pattern)))
        if key not in seen:
            seen.add(key)
            out.append(b)
    return out


class LocalGraphExecutor:
    """Executes dialect queries against an in-memory OutlineGraph."""

    def __init__(self, graph: OutlineGraph):
        self.graph = graph
        self.query_count = 0

    @classmethod
    def from_data(cls, data: dict | list) -> "LocalGraphExecutor":
        return cls(OutlineGraph.from_export(data))

    @classmethod
    async def from_file(cls, path: Path) -> "LocalGraphExecutor":
        """Load an exported graph from a JSON or YAML file."""
        async with aiofiles.open(path, encoding="utf-8") as f:
            raw = await f.read()
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(raw) or []
        else:
            data = json.loads(raw)
        graph = OutlineGraph.from_export(data)
        logger.info("graph_loaded", path=str(path), nodes=graph.node_count, entries=graph.entry_count)
        return cls(graph)

    async def execute(self, query: str) -> list[list[Any]]:
        try:
            parsed = read_query(query)
        except ValueError as e:
            raise ExecutionError(f"malformed query: {e}", query=query) from e

        self.query_count += 1
        # Let other searches interleave between reads
        await asyncio.sleep(0)
        try:
            rows = self.graph.evaluate(parsed)
        except ExecutionError as e:
            e.query = query
            raise
        logger.debug("query_executed", rows=len(rows))
        return rows
