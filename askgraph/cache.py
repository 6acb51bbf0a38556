"""
Result store for the AskGraph query engine.

Contains the ResultStore class, which registers every tool result under a
stable id for the lifetime of a conversation, plus the set algebra used to
combine stored result sets.
"""

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from .config import settings
from .models import (
    ResultItem,
    ResultScope,
    ResultStoreEntry,
    SetOperation,
    StorePurpose,
)
from .utils import ResultNotFoundError, truncate_content

logger = structlog.get_logger(__name__)

FINAL_PURPOSES = ("final", "replacement", "completion")


def combine_items(
    operation: SetOperation,
    sets: Sequence[tuple[str, Sequence[ResultItem]]],
    *,
    deduplicate: bool = True,
    preserve_order: bool = True,
) -> list[ResultItem]:
    """Apply a set operation to labelled result sets, keyed by item id.

    Args:
        operation: union, intersection, difference or symmetric_difference
        sets: (result id, items) pairs; difference subtracts every later set
            from the first
        deduplicate: Keep one item per id (union keeps first occurrence)
        preserve_order: Keep first-seen order; otherwise order by id

    Returns:
        Combined items, each tagged with the result ids it came from
    """
    sources: dict[str, list[str]] = {}
    for result_id, items in sets:
        for item in items:
            ids = sources.setdefault(item.id, [])
            if result_id not in ids:
                ids.append(result_id)

    id_sets = [{item.id for item in items} for _, items in sets]

    if operation == "union":
        candidates = [item for _, items in sets for item in items]
    elif operation == "intersection":
        common = set.intersection(*id_sets) if id_sets else set()
        candidates = [item for item in (sets[0][1] if sets else []) if item.id in common]
    elif operation == "difference":
        removed = set().union(*id_sets[1:])
        candidates = [item for item in (sets[0][1] if sets else []) if item.id not in removed]
    elif operation == "symmetric_difference":
        memberships = Counter(item_id for ids in id_sets for item_id in ids)
        candidates = [item for _, items in sets for item in items if memberships[item.id] == 1]
    else:
        raise ValueError(f"unknown set operation: {operation}")

    combined = []
    seen: set[str] = set()
    for item in candidates:
        if deduplicate:
            if item.id in seen:
                continue
            seen.add(item.id)
        combined.append(item.model_copy(update={"source_result_ids": list(sources[item.id])}))

    if not preserve_order:
        combined.sort(key=lambda item: item.id)
    return combined


@dataclass(frozen=True)
class StoreSnapshot:
    entries: dict[str, ResultStoreEntry]
    counter: int
    turn: int
    selection: str | None


class ResultStore:
    """Conversation-scoped registry of tool results.

    Ids follow `<tool>_<nnn>` with one counter per conversation. Entries go
    stale when replaced or when a new turn changes the selection they were
    built from; stale entries remain readable but cannot scope searches.
    """

    def __init__(self, summary_length: int | None = None):
        self.summary_length = summary_length or settings.summary_content_length
        self._entries: dict[str, ResultStoreEntry] = {}
        self._counter = 0
        self._turn = 0
        self._selection: str | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, result_id: str) -> bool:
        return result_id in self._entries

    @property
    def turn(self) -> int:
        return self._turn

    def _next_id(self, tool_name: str) -> str:
        self._counter += 1
        return f"{tool_name}_{self._counter:03d}"

    def put(
        self,
        tool_name: str,
        items: Sequence[ResultItem],
        *,
        purpose: StorePurpose = "final",
        total_count: int | None = None,
        truncated: bool = False,
        replaces: str | None = None,
    ) -> str:
        """Register a result set and return its id.

        A replacement marks the entry it replaces stale.
        """
        if replaces is not None:
            old = self.get(replaces)
            self._entries[replaces] = old.model_copy(update={"status": "stale"})

        result_id = self._next_id(tool_name)
        self._entries[result_id] = ResultStoreEntry(
            result_id=result_id,
            tool_name=tool_name,
            items=list(items),
            purpose=purpose,
            turn=self._turn,
            selection=self._selection,
            truncated=truncated,
            total_count=total_count if total_count is not None else len(items),
            timestamp=datetime.now(timezone.utc),
            replaces=replaces,
        )
        logger.info("result_stored", result_id=result_id, items=len(items), purpose=purpose)
        return result_id

    def get(self, result_id: str) -> ResultStoreEntry:
        """Fetch an entry.

        Raises:
            ResultNotFoundError: If the id was never registered
        """
        try:
            return self._entries[result_id]
        except KeyError:
            raise ResultNotFoundError(result_id) from None

    def entries(self, active_only: bool = False) -> list[ResultStoreEntry]:
        return [e for e in self._entries.values() if not active_only or e.status == "active"]

    def scope_from(self, result_id: str) -> ResultScope:
        """Node and entry ids of a stored result, for a follow-up search.

        Raises:
            ResultNotFoundError: If the id is unknown or the entry is stale
        """
        entry = self.get(result_id)
        if entry.status == "stale":
            raise ResultNotFoundError(result_id, reason="is stale")

        node_ids: list[str] = []
        entry_ids: list[str] = []
        for item in entry.items:
            node_id = item.id if item.is_node else item.parent_node_id
            if node_id and node_id not in node_ids:
                node_ids.append(node_id)
            if not item.is_node and item.id not in entry_ids:
                entry_ids.append(item.id)
        return ResultScope(node_ids=tuple(node_ids), entry_ids=tuple(entry_ids))

    def combine(
        self,
        operation: SetOperation,
        result_ids: Sequence[str],
        *,
        deduplicate: bool = True,
        preserve_order: bool = True,
        store: bool = True,
        tool_name: str = "combine_results",
    ) -> tuple[str | None, list[ResultItem]]:
        """Combine stored result sets and optionally register the outcome."""
        if len(result_ids) < 2:
            raise ValueError("combining needs at least two result ids")
        sets = [(rid, self.get(rid).items) for rid in result_ids]
        combined = combine_items(operation, sets, deduplicate=deduplicate, preserve_order=preserve_order)
        logger.info("results_combined", operation=operation, inputs=list(result_ids), items=len(combined))
        if not store:
            return None, combined
        return self.put(tool_name, combined, purpose="intermediate"), combined

    def full(self, result_id: str) -> list[ResultItem]:
        """Untruncated items, for user-facing display."""
        return list(self.get(result_id).items)

    def summary(self, result_id: str, length: int | None = None) -> list[ResultItem]:
        """Items with truncated content and no hierarchy, for the agent's context."""
        length = length or self.summary_length
        return [
            item.model_copy(update={
                "content": truncate_content(item.content, length),
                "children": None,
                "parents": None,
            })
            for item in self.get(result_id).items
        ]

    def new_turn(self, selection: str | None = None) -> int:
        """Start a conversation turn.

        When the selection changes, entries built from another selection go
        stale.
        """
        self._turn += 1
        if selection is not None and selection != self._selection:
            for result_id, entry in list(self._entries.items()):
                if entry.status == "active" and entry.selection is not None and entry.selection != selection:
                    self._entries[result_id] = entry.model_copy(update={"status": "stale"})
            self._selection = selection
        return self._turn

    def final_results(self) -> list[ResultItem]:
        """De-duplicated items of every active, non-intermediate entry."""
        sets = [
            (e.result_id, e.items)
            for e in self._entries.values()
            if e.status == "active" and e.purpose in FINAL_PURPOSES
        ]
        if not sets:
            return []
        return combine_items("union", sets)

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(dict(self._entries), self._counter, self._turn, self._selection)

    def restore(self, snapshot: StoreSnapshot) -> None:
        """Roll the store back to a snapshot (used when a search is cancelled)."""
        self._entries = dict(snapshot.entries)
        self._counter = snapshot.counter
        self._turn = snapshot.turn
        self._selection = snapshot.selection
