"""
Pytest configuration and fixtures for askgraph tests.
"""

import asyncio

import pytest

from askgraph.graph import LocalGraphExecutor
from askgraph.search import SearchContext

# 2025-01-01, 2025-06-01 and 2025-09-01 in epoch milliseconds
JAN = 1735689600000
JUN = 1748736000000
SEP = 1756684800000


GRAPH_EXPORT = [
    {
        "title": "Finance",
        "uid": "fin",
        "create-time": JAN,
        "edit-time": SEP,
        "children": [
            {"uid": "f1", "string": "Review budget for [[Q3 Planning]]", "create-time": JAN, "edit-time": SEP},
            {"uid": "f2", "string": "#[[Q3 Planning]] budget approved", "create-time": JAN, "edit-time": JUN},
            {"uid": "f3", "string": "budget draft", "create-time": JAN, "edit-time": JAN},
            {"uid": "f4", "string": "Q3 Planning budget notes in prose", "create-time": JUN, "edit-time": JUN},
            {"uid": "f5", "string": "Invoice from vendor", "create-time": JUN, "edit-time": JUN},
        ],
    },
    {
        "title": "Meetings",
        "uid": "meet",
        "create-time": JUN,
        "edit-time": JUN,
        "children": [
            {
                "uid": "m1",
                "string": "Team sync about budget, see [[Q3 Planning]]",
                "create-time": JUN,
                "edit-time": JUN,
                "children": [
                    {
                        "uid": "m1a",
                        "string": "Action items for the team",
                        "children": [{"uid": "m1a1", "string": "Follow up with finance"}],
                    },
                    {"uid": "m1b", "string": "Next sync on Friday"},
                ],
            },
            {"uid": "m2", "string": "[[Q3 Planning]] kickoff", "create-time": SEP, "edit-time": SEP},
        ],
    },
    {
        "title": "Q3 Planning",
        "uid": "q3",
        "children": [{"uid": "q1", "string": "Goals for the quarter"}],
    },
    {
        "title": "Projects",
        "uid": "proj",
        "children": [
            {"uid": "p1", "string": "Status:: [[Done]]"},
            {"uid": "p2", "string": "Type:: [[Project]]"},
            {"uid": "p3", "string": "Owner::", "children": [{"uid": "p3a", "string": "[[Alice]]"}]},
        ],
    },
    {
        "title": "Accounting",
        "uid": "acct",
        "children": [
            {"uid": "a1", "string": "Paid the invoice today"},
            {"uid": "a2", "string": "Filed a bill for hosting"},
            {"uid": "a3", "string": "Scanned the receipt"},
        ],
    },
    {
        "title": "October 15th, 2026",
        "uid": "10-15-2026",
        "children": [{"uid": "d1", "string": "Daily budget check"}],
    },
]


class FakeTermGenerator:
    """Term generator returning canned terms and recording every call."""

    def __init__(self, terms=None, delay: float = 0.0, error: Exception | None = None):
        self.terms = terms if terms is not None else {}
        self.delay = delay
        self.error = error
        self.calls = []

    async def generate(self, request):
        self.calls.append((request.condition.value, request.strategy))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if isinstance(self.terms, dict):
            return list(self.terms.get(request.strategy, []))
        return list(self.terms)


class FailingExecutor:
    """Executor standing in for an unreachable graph store."""

    async def execute(self, query):
        raise ConnectionError("graph store unreachable")


class SlowExecutor:
    """Executor that never answers in time."""

    async def execute(self, query):
        await asyncio.sleep(10)
        return []


@pytest.fixture
def graph_export():
    """Raw outline export used to build the fixture graph."""
    return GRAPH_EXPORT


@pytest.fixture
def executor(graph_export):
    """Local executor over the fixture graph."""
    return LocalGraphExecutor.from_data(graph_export)


@pytest.fixture
def generator():
    """Fake generator answering synonyms for 'invoice'."""
    return FakeTermGenerator({"synonyms": ["bill", "receipt"]})


@pytest.fixture
def context(executor, generator):
    """Search context over the fixture graph with a fake term generator."""
    return SearchContext.create(executor, generator)


@pytest.fixture
def graph_file(tmp_path, graph_export):
    """Fixture graph written as a JSON export."""
    import json

    path = tmp_path / "graph.json"
    path.write_text(json.dumps(graph_export), encoding="utf-8")
    return path


@pytest.fixture
def patched_context(context, monkeypatch):
    """Install the fixture search context as the tool handlers' shared context."""
    from askgraph import tools

    monkeypatch.setattr(tools, "_context", context)
    return context
