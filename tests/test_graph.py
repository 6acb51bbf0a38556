"""
Tests for the in-memory graph executor.
"""

import pytest
import yaml

from askgraph.models import Condition


# ============== Tests for OutlineGraph.from_export() ==============

class TestFromExport:
    """Tests for loading outline exports."""

    def test_counts(self, executor):
        """Test nodes, reference stubs and nested entries are indexed."""
        # six nodes plus stubs for Done, Project, Alice, Status, Type, Owner
        assert executor.graph.node_count == 12
        assert executor.graph.entry_count == 19

    def test_nodes_wrapper_accepted(self, graph_export):
        """Test {"nodes": [...]} exports load like bare lists."""
        from askgraph.graph import OutlineGraph

        graph = OutlineGraph.from_export({"nodes": graph_export})
        assert graph.entry_count == 19

    def test_is_graph_executor(self, executor):
        """Test the local executor satisfies the executor protocol."""
        from askgraph.graph import GraphExecutor

        assert isinstance(executor, GraphExecutor)


# ============== Tests for LocalGraphExecutor.execute() ==============

class TestExecute:
    """Tests for query evaluation."""

    async def test_reference_lookup(self, executor):
        """Test entries are found through their reference edges."""
        rows = await executor.execute(
            '[:find ?uid :where [?r :node/title "Q3 Planning"] [?e :entry/refs ?r] [?e :entry/uid ?uid]]'
        )
        assert {row[0] for row in rows} == {"f1", "f2", "m1", "m2"}

    async def test_compiled_plan(self, executor):
        """Test a compiled block plan returns entry rows."""
        from askgraph.compiler import compile_search

        plan = compile_search([Condition(value="budget")])
        rows = await executor.execute(plan.text)
        assert {row[0] for row in rows} == {"f1", "f2", "f3", "f4", "m1", "d1"}
        f1 = next(row for row in rows if row[0] == "f1")
        assert f1[4:] == ["Finance", "fin"]

    async def test_content_plan_intersects_within_node(self, executor):
        """Test content scope lets different entries satisfy each condition."""
        from askgraph.compiler import compile_search

        plan = compile_search([Condition(value="budget"), Condition(value="kickoff")], scope="content")
        rows = await executor.execute(plan.text)
        assert [row[0] for row in rows] == ["meet"]

    async def test_children_and_parents(self, executor):
        """Test hierarchy reads follow parent edges."""
        from askgraph.compiler import children_query, parents_query

        children = await executor.execute(children_query(["m1"]))
        assert sorted(children) == [
            ["m1", "m1a", "Action items for the team", 0],
            ["m1", "m1b", "Next sync on Friday", 1],
        ]
        parents = await executor.execute(parents_query(["m1a1"]))
        assert parents == [["m1a1", "m1a", "Action items for the team"]]

    async def test_query_count(self, executor):
        """Test each executed query is counted."""
        await executor.execute('[:find ?u :where [?e :entry/uid ?u]]')
        await executor.execute('[:find ?u :where [?e :entry/uid ?u]]')
        assert executor.query_count == 2

    @pytest.mark.parametrize("query", [
        "[:find ?e :where",
        "[:find ?u :where [?e :entry/uid ?u] [(frobnicate ?u)]]",
        '[:find ?u :where [?e :entry/uid ?u] [(re-pattern "ab[") ?p]]',
        "[:find ?x :where [?e :entry/uid ?u]]",
        "[:find ?u :where [(re-find ?p ?u)] [?e :entry/uid ?u]]",
    ])
    async def test_bad_queries_raise_execution_error(self, executor, query):
        """Test malformed or unevaluable queries raise ExecutionError with the query."""
        from askgraph.utils import ExecutionError

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(query)
        assert exc_info.value.query == query


# ============== Tests for LocalGraphExecutor.from_file() ==============

class TestFromFile:
    """Tests for loading exports from disk."""

    async def test_json(self, graph_file):
        """Test JSON exports load."""
        from askgraph.graph import LocalGraphExecutor

        executor = await LocalGraphExecutor.from_file(graph_file)
        assert executor.graph.entry_count == 19

    async def test_yaml(self, tmp_path, graph_export):
        """Test YAML exports load."""
        from askgraph.graph import LocalGraphExecutor

        path = tmp_path / "graph.yaml"
        path.write_text(yaml.safe_dump(graph_export), encoding="utf-8")
        executor = await LocalGraphExecutor.from_file(path)
        rows = await executor.execute('[:find ?u :where [?e :entry/string "Invoice from vendor"] [?e :entry/uid ?u]]')
        assert rows == [["f5"]]

    async def test_missing_file(self, tmp_path):
        """Test a missing export raises FileNotFoundError."""
        from askgraph.graph import LocalGraphExecutor

        with pytest.raises(FileNotFoundError):
            await LocalGraphExecutor.from_file(tmp_path / "missing.json")
