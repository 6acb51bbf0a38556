"""
Tests for the MCP tool handlers.
"""

import json

from conftest import FailingExecutor


def budget_search():
    return {"conditions": [{"kind": "text", "value": "budget"}]}


# ============== Tests for list_tools() ==============

class TestListTools:
    """Tests for tool registration."""

    async def test_tool_names(self):
        """Test every tool is listed with a schema."""
        from askgraph.tools import list_tools

        tools = await list_tools()
        assert [t.name for t in tools] == [
            "graph_search",
            "graph_combine_results",
            "graph_get_result",
            "graph_parse_attribute",
        ]
        assert "conditions" in tools[0].inputSchema["properties"]


# ============== Tests for call_tool() ==============

class TestGraphSearchTool:
    """Tests for the graph_search tool."""

    async def test_search(self, patched_context):
        """Test a search renders counts and items."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_search", budget_search())
        assert result.text.startswith("# Results `graph_search_001`")
        assert "**Found:** 6 | **Returned:** 6" in result.text
        assert "`f3` in **Finance**: budget draft" in result.text
        assert len(patched_context.store) == 1

    async def test_limited_search(self, patched_context):
        """Test truncated searches are flagged."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_search", {**budget_search(), "limit": 2})
        assert "**Returned:** 2 (limited)" in result.text

    async def test_invalid_request(self, patched_context):
        """Test requests without conditions are rejected."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_search", {})
        assert result.text.startswith("Error: invalid search request")

    async def test_compilation_error(self, patched_context):
        """Test compilation failures are reported as errors."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_search", {"conditions": [{"kind": "entry_ref", "value": "bad uid!"}]})
        assert result.text.startswith("Error: Compilation error")

    async def test_execution_error(self, monkeypatch):
        """Test executor failures show the failing query."""
        from askgraph import tools
        from askgraph.search import SearchContext

        monkeypatch.setattr(tools, "_context", SearchContext.create(FailingExecutor()))
        (result,) = await tools.call_tool("graph_search", budget_search())
        assert result.text.startswith("Execution error: graph store unreachable")
        assert "Query:\n[:find" in result.text

    async def test_expansion_marker(self, patched_context):
        """Test expanded matches name the term they came from."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_search", {
            "conditions": [{"kind": "text", "value": "invoice"}],
            "expansion": {"strategy": "synonyms", "min_results_threshold": 5},
        })
        assert "**Expansion:** synonyms" in result.text
        assert "_(via bill)_" in result.text


class TestOtherTools:
    """Tests for combine, get_result and parse_attribute."""

    async def test_combine(self, patched_context):
        """Test combining two stored searches."""
        from askgraph.tools import call_tool

        await call_tool("graph_search", budget_search())
        await call_tool("graph_search", {"conditions": [{"kind": "node_ref", "value": "Q3 Planning"}]})
        (result,) = await call_tool("graph_combine_results", {
            "operation": "intersection",
            "result_ids": ["graph_search_001", "graph_search_002"],
        })
        assert result.text.startswith("# Results `graph_combine_results_003`")
        assert "**Found:** 3" in result.text

    async def test_combine_unknown(self, patched_context):
        """Test combining unknown ids is an error."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_combine_results", {"operation": "union", "result_ids": ["a", "b"]})
        assert result.text == "Error: Result a not found"

    async def test_get_result_views(self, patched_context):
        """Test summary and full views of a stored result."""
        from askgraph.tools import call_tool

        await call_tool("graph_search", {"conditions": [{"kind": "text", "value": "invoice"}]})
        (summary,) = await call_tool("graph_get_result", {"result_id": "graph_search_001"})
        assert summary.text.startswith("# graph_search_001 (active, final)")

        (full,) = await call_tool("graph_get_result", {"result_id": "graph_search_001", "view": "full"})
        payload = json.loads(full.text)
        assert payload["result_id"] == "graph_search_001"
        assert {item["id"] for item in payload["items"]} == {"f5", "a1"}

    async def test_get_result_unknown(self, patched_context):
        """Test reading an unknown result."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_get_result", {"result_id": "graph_search_042"})
        assert result.text == "Error: Result graph_search_042 not found"

    async def test_parse_attribute(self, patched_context):
        """Test attribute expressions are parsed and normalized."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_parse_attribute", {"text": "attr:Status:page_ref:(Done | Closed)"})
        payload = json.loads(result.text)
        assert payload["key"] == "Status"
        assert payload["value_type"] == "node_ref"
        assert payload["normalized"] == "attr:Status:ref:(Done | Closed)"

        (error,) = await call_tool("graph_parse_attribute", {"text": "attr:Status:color:Red"})
        assert error.text.startswith("Error: invalid attribute value type")

    async def test_unknown_tool(self, patched_context):
        """Test unknown tool names."""
        from askgraph.tools import call_tool

        (result,) = await call_tool("graph_delete_everything", {})
        assert result.text == "Unknown tool: graph_delete_everything"


# ============== Tests for resources and context ==============

class TestResources:
    """Tests for the results resource."""

    async def test_list_resources(self):
        """Test the results resource is listed."""
        from askgraph.tools import list_resources

        resources = await list_resources()
        assert [str(r.uri) for r in resources] == ["graph://results"]

    async def test_read_results(self, patched_context):
        """Test stored results are listed as JSON."""
        from askgraph.tools import call_tool, read_resource

        await call_tool("graph_search", budget_search())
        entries = json.loads(await read_resource("graph://results"))
        assert entries == [{
            "result_id": "graph_search_001",
            "tool_name": "graph_search",
            "purpose": "final",
            "status": "active",
            "items": 6,
            "total_count": 6,
        }]

    async def test_unknown_resource(self, patched_context):
        """Test unknown resources return an error payload."""
        from askgraph.tools import read_resource

        payload = json.loads(await read_resource("graph://nothing"))
        assert payload == {"error": "Unknown resource: graph://nothing"}


class TestGetContext:
    """Tests for lazy context creation."""

    async def test_loads_graph_from_settings(self, graph_file, monkeypatch):
        """Test the first call loads the configured graph export."""
        from askgraph import tools
        from askgraph.config import settings

        monkeypatch.setattr(tools, "_context", None)
        monkeypatch.setattr(settings, "graph_path", graph_file)
        context = await tools.get_context()
        assert context.executor.graph.entry_count == 19
        assert await tools.get_context() is context
