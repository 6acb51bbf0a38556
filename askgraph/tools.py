"""
MCP Tools module for the AskGraph query engine.

Contains the MCP tool handlers (list_tools and call_tool) and the
conversation-scoped search context they share.
"""

import json
from typing import Any

import structlog
from mcp.server import Server
from mcp.types import (
    Resource,
    TextContent,
    Tool,
)
from pydantic import ValidationError

from .config import settings
from .graph import LocalGraphExecutor
from .models import AttributeCondition, ResultItem, SearchRequest, ToolResponse
from .parser import parse_attribute_condition, serialize_attribute_condition
from .search import SearchContext, combine_results, search
from .utils import ExecutionError, ResultNotFoundError

logger = structlog.get_logger(__name__)

# Initialize server
server = Server("askgraph")

_context: SearchContext | None = None


async def get_context() -> SearchContext:
    """Return the shared search context, loading the graph on first use."""
    global _context
    if _context is None:
        executor = await LocalGraphExecutor.from_file(settings.graph_path)
        _context = SearchContext.create(executor)
        logger.info("search_context_created", graph_path=str(settings.graph_path))
    return _context


def set_context(context: SearchContext | None) -> None:
    """Replace the shared search context (e.g. with a remote executor)."""
    global _context
    _context = context


def _format_item(item: ResultItem) -> str:
    title = item.node_title or item.id
    if item.is_node:
        line = f"- **{title}** (`{item.id}`)"
    else:
        line = f"- `{item.id}` in **{title}**"
        if item.content:
            line += f": {item.content}"
    if item.matched_term and item.expansion_level:
        line += f" _(via {item.matched_term})_"
    return line


def format_response(response: ToolResponse, items: list[ResultItem]) -> str:
    """Render a tool response as markdown for the agent."""
    if not response.success:
        output = f"Error: {response.error}"
        if response.warnings:
            output += "\n\nWarnings:\n" + "\n".join(f"- {w}" for w in response.warnings)
        return output

    meta = response.metadata
    output = f"# Results `{response.result_id}`\n\n"
    output += f"**Found:** {meta.total_found} | **Returned:** {meta.returned_count}"
    if meta.was_limited:
        output += " (limited)"
    output += "\n"
    if meta.expansion_applied:
        output += f"**Expansion:** {', '.join(meta.expansion_applied)}\n"
    if meta.search_guidance:
        output += f"**Quality:** {meta.search_guidance.result_quality}"
        if meta.search_guidance.suggestions:
            output += f" | **Next:** {', '.join(meta.search_guidance.suggestions)}"
        output += "\n"
    if response.warnings:
        output += "\n## Warnings\n" + "\n".join(f"- {w}" for w in response.warnings) + "\n"
    if items:
        output += "\n## Items\n" + "\n".join(_format_item(item) for item in items) + "\n"
    return output


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return [
        Tool(
            name="graph_search",
            description=(
                "Search the knowledge graph with structured conditions. Text, node "
                "reference ([[Title]]), entry reference and regex conditions can be "
                "combined with AND/OR groups, scoped to single entries or whole nodes, "
                "expanded semantically (term*, term~, term~all) and narrowed to a "
                "previous result with from_result_id."
            ),
            inputSchema=SearchRequest.model_json_schema(),
        ),
        Tool(
            name="graph_combine_results",
            description="Combine stored result sets by id using union, intersection, difference or symmetric_difference.",
            inputSchema={
                "type": "object",
                "properties": {
                    "operation": {
                        "type": "string",
                        "enum": ["union", "intersection", "difference", "symmetric_difference"],
                    },
                    "result_ids": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Result ids such as graph_search_001",
                    },
                    "deduplicate": {"type": "boolean", "default": True},
                    "preserve_order": {"type": "boolean", "default": True},
                },
                "required": ["operation", "result_ids"],
            },
        ),
        Tool(
            name="graph_get_result",
            description="Read a stored result set. 'summary' truncates content, 'full' returns everything as JSON.",
            inputSchema={
                "type": "object",
                "properties": {
                    "result_id": {"type": "string"},
                    "view": {"type": "string", "enum": ["summary", "full"], "default": "summary"},
                },
                "required": ["result_id"],
            },
        ),
        Tool(
            name="graph_parse_attribute",
            description="Parse an attr:key:type:(A + B - C) attribute expression and show its normalized form.",
            inputSchema={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""
    context = await get_context()

    if name == "graph_search":
        try:
            request = SearchRequest.model_validate(arguments)
        except ValidationError as e:
            return [TextContent(type="text", text=f"Error: invalid search request\n{e}")]
        try:
            response = await search(request, context)
        except ExecutionError as e:
            logger.error("graph_search_failed", error=str(e))
            return [TextContent(type="text", text=f"Execution error: {e}\n\nQuery:\n{e.query}")]
        items = context.store.summary(response.result_id) if response.success else []
        return [TextContent(type="text", text=format_response(response, items))]

    elif name == "graph_combine_results":
        response = combine_results(
            context,
            arguments.get("operation", "union"),
            arguments.get("result_ids", []),
            deduplicate=arguments.get("deduplicate", True),
            preserve_order=arguments.get("preserve_order", True),
        )
        items = context.store.summary(response.result_id) if response.success else []
        return [TextContent(type="text", text=format_response(response, items))]

    elif name == "graph_get_result":
        result_id = arguments.get("result_id", "")
        try:
            entry = context.store.get(result_id)
        except ResultNotFoundError as e:
            return [TextContent(type="text", text=f"Error: {e}")]
        if arguments.get("view", "summary") == "full":
            payload = entry.model_dump(mode="json")
            return [TextContent(type="text", text=json.dumps(payload, indent=2))]
        items = context.store.summary(result_id)
        output = f"# {result_id} ({entry.status}, {entry.purpose})\n\n"
        output += "\n".join(_format_item(item) for item in items) or "No items."
        return [TextContent(type="text", text=output)]

    elif name == "graph_parse_attribute":
        parsed = parse_attribute_condition(arguments.get("text", ""))
        if not isinstance(parsed, AttributeCondition):
            return [TextContent(type="text", text=f"Error: {parsed.reason}")]
        payload = parsed.model_dump(mode="json")
        payload["normalized"] = serialize_attribute_condition(parsed)
        return [TextContent(type="text", text=json.dumps(payload, indent=2))]

    return [TextContent(type="text", text=f"Unknown tool: {name}")]


# ============== Resources ==============

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    return [
        Resource(
            uri="graph://results",
            name="Stored Results",
            description="Result sets registered in this conversation",
            mimeType="application/json",
        ),
    ]


@server.read_resource()
async def read_resource(uri: str) -> str:
    """Read a resource."""
    if str(uri) == "graph://results":
        context = await get_context()
        entries = [
            {
                "result_id": e.result_id,
                "tool_name": e.tool_name,
                "purpose": e.purpose,
                "status": e.status,
                "items": len(e.items),
                "total_count": e.total_count,
            }
            for e in context.store.entries()
        ]
        return json.dumps(entries, indent=2)

    return json.dumps({"error": f"Unknown resource: {uri}"})
