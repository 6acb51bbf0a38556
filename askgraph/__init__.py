# AskGraph query engine
#
# Modular package structure:
# - config.py: Settings and expansion constants
# - logging.py: structlog configuration
# - models.py: Pydantic models for conditions, plans, results and responses
# - utils.py: Regex helpers, similarity, seeded sampling, cancellation and errors
# - parser.py: Attribute, logical-expression, suffix and scope parsers
# - query.py: Datalog AST, serializer and reader
# - compiler.py: Condition trees to query plans
# - graph.py: GraphExecutor protocol and local in-memory executor
# - expansion.py: Semantic expansion engine
# - processor.py: Scoring, filtering, sorting, hierarchy and limits
# - cache.py: ResultStore and result-set combination
# - search.py: Search pipeline
# - tools.py: MCP tool handlers and server instance
# - main.py: Entry point and server initialization
