"""
Main entry point for the AskGraph MCP server.

This module provides the main() function and server initialization.
"""

import asyncio

import structlog
from mcp.server.stdio import stdio_server

from .config import settings
from .logging import configure_logging
from .tools import server

logger = structlog.get_logger(__name__)


def main():
    """Main entry point."""
    configure_logging(verbose=settings.debug)
    logger.info("server_starting", graph_path=str(settings.graph_path), mode=settings.security_mode)

    async def run():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())

    asyncio.run(run())


if __name__ == "__main__":
    main()
