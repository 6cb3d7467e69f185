"""Entry point for running the QuickBooks Online MCP server.

Run with: uv run python -m quickbooks_mcp
Set TRANSPORT=http to serve streamable HTTP on HOST:PORT (default 0.0.0.0:3000).
"""

import logging
import os

import uvicorn

from quickbooks_mcp.server import create_http_app, mcp

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the MCP server with the transport selected by TRANSPORT."""
    transport = os.getenv("TRANSPORT", "stdio").lower()
    if transport == "http":
        logger.info(
            f"QuickBooks MCP Server running on port {mcp.settings.port} "
            "(health: /health, MCP: /mcp)"
        )
        uvicorn.run(
            create_http_app(),
            host=mcp.settings.host,
            port=mcp.settings.port,
            log_level=mcp.settings.log_level.lower(),
        )
    else:
        mcp.run()


if __name__ == "__main__":
    main()
