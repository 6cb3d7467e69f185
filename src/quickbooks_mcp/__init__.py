"""QuickBooks Online MCP Server.

A Model Context Protocol server exposing QuickBooks Online customers,
invoices, bills, vendors, accounts and Profit & Loss reports to AI
assistants.
"""

__version__ = "1.0.0"

from quickbooks_mcp.server import mcp

__all__ = ["mcp", "__version__"]
