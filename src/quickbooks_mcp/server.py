"""MCP server exposing QuickBooks Online accounting tools.

This module defines the FastMCP server instance and the tools:
- qbo_list_customers: List customers, optionally filtered by name
- qbo_get_customer: Fetch one customer by id
- qbo_list_invoices: List invoices by customer, status and date range
- qbo_create_invoice: Create an invoice from line items
- qbo_list_accounts: Chart of accounts, optionally by account type
- qbo_profit_loss_report: Profit & Loss summary for a period
- qbo_list_vendors: List vendors
- qbo_list_bills: List bills by vendor and payment status
"""

import logging
import os
from typing import Literal

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from quickbooks_mcp import formatting
from quickbooks_mcp.client import QuickBooksClient
from quickbooks_mcp.exceptions import QuickBooksError
from quickbooks_mcp.formatting import ResponseFormat
from quickbooks_mcp.models import (
    AccountQuery,
    BillQuery,
    CustomerQuery,
    InvoiceQuery,
    LineItem,
    LookupStatus,
    VendorQuery,
)
from quickbooks_mcp.query import MAX_RESULTS

load_dotenv()

# Configure logging to stderr (not stdout - would corrupt MCP protocol)
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)

logger = logging.getLogger(__name__)

# Initialize FastMCP server
mcp = FastMCP(
    name="quickbooks-mcp",
    instructions="Query and manage QuickBooks Online customers, invoices, bills, vendors, accounts and reports",
    host=os.getenv("HOST", "0.0.0.0"),
    port=int(os.getenv("PORT", "3000")),
    json_response=True,
)

READ_ONLY = ToolAnnotations(
    readOnlyHint=True,
    destructiveHint=False,
    idempotentHint=True,
    openWorldHint=True,
)

# Lazy-initialized client (created on first tool call)
_client: QuickBooksClient | None = None


def get_client() -> QuickBooksClient:
    """Get or create the QuickBooksClient instance.

    Returns:
        Configured QuickBooksClient.
    """
    global _client
    if _client is None:
        _client = QuickBooksClient()
    return _client


def _clamp(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(limit, MAX_RESULTS)), max(0, offset)


def _fail(action: str, e: Exception) -> ToolError:
    """Log a failed tool call and wrap it for the protocol layer."""
    if isinstance(e, QuickBooksError):
        logger.error(f"Error {action}: {e.message}")
        message = e.message
        if e.action:
            message += f" ({e.action})"
        return ToolError(message)
    logger.error(f"Unexpected error {action}: {e}")
    return ToolError(f"{e} (Check server logs for details)")


@mcp.custom_route("/health", methods=["GET"])
async def health(_request: Request) -> JSONResponse:
    """Liveness probe for the HTTP transport."""
    return JSONResponse({"status": "ok", "server": "quickbooks-mcp"})


def create_http_app() -> Starlette:
    """Build the streamable HTTP app (/mcp and /health) with CORS enabled.

    Browser-based MCP clients need the preflight answered and the
    mcp-session-id header exposed.
    """
    app = mcp.streamable_http_app()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Accept",
            "Authorization",
            "mcp-session-id",
            "mcp-protocol-version",
        ],
        expose_headers=["mcp-session-id"],
    )
    return app


# =============================================================================
# Customers
# =============================================================================


@mcp.tool(title="List QuickBooks Customers", annotations=READ_ONLY)
async def qbo_list_customers(
    limit: int = 100,
    offset: int = 0,
    active_only: bool = True,
    search: str | None = None,
    response_format: ResponseFormat = "markdown",
) -> str:
    """List customers from QuickBooks Online.

    Returns customer details including name, email, phone, balance, and status.

    Args:
        limit: Maximum results (default 100, max 1000).
        offset: Number of results to skip for pagination.
        active_only: Only active customers (default true).
        search: Filter by display name (substring match).
        response_format: 'markdown' or 'json'.

    Returns:
        Customers with Id, DisplayName, PrimaryEmailAddr, PrimaryPhone, Balance, Active.
    """
    limit, offset = _clamp(limit, offset)
    try:
        customers = await get_client().list_customers(
            CustomerQuery(limit=limit, offset=offset, active_only=active_only, search=search)
        )
    except Exception as e:
        raise _fail("listing customers", e) from e

    if response_format == "json":
        return formatting.to_json(customers)
    return formatting.format_customers(customers)


@mcp.tool(title="Get QuickBooks Customer", annotations=READ_ONLY)
async def qbo_get_customer(
    customer_id: str,
    response_format: ResponseFormat = "markdown",
) -> str:
    """Get a single customer by QuickBooks ID.

    Args:
        customer_id: QuickBooks customer ID.
        response_format: 'markdown' or 'json'.

    Returns:
        The customer record, or a message saying that no such customer exists.
    """
    try:
        lookup = await get_client().get_customer(customer_id)
    except Exception as e:
        raise _fail(f"getting customer {customer_id}", e) from e

    if lookup.status is LookupStatus.NOT_FOUND:
        return f"Customer {customer_id} not found"
    if lookup.status is not LookupStatus.FOUND:
        retry_hint = "; try again later" if lookup.status is LookupStatus.TRANSIENT_ERROR else ""
        raise ToolError(f"Could not fetch customer {customer_id}: {lookup.error}{retry_hint}")

    if response_format == "json":
        return formatting.to_json(lookup.customer)
    return "\n".join(formatting.format_customer(lookup.customer or {}))


# =============================================================================
# Invoices
# =============================================================================


@mcp.tool(title="List QuickBooks Invoices", annotations=READ_ONLY)
async def qbo_list_invoices(
    limit: int = 100,
    offset: int = 0,
    customer_id: str | None = None,
    status: Literal["all", "open", "paid", "overdue"] = "all",
    start_date: str | None = None,
    end_date: str | None = None,
    response_format: ResponseFormat = "markdown",
) -> str:
    """List invoices from QuickBooks Online with filtering options.

    Args:
        limit: Maximum results (default 100, max 1000).
        offset: Number of results to skip for pagination.
        customer_id: Filter by specific customer.
        status: 'all', 'open', 'paid', or 'overdue' ('overdue' is not filtered yet).
        start_date: Earliest transaction date (YYYY-MM-DD).
        end_date: Latest transaction date (YYYY-MM-DD).
        response_format: 'markdown' or 'json'.

    Returns:
        Invoices with Id, DocNumber, CustomerRef, TxnDate, DueDate, TotalAmt, Balance.
    """
    limit, offset = _clamp(limit, offset)
    try:
        invoices = await get_client().list_invoices(
            InvoiceQuery(
                limit=limit,
                offset=offset,
                customer_id=customer_id,
                status=status,
                start_date=start_date,
                end_date=end_date,
            )
        )
    except Exception as e:
        raise _fail("listing invoices", e) from e

    if response_format == "json":
        return formatting.to_json(invoices)
    return formatting.format_invoices(invoices)


@mcp.tool(
    title="Create QuickBooks Invoice",
    annotations=ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,
    ),
)
async def qbo_create_invoice(
    customer_id: str,
    line_items: list[LineItem],
    due_date: str | None = None,
    memo: str | None = None,
) -> str:
    """Create a new invoice in QuickBooks Online.

    Args:
        customer_id: The QuickBooks customer ID.
        line_items: Lines as {description, amount, quantity}; quantity defaults to 1
            and the line total is amount x quantity.
        due_date: Invoice due date (YYYY-MM-DD).
        memo: Notes visible to the customer.

    Returns:
        Created invoice details including Id, DocNumber, and TotalAmt.
    """
    if not line_items:
        raise ToolError("At least one line item is required")

    try:
        invoice = await get_client().create_invoice(
            customer_id=customer_id,
            line_items=line_items,
            due_date=due_date,
            memo=memo,
        )
    except Exception as e:
        raise _fail("creating invoice", e) from e

    return formatting.format_created_invoice(invoice)


# =============================================================================
# Accounts and Reports
# =============================================================================


@mcp.tool(title="List QuickBooks Accounts", annotations=READ_ONLY)
async def qbo_list_accounts(
    account_type: Literal[
        "all", "Bank", "Accounts Receivable", "Accounts Payable", "Income", "Expense"
    ] = "all",
    limit: int = 1000,
    response_format: ResponseFormat = "markdown",
) -> str:
    """List the chart of accounts from QuickBooks Online.

    Args:
        account_type: Filter by type ('all', 'Bank', 'Accounts Receivable', etc.).
        limit: Maximum results (default 1000).
        response_format: 'markdown' or 'json'.

    Returns:
        Accounts with Id, Name, AccountType, CurrentBalance.
    """
    limit, _ = _clamp(limit, 0)
    try:
        accounts = await get_client().list_accounts(
            AccountQuery(
                limit=limit,
                account_type=None if account_type == "all" else account_type,
            )
        )
    except Exception as e:
        raise _fail("listing accounts", e) from e

    if response_format == "json":
        return formatting.to_json(accounts)
    return formatting.format_accounts(accounts)


@mcp.tool(title="Get Profit & Loss Report", annotations=READ_ONLY)
async def qbo_profit_loss_report(
    start_date: str,
    end_date: str,
    response_format: ResponseFormat = "markdown",
) -> str:
    """Generate a Profit & Loss (Income Statement) report.

    Args:
        start_date: Report start date (YYYY-MM-DD).
        end_date: Report end date (YYYY-MM-DD).
        response_format: 'markdown' or 'json'.

    Returns:
        Income, Cost of Goods Sold, Gross Profit, Expenses, and Net Income totals.
    """
    try:
        report = await get_client().get_profit_and_loss(start_date, end_date)
    except Exception as e:
        raise _fail("getting P&L report", e) from e

    if response_format == "json":
        return formatting.to_json(report.to_dict())
    return formatting.format_profit_and_loss(report, start_date, end_date)


# =============================================================================
# Vendors and Bills
# =============================================================================


@mcp.tool(title="List QuickBooks Vendors", annotations=READ_ONLY)
async def qbo_list_vendors(
    limit: int = 100,
    offset: int = 0,
    active_only: bool = True,
    search: str | None = None,
    response_format: ResponseFormat = "markdown",
) -> str:
    """List vendors/suppliers from QuickBooks Online.

    Args:
        limit: Maximum results (default 100, max 1000).
        offset: Number of results to skip for pagination.
        active_only: Only active vendors (default true).
        search: Filter by display name (substring match).
        response_format: 'markdown' or 'json'.

    Returns:
        Vendors with Id, DisplayName, Email, Phone, Balance.
    """
    limit, offset = _clamp(limit, offset)
    try:
        vendors = await get_client().list_vendors(
            VendorQuery(limit=limit, offset=offset, active_only=active_only, search=search)
        )
    except Exception as e:
        raise _fail("listing vendors", e) from e

    if response_format == "json":
        return formatting.to_json(vendors)
    return formatting.format_vendors(vendors)


@mcp.tool(title="List QuickBooks Bills", annotations=READ_ONLY)
async def qbo_list_bills(
    limit: int = 100,
    offset: int = 0,
    vendor_id: str | None = None,
    status: Literal["all", "unpaid", "paid"] = "all",
    response_format: ResponseFormat = "markdown",
) -> str:
    """List bills/payables from QuickBooks Online.

    Args:
        limit: Maximum results (default 100, max 1000).
        offset: Number of results to skip for pagination.
        vendor_id: Filter by vendor.
        status: 'all', 'unpaid', or 'paid'.
        response_format: 'markdown' or 'json'.

    Returns:
        Bills with Id, VendorRef, TxnDate, DueDate, TotalAmt, Balance.
    """
    limit, offset = _clamp(limit, offset)
    try:
        bills = await get_client().list_bills(
            BillQuery(limit=limit, offset=offset, vendor_id=vendor_id, status=status)
        )
    except Exception as e:
        raise _fail("listing bills", e) from e

    if response_format == "json":
        return formatting.to_json(bills)
    return formatting.format_bills(bills)
