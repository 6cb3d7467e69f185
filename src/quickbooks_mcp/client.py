"""QuickBooks Online API client.

This module provides the QuickBooksClient class for making authenticated
requests to the QuickBooks Online accounting API: entity queries, invoice
creation, single customer lookup and the Profit & Loss report.
"""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from quickbooks_mcp.auth import TokenManager, get_base_url
from quickbooks_mcp.exceptions import (
    AuthenticationError,
    NetworkError,
    NotFoundError,
    QuickBooksError,
    RateLimitError,
    RemoteAPIError,
)
from quickbooks_mcp.models import (
    AccountQuery,
    BillQuery,
    Credentials,
    CustomerLookup,
    CustomerQuery,
    InvoiceQuery,
    LineItem,
    LookupStatus,
    ProfitLossReport,
    VendorQuery,
)
from quickbooks_mcp.query import (
    build_account_query,
    build_bill_query,
    build_customer_query,
    build_invoice_query,
    build_vendor_query,
)
from quickbooks_mcp.reports import parse_profit_and_loss

logger = logging.getLogger(__name__)

# QuickBooks fault code for "Object Not Found"
OBJECT_NOT_FOUND_CODE = "610"


def parse_fault(data: Any) -> tuple[str | None, str | None]:
    """Extract (message, code) from a QuickBooks Fault envelope.

    QuickBooks reports errors as:
        {"Fault": {"Error": [{"Message": "...", "Detail": "...", "code": "610"}],
                   "type": "ValidationFault"}}

    Returns:
        Tuple of message and code, each None when absent.
    """
    if not isinstance(data, dict):
        return None, None
    fault = data.get("Fault") or data.get("fault")
    if not isinstance(fault, dict):
        return None, None
    errors = fault.get("Error") or fault.get("error") or []
    if not errors or not isinstance(errors[0], dict):
        return fault.get("type"), None

    error = errors[0]
    message = error.get("Message") or error.get("message")
    detail = error.get("Detail") or error.get("detail")
    if message and detail and detail != message:
        message = f"{message}: {detail}"
    return message or detail, error.get("code")


def build_invoice_payload(
    customer_id: str,
    line_items: list[LineItem],
    due_date: str | None = None,
    memo: str | None = None,
) -> dict[str, Any]:
    """Map invoice input onto the QuickBooks invoice creation schema.

    Each line item becomes a SalesItemLineDetail line whose Amount is the
    unit amount multiplied by the quantity.

    Args:
        customer_id: QuickBooks customer ID.
        line_items: Lines to invoice.
        due_date: Optional due date (YYYY-MM-DD).
        memo: Optional memo visible to the customer.

    Returns:
        Request body for POST /invoice.
    """
    lines = []
    for index, item in enumerate(line_items, start=1):
        quantity = item.quantity if item.quantity is not None else 1
        lines.append({
            "Id": str(index),
            "Amount": item.amount * quantity,
            "DetailType": "SalesItemLineDetail",
            "Description": item.description,
            "SalesItemLineDetail": {
                "Qty": quantity,
                "UnitPrice": item.amount,
            },
        })

    payload: dict[str, Any] = {
        "CustomerRef": {"value": customer_id},
        "Line": lines,
    }
    if due_date:
        payload["DueDate"] = due_date
    if memo:
        payload["CustomerMemo"] = {"value": memo}
    return payload


class QuickBooksClient:
    """Async HTTP client for the QuickBooks Online accounting API.

    This client handles:
    - Bearer token attachment through the TokenManager
    - Query dispatch with pagination
    - Mapping of HTTP failures onto the exception hierarchy
    - Request timeout (30 seconds)

    Failed requests are never retried; retry policy belongs to the caller.
    """

    TIMEOUT = 30.0  # seconds

    def __init__(
        self,
        credentials: Credentials | None = None,
        token_manager: TokenManager | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the QuickBooks client.

        Args:
            credentials: OAuth credentials (or from QUICKBOOKS_* env vars).
            token_manager: Token manager to use; created from the
                credentials when omitted.
            http_client: Optional preconfigured AsyncClient.
        """
        self.credentials = credentials or Credentials.from_env()
        self.base_url = (
            f"{get_base_url(self.credentials.environment)}"
            f"/v3/company/{self.credentials.company_id}"
        )
        self.token_manager = token_manager or TokenManager(
            self.credentials, http_client=http_client
        )
        self._http_client = http_client

    async def __aenter__(self) -> "QuickBooksClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client.

        Returns:
            Configured AsyncClient instance.
        """
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.TIMEOUT,
                limits=httpx.Limits(max_keepalive_connections=5),
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Make an authenticated request against the company API.

        Args:
            method: HTTP method (GET, POST).
            path: Path below /v3/company/<id> (e.g. "/query").
            **kwargs: Additional arguments for httpx.request.

        Returns:
            Decoded JSON response.

        Raises:
            AuthenticationError: If no token can be obtained or it is rejected.
            RemoteAPIError: On non-success responses.
            NetworkError: On connection errors and timeouts.
        """
        client = await self._get_client()
        access_token = await self.token_manager.get_valid_token()

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}{path}"

        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError("Request timed out", e) from e
        except httpx.RequestError as e:
            raise NetworkError("Network connection failed", e) from e

        if response.status_code == 401:
            # Token might have been revoked; next call starts with a refresh
            self.token_manager.invalidate(access_token)
            raise AuthenticationError("Access token rejected by QuickBooks (401)")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                body=response.text,
            )

        if response.status_code == 404:
            raise NotFoundError(path, body=response.text)

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            message, code = parse_fault(data)
            raise RemoteAPIError(
                message or f"API error: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
                code=code,
            )

        if not isinstance(data, dict):
            raise RemoteAPIError(
                "Unexpected response from QuickBooks",
                status_code=response.status_code,
                body=response.text,
            )

        # Some faults come back with a 200 status
        if "Fault" in data:
            message, code = parse_fault(data)
            raise RemoteAPIError(
                message or "QuickBooks returned a fault",
                status_code=response.status_code,
                body=response.text,
                code=code,
            )

        return data

    async def query(self, entity: str, sql: str) -> list[dict[str, Any]]:
        """Run a query and return the records of the given entity kind.

        Args:
            entity: Entity kind named in the response envelope (e.g. "Invoice").
            sql: Query language string.

        Returns:
            Records in the order returned by QuickBooks (empty if none).
        """
        logger.debug(f"Query: {sql}")
        data = await self._request("GET", "/query", params={"query": sql})
        return data.get("QueryResponse", {}).get(entity, [])

    async def list_customers(self, options: CustomerQuery | None = None) -> list[dict[str, Any]]:
        return await self.query("Customer", build_customer_query(options or CustomerQuery()))

    async def list_vendors(self, options: VendorQuery | None = None) -> list[dict[str, Any]]:
        return await self.query("Vendor", build_vendor_query(options or VendorQuery()))

    async def list_accounts(self, options: AccountQuery | None = None) -> list[dict[str, Any]]:
        return await self.query("Account", build_account_query(options or AccountQuery()))

    async def list_bills(self, options: BillQuery | None = None) -> list[dict[str, Any]]:
        return await self.query("Bill", build_bill_query(options or BillQuery()))

    async def list_invoices(self, options: InvoiceQuery | None = None) -> list[dict[str, Any]]:
        return await self.query("Invoice", build_invoice_query(options or InvoiceQuery()))

    async def get_customer(self, customer_id: str) -> CustomerLookup:
        """Fetch a single customer by id.

        Args:
            customer_id: QuickBooks customer ID.

        Returns:
            CustomerLookup: FOUND with the record, NOT_FOUND, or an error
            status classifying the failure as transient (network, 429, 5xx)
            or permanent.

        Raises:
            AuthenticationError: If no valid token can be obtained.
        """
        try:
            data = await self._request("GET", f"/customer/{quote(customer_id, safe='')}")
        except NotFoundError:
            return CustomerLookup(LookupStatus.NOT_FOUND)
        except NetworkError as e:
            logger.warning(f"Customer {customer_id} lookup failed: {e.message}")
            return CustomerLookup(LookupStatus.TRANSIENT_ERROR, error=e)
        except RemoteAPIError as e:
            if e.code == OBJECT_NOT_FOUND_CODE:
                return CustomerLookup(LookupStatus.NOT_FOUND)
            logger.warning(f"Customer {customer_id} lookup failed: {e.message}")
            status = LookupStatus.TRANSIENT_ERROR if e.is_transient else LookupStatus.PERMANENT_ERROR
            return CustomerLookup(status, error=e)

        customer = data.get("Customer")
        if customer is None:
            return CustomerLookup(LookupStatus.NOT_FOUND)
        return CustomerLookup(LookupStatus.FOUND, customer=customer)

    async def create_invoice(
        self,
        customer_id: str,
        line_items: list[LineItem],
        due_date: str | None = None,
        memo: str | None = None,
    ) -> dict[str, Any]:
        """Create an invoice.

        Not idempotent: retrying after an ambiguous failure may create a
        duplicate invoice.

        Returns:
            The created invoice as returned by QuickBooks (authoritative Id,
            DocNumber and totals).
        """
        payload = build_invoice_payload(customer_id, line_items, due_date, memo)
        data = await self._request("POST", "/invoice", json=payload)
        invoice = data.get("Invoice")
        if invoice is None:
            raise QuickBooksError("Invoice creation response did not contain an invoice")
        logger.info(f"Created invoice {invoice.get('Id')} for customer {customer_id}")
        return invoice

    async def get_profit_and_loss(self, start_date: str, end_date: str) -> ProfitLossReport:
        """Fetch the Profit & Loss report for a date range.

        The range is forwarded as given; an inverted range is not rejected
        here and QuickBooks decides what it returns.

        Args:
            start_date: Report start date (YYYY-MM-DD).
            end_date: Report end date (YYYY-MM-DD).

        Returns:
            ProfitLossReport with the flattened totals.
        """
        data = await self._request(
            "GET",
            "/reports/ProfitAndLoss",
            params={"start_date": start_date, "end_date": end_date},
        )
        return parse_profit_and_loss(data)
