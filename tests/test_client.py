"""Tests for the QuickBooks Online API client."""

import json
from datetime import timedelta

import httpx
import pytest

from quickbooks_mcp.client import QuickBooksClient, build_invoice_payload, parse_fault
from quickbooks_mcp.exceptions import (
    AuthenticationError,
    NetworkError,
    NotFoundError,
    QuickBooksError,
    RateLimitError,
    RemoteAPIError,
    ValidationError,
)
from quickbooks_mcp.models import (
    AccessToken,
    AccountQuery,
    Credentials,
    CustomerQuery,
    InvoiceQuery,
    LineItem,
    LookupStatus,
)


def _fault(message: str, code: str, detail: str | None = None) -> dict:
    error = {"Message": message, "code": code}
    if detail:
        error["Detail"] = detail
    return {"Fault": {"Error": [error], "type": "ValidationFault"}}


class TestParseFault:
    """Test cases for parse_fault function."""

    def test_message_and_code(self):
        assert parse_fault(_fault("Object Not Found", "610")) == ("Object Not Found", "610")

    def test_detail_appended(self):
        message, code = parse_fault(_fault("Invalid Reference Id", "2500", "Customer 9 is gone"))
        assert message == "Invalid Reference Id: Customer 9 is gone"
        assert code == "2500"

    def test_not_a_fault(self):
        assert parse_fault({"QueryResponse": {}}) == (None, None)
        assert parse_fault(None) == (None, None)
        assert parse_fault("oops") == (None, None)


class TestClientConfiguration:
    """Base URL and credential wiring."""

    def test_sandbox_base_url(self, qbo_client):
        assert qbo_client.base_url == "https://sandbox-quickbooks.api.intuit.com/v3/company/9130"

    def test_production_base_url(self, credentials):
        credentials.environment = "production"
        client = QuickBooksClient(credentials)
        assert client.base_url == "https://quickbooks.api.intuit.com/v3/company/9130"

    def test_token_manager_shares_credentials(self, credentials):
        client = QuickBooksClient(credentials)
        assert client.token_manager.credentials is credentials

    def test_credentials_repr_hides_secrets(self, credentials):
        text = repr(credentials)
        assert "client-secret" not in text
        assert "refresh-1" not in text
        assert "9130" in text


class TestCredentialsFromEnv:
    """Configuration from QUICKBOOKS_* environment variables."""

    @pytest.fixture
    def env(self, monkeypatch):
        monkeypatch.setenv("QUICKBOOKS_CLIENT_ID", "id")
        monkeypatch.setenv("QUICKBOOKS_CLIENT_SECRET", "secret")
        monkeypatch.setenv("QUICKBOOKS_REFRESH_TOKEN", "refresh")
        monkeypatch.setenv("QUICKBOOKS_COMPANY_ID", "123")
        monkeypatch.delenv("QUICKBOOKS_ENVIRONMENT", raising=False)
        return monkeypatch

    def test_defaults_to_sandbox(self, env):
        credentials = Credentials.from_env()
        assert credentials.client_id == "id"
        assert credentials.refresh_token == "refresh"
        assert credentials.company_id == "123"
        assert credentials.environment == "sandbox"

    def test_production(self, env):
        env.setenv("QUICKBOOKS_ENVIRONMENT", "production")
        assert Credentials.from_env().environment == "production"

    def test_missing_variables_named(self, env):
        env.setenv("QUICKBOOKS_REFRESH_TOKEN", "")
        env.setenv("QUICKBOOKS_COMPANY_ID", "")
        with pytest.raises(ValueError, match="QUICKBOOKS_REFRESH_TOKEN, QUICKBOOKS_COMPANY_ID"):
            Credentials.from_env()

    def test_unknown_environment(self, env):
        env.setenv("QUICKBOOKS_ENVIRONMENT", "staging")
        with pytest.raises(ValueError, match="Unsupported QUICKBOOKS_ENVIRONMENT"):
            Credentials.from_env()


class TestRequests:
    """Request construction and response mapping in _request."""

    @pytest.mark.asyncio
    async def test_list_invoices_end_to_end(self, qbo_client, mock_qbo, credentials):
        """First call refreshes, then queries with the new bearer token."""
        mock_qbo.route("GET", "/query", json={
            "QueryResponse": {"Invoice": [{"Id": "1", "TotalAmt": 100, "Balance": 50}]}
        })

        invoices = await qbo_client.list_invoices(
            InvoiceQuery(customer_id="123", status="open", limit=10, offset=0)
        )

        assert invoices == [{"Id": "1", "TotalAmt": 100, "Balance": 50}]
        assert len(mock_qbo.token_requests) == 1
        assert credentials.refresh_token == "xyz"

        request = mock_qbo.last_request
        assert request.method == "GET"
        assert request.headers["Authorization"] == "Bearer abc"
        assert request.headers["Accept"] == "application/json"
        assert request.url.params["query"] == (
            "SELECT * FROM Invoice WHERE CustomerRef = '123' AND Balance > '0' "
            "STARTPOSITION 1 MAXRESULTS 10"
        )

    @pytest.mark.asyncio
    async def test_token_reused_across_calls(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", json={"QueryResponse": {}})

        await qbo_client.list_customers()
        await qbo_client.list_vendors()

        assert len(mock_qbo.token_requests) == 1
        assert len(mock_qbo.requests) == 2

    @pytest.mark.asyncio
    async def test_empty_envelope_returns_empty_list(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", json={"QueryResponse": {}})
        assert await qbo_client.list_customers(CustomerQuery(search="nobody")) == []

    @pytest.mark.asyncio
    async def test_records_returned_in_order(self, qbo_client, mock_qbo):
        accounts = [{"Id": "3"}, {"Id": "1"}, {"Id": "2"}]
        mock_qbo.route("GET", "/query", json={"QueryResponse": {"Account": accounts}})

        assert await qbo_client.list_accounts(AccountQuery(limit=1000)) == accounts
        assert "MAXRESULTS 1000" in mock_qbo.last_request.url.params["query"]

    @pytest.mark.asyncio
    async def test_list_bills_reads_bill_key(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", json={
            "QueryResponse": {"Bill": [{"Id": "7"}], "startPosition": 1, "maxResults": 1}
        })
        assert await qbo_client.list_bills() == [{"Id": "7"}]

    @pytest.mark.asyncio
    async def test_invalid_query_never_reaches_network(self, qbo_client, mock_qbo):
        with pytest.raises(ValidationError):
            await qbo_client.list_invoices(InvoiceQuery(start_date="yesterday"))
        assert mock_qbo.requests == []

    @pytest.mark.asyncio
    async def test_auth_failure_sends_no_api_request(self, qbo_client, mock_qbo):
        mock_qbo.token_reply = (400, {"error": "invalid_grant"})

        with pytest.raises(AuthenticationError):
            await qbo_client.list_customers()
        assert mock_qbo.requests == []

    @pytest.mark.asyncio
    async def test_401_invalidates_token(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", status=401, json={"Fault": {"Error": []}})

        with pytest.raises(AuthenticationError, match="401"):
            await qbo_client.list_customers()
        assert qbo_client.token_manager.token is None

    @pytest.mark.asyncio
    async def test_401_keeps_token_refreshed_meanwhile(self, credentials, token_manager, clock):
        """Only the token that was actually rejected is dropped."""

        async def reject(request: httpx.Request) -> httpx.Response:
            # Another request refreshed the token while this one was in flight
            token_manager._token = AccessToken("def", clock.now + timedelta(hours=1))
            return httpx.Response(401, json={})

        api = httpx.AsyncClient(transport=httpx.MockTransport(reject))
        client = QuickBooksClient(credentials, token_manager=token_manager, http_client=api)
        try:
            with pytest.raises(AuthenticationError):
                await client.list_customers()
        finally:
            await api.aclose()

        assert token_manager.token.access_token == "def"

    @pytest.mark.asyncio
    async def test_error_status_carries_fault(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", status=400, json=_fault("QueryParserError", "4000"))

        with pytest.raises(RemoteAPIError) as exc_info:
            await qbo_client.list_customers()

        error = exc_info.value
        assert error.status_code == 400
        assert error.code == "4000"
        assert error.message == "QueryParserError"
        assert "QueryParserError" in error.body
        assert not error.is_transient

    @pytest.mark.asyncio
    async def test_server_error_keeps_raw_body(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", status=503, json="Service Unavailable")

        with pytest.raises(RemoteAPIError) as exc_info:
            await qbo_client.list_customers()

        assert exc_info.value.body == "Service Unavailable"
        assert exc_info.value.message == "API error: 503"
        assert exc_info.value.is_transient

    @pytest.mark.asyncio
    async def test_rate_limited(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", status=429, json={"Fault": {}})

        with pytest.raises(RateLimitError):
            await qbo_client.list_customers()

    @pytest.mark.asyncio
    async def test_fault_with_success_status(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", json=_fault("Unsupported Operation", "500"))

        with pytest.raises(RemoteAPIError, match="Unsupported Operation") as exc_info:
            await qbo_client.list_customers()
        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_network_failure(self, qbo_client, mock_qbo):
        mock_qbo.api_error = httpx.ConnectError("connection reset")

        with pytest.raises(NetworkError, match="Network connection failed"):
            await qbo_client.list_customers()

    @pytest.mark.asyncio
    async def test_timeout(self, qbo_client, mock_qbo):
        mock_qbo.api_error = httpx.ReadTimeout("timed out")

        with pytest.raises(NetworkError, match="timed out"):
            await qbo_client.list_customers()

    @pytest.mark.asyncio
    async def test_no_retry_on_failure(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/query", status=500, json=_fault("Internal", "0"))

        with pytest.raises(RemoteAPIError):
            await qbo_client.list_customers()
        assert len(mock_qbo.requests) == 1


class TestGetCustomer:
    """Single customer lookup statuses."""

    @pytest.mark.asyncio
    async def test_found(self, qbo_client, mock_qbo):
        customer = {"Id": "42", "DisplayName": "Acme"}
        mock_qbo.route("GET", "/customer/42", json={"Customer": customer})

        lookup = await qbo_client.get_customer("42")

        assert lookup.status is LookupStatus.FOUND
        assert lookup.found
        assert lookup.customer == customer
        assert lookup.error is None

    @pytest.mark.asyncio
    async def test_http_404_is_not_found(self, qbo_client):
        lookup = await qbo_client.get_customer("999")

        assert lookup.status is LookupStatus.NOT_FOUND
        assert lookup.customer is None
        assert lookup.error is None

    @pytest.mark.asyncio
    async def test_object_not_found_fault_is_not_found(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/customer/999", status=400, json=_fault("Object Not Found", "610"))
        lookup = await qbo_client.get_customer("999")
        assert lookup.status is LookupStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_customer_key_is_not_found(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/customer/42", json={"time": "2025-01-15"})
        lookup = await qbo_client.get_customer("42")
        assert lookup.status is LookupStatus.NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 429])
    async def test_server_errors_are_transient(self, qbo_client, mock_qbo, status):
        mock_qbo.route("GET", "/customer/42", status=status, json=_fault("Unavailable", "0"))

        lookup = await qbo_client.get_customer("42")

        assert lookup.status is LookupStatus.TRANSIENT_ERROR
        assert isinstance(lookup.error, RemoteAPIError)

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, qbo_client, mock_qbo):
        mock_qbo.api_error = httpx.ConnectError("connection reset")

        lookup = await qbo_client.get_customer("42")

        assert lookup.status is LookupStatus.TRANSIENT_ERROR
        assert isinstance(lookup.error, NetworkError)

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/customer/42", status=400, json=_fault("Invalid ID", "2030"))

        lookup = await qbo_client.get_customer("42")

        assert lookup.status is LookupStatus.PERMANENT_ERROR
        assert lookup.error.code == "2030"

    @pytest.mark.asyncio
    async def test_authentication_error_propagates(self, qbo_client, mock_qbo):
        mock_qbo.token_reply = (400, {"error": "invalid_grant"})
        with pytest.raises(AuthenticationError):
            await qbo_client.get_customer("42")

    @pytest.mark.asyncio
    async def test_id_is_path_encoded(self, qbo_client, mock_qbo):
        await qbo_client.get_customer("1/../2")
        assert mock_qbo.last_request.url.raw_path.decode().endswith("/customer/1%2F..%2F2")


class TestCreateInvoice:
    """Invoice payload mapping and creation."""

    def test_payload_line_mapping(self):
        payload = build_invoice_payload(
            "42",
            [LineItem("Consulting", 150.0, 2), LineItem("Setup fee", 50.0)],
            due_date="2025-02-01",
            memo="Thanks!",
        )

        assert payload == {
            "CustomerRef": {"value": "42"},
            "Line": [
                {
                    "Id": "1",
                    "Amount": 300.0,
                    "DetailType": "SalesItemLineDetail",
                    "Description": "Consulting",
                    "SalesItemLineDetail": {"Qty": 2, "UnitPrice": 150.0},
                },
                {
                    "Id": "2",
                    "Amount": 50.0,
                    "DetailType": "SalesItemLineDetail",
                    "Description": "Setup fee",
                    "SalesItemLineDetail": {"Qty": 1, "UnitPrice": 50.0},
                },
            ],
            "DueDate": "2025-02-01",
            "CustomerMemo": {"value": "Thanks!"},
        }

    def test_payload_omits_optional_fields(self):
        payload = build_invoice_payload("42", [LineItem("Item", 10.0)])
        assert "DueDate" not in payload
        assert "CustomerMemo" not in payload

    @pytest.mark.asyncio
    async def test_create_invoice(self, qbo_client, mock_qbo):
        created = {"Id": "130", "DocNumber": "1037", "TotalAmt": 300.0}
        mock_qbo.route("POST", "/invoice", json={"Invoice": created})

        invoice = await qbo_client.create_invoice("42", [LineItem("Consulting", 150.0, 2)])

        assert invoice == created
        request = mock_qbo.last_request
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        body = json.loads(request.content)
        assert body["CustomerRef"] == {"value": "42"}
        assert body["Line"][0]["Amount"] == 300.0

    @pytest.mark.asyncio
    async def test_create_invoice_without_invoice_in_response(self, qbo_client, mock_qbo):
        mock_qbo.route("POST", "/invoice", json={"time": "2025-01-15"})

        with pytest.raises(QuickBooksError, match="did not contain an invoice"):
            await qbo_client.create_invoice("42", [LineItem("Item", 10.0)])

    @pytest.mark.asyncio
    async def test_create_invoice_validation_fault(self, qbo_client, mock_qbo):
        mock_qbo.route(
            "POST", "/invoice", status=400,
            json=_fault("Invalid Reference Id", "2500", "Customer 42 is inactive"),
        )

        with pytest.raises(RemoteAPIError, match="Customer 42 is inactive"):
            await qbo_client.create_invoice("42", [LineItem("Item", 10.0)])


class TestProfitAndLoss:
    """Profit & Loss report retrieval."""

    @pytest.mark.asyncio
    async def test_report_request_and_parsing(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/reports/ProfitAndLoss", json={
            "Header": {"ReportName": "ProfitAndLoss"},
            "Rows": {"Row": [
                {"group": "Income", "Summary": {"ColData": [
                    {"value": "Total Income"}, {"value": "10000.00"}]}},
                {"group": "NetIncome", "Summary": {"ColData": [
                    {"value": "Net Income"}, {"value": "2500.50"}]}},
            ]},
        })

        report = await qbo_client.get_profit_and_loss("2024-01-01", "2024-12-31")

        assert report.total_income == 10000.0
        assert report.net_income == 2500.5
        assert report.total_expenses == 0.0
        params = mock_qbo.last_request.url.params
        assert params["start_date"] == "2024-01-01"
        assert params["end_date"] == "2024-12-31"

    @pytest.mark.asyncio
    async def test_inverted_range_is_forwarded(self, qbo_client, mock_qbo):
        mock_qbo.route("GET", "/reports/ProfitAndLoss", json={"Rows": {}})

        report = await qbo_client.get_profit_and_loss("2024-12-31", "2024-01-01")

        assert report.net_income == 0.0
        assert mock_qbo.last_request.url.params["start_date"] == "2024-12-31"

    @pytest.mark.asyncio
    async def test_missing_report_path(self, qbo_client, mock_qbo):
        with pytest.raises(NotFoundError):
            await qbo_client.get_profit_and_loss("2024-01-01", "2024-12-31")


class TestClientLifecycle:
    """Context manager and client reuse."""

    @pytest.mark.asyncio
    async def test_context_manager_closes_client(self, credentials, token_manager, mock_qbo):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(mock_qbo))
        async with QuickBooksClient(
            credentials, token_manager=token_manager, http_client=http_client
        ) as client:
            assert await client._get_client() is http_client

        assert http_client.is_closed
        assert client._http_client is None
