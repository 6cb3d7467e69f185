"""Data models for the QuickBooks Online MCP server.

This module contains the dataclasses used throughout the application:
credentials and access tokens, the per-entity query options, invoice line
items, the flattened Profit & Loss report, and the single-customer lookup
result.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from dotenv import load_dotenv

Environment = Literal["sandbox", "production"]
InvoiceStatus = Literal["all", "open", "paid", "overdue"]
BillStatus = Literal["all", "unpaid", "paid"]

DEFAULT_LIMIT = 100
DEFAULT_OFFSET = 0


@dataclass
class Credentials:
    """OAuth2 client credentials and company identity.

    The refresh token is mutated in place by the TokenManager whenever
    QuickBooks rotates it, so one instance must be shared for the lifetime
    of the process.

    Args:
        client_id: Intuit OAuth2 client ID.
        client_secret: Intuit OAuth2 client secret.
        refresh_token: Long-lived refresh token (rotated by the server).
        company_id: QuickBooks company (realm) ID.
        environment: 'sandbox' or 'production'.
    """

    client_id: str
    client_secret: str
    refresh_token: str
    company_id: str
    environment: Environment = "sandbox"

    def __repr__(self) -> str:
        return (
            f"Credentials(client_id={self.client_id!r}, company_id={self.company_id!r}, "
            f"environment={self.environment!r})"
        )

    @classmethod
    def from_env(cls) -> "Credentials":
        """Build credentials from QUICKBOOKS_* environment variables.

        A .env file in the working directory is loaded first.

        Returns:
            Credentials instance.

        Raises:
            ValueError: If a required variable is missing or the environment
                is not 'sandbox' or 'production'.
        """
        load_dotenv()

        values = {
            "QUICKBOOKS_CLIENT_ID": os.getenv("QUICKBOOKS_CLIENT_ID", ""),
            "QUICKBOOKS_CLIENT_SECRET": os.getenv("QUICKBOOKS_CLIENT_SECRET", ""),
            "QUICKBOOKS_REFRESH_TOKEN": os.getenv("QUICKBOOKS_REFRESH_TOKEN", ""),
            "QUICKBOOKS_COMPANY_ID": os.getenv("QUICKBOOKS_COMPANY_ID", ""),
        }
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise ValueError(f"Missing {', '.join(missing)}. Please set them in .env file.")

        environment = os.getenv("QUICKBOOKS_ENVIRONMENT", "sandbox").lower()
        if environment not in ("sandbox", "production"):
            raise ValueError(
                f"Unsupported QUICKBOOKS_ENVIRONMENT: {environment}. "
                "Use 'sandbox' or 'production'."
            )

        return cls(
            client_id=values["QUICKBOOKS_CLIENT_ID"],
            client_secret=values["QUICKBOOKS_CLIENT_SECRET"],
            refresh_token=values["QUICKBOOKS_REFRESH_TOKEN"],
            company_id=values["QUICKBOOKS_COMPANY_ID"],
            environment=environment,  # type: ignore[arg-type]
        )


@dataclass
class AccessToken:
    """Short-lived bearer token held in memory only.

    Args:
        access_token: Bearer token for API calls (1 hour lifetime).
        expires_at: Instant from which the token is treated as expired. The
            safety margin has already been subtracted.
    """

    access_token: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """Check if the token must be refreshed before use."""
        return now >= self.expires_at


# =============================================================================
# Query Options
# =============================================================================


@dataclass(frozen=True)
class CustomerQuery:
    """Filter options for listing customers.

    Args:
        limit: Maximum number of records.
        offset: Number of records to skip (0-based).
        active_only: Only return active customers.
        search: Substring matched against DisplayName.
    """

    limit: int = DEFAULT_LIMIT
    offset: int = DEFAULT_OFFSET
    active_only: bool = True
    search: str | None = None


@dataclass(frozen=True)
class VendorQuery:
    """Filter options for listing vendors."""

    limit: int = DEFAULT_LIMIT
    offset: int = DEFAULT_OFFSET
    active_only: bool = True
    search: str | None = None


@dataclass(frozen=True)
class InvoiceQuery:
    """Filter options for listing invoices.

    Args:
        limit: Maximum number of records.
        offset: Number of records to skip (0-based).
        customer_id: Only invoices for this customer.
        status: 'all', 'open', 'paid' or 'overdue'.
        start_date: Earliest transaction date (YYYY-MM-DD).
        end_date: Latest transaction date (YYYY-MM-DD).
    """

    limit: int = DEFAULT_LIMIT
    offset: int = DEFAULT_OFFSET
    customer_id: str | None = None
    status: InvoiceStatus = "all"
    start_date: str | None = None
    end_date: str | None = None


@dataclass(frozen=True)
class AccountQuery:
    """Filter options for listing the chart of accounts."""

    limit: int = DEFAULT_LIMIT
    offset: int = DEFAULT_OFFSET
    account_type: str | None = None


@dataclass(frozen=True)
class BillQuery:
    """Filter options for listing bills."""

    limit: int = DEFAULT_LIMIT
    offset: int = DEFAULT_OFFSET
    vendor_id: str | None = None
    status: BillStatus = "all"


# =============================================================================
# Invoices and Reports
# =============================================================================


@dataclass
class LineItem:
    """A single invoice line.

    Args:
        description: Line item description.
        amount: Unit amount for this line.
        quantity: Quantity (default 1).
    """

    description: str
    amount: float
    quantity: float = 1


@dataclass
class ProfitLossReport:
    """Flattened Profit & Loss totals.

    Args:
        total_income: Summary of the Income section.
        total_cogs: Summary of the Cost of Goods Sold section.
        gross_profit: Gross profit line.
        total_expenses: Summary of the Expenses section.
        net_income: Net income line.
        details: Totals of any other named section in the report.
    """

    total_income: float = 0.0
    total_cogs: float = 0.0
    gross_profit: float = 0.0
    total_expenses: float = 0.0
    net_income: float = 0.0
    details: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_income": self.total_income,
            "total_cogs": self.total_cogs,
            "gross_profit": self.gross_profit,
            "total_expenses": self.total_expenses,
            "net_income": self.net_income,
            "details": dict(self.details),
        }


class LookupStatus(str, Enum):
    """Outcome of a single-record lookup."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


@dataclass
class CustomerLookup:
    """Result of fetching one customer by id.

    Exactly one of ``customer`` (when FOUND) or ``error`` (for the error
    statuses) is set; NOT_FOUND carries neither.
    """

    status: LookupStatus
    customer: dict[str, Any] | None = None
    error: Exception | None = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND
