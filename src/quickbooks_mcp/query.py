"""Query construction for the QuickBooks Online query language.

QuickBooks exposes a SQL-like language on its ``/query`` endpoint:

    SELECT * FROM Invoice WHERE CustomerRef = '123' AND Balance > '0'
    STARTPOSITION 1 MAXRESULTS 10

This module turns the typed query options from ``models`` into such strings.
Conditions are collected as Predicate objects and every string value is
escaped before it is interpolated.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date

from quickbooks_mcp.exceptions import ValidationError
from quickbooks_mcp.models import (
    DEFAULT_LIMIT,
    DEFAULT_OFFSET,
    AccountQuery,
    BillQuery,
    CustomerQuery,
    InvoiceQuery,
    VendorQuery,
)

logger = logging.getLogger(__name__)

ENTITY_KINDS = frozenset({"Customer", "Invoice", "Account", "Vendor", "Bill"})

MAX_RESULTS = 1000

_FIELD_RE = re.compile(r"^[A-Za-z][A-Za-z0-9.]*$")
_OPERATORS = frozenset({"=", "<", ">", "<=", ">=", "LIKE"})
_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def escape_query_value(value: str) -> str:
    """Escape a string for use inside a single-quoted query literal.

    The QuickBooks query language uses backslash escapes, so backslashes and
    single quotes are both prefixed with a backslash.

    Args:
        value: Raw caller-supplied value.

    Returns:
        Escaped value, without surrounding quotes.

    Raises:
        ValidationError: If the value is not a string.

    Examples:
        >>> escape_query_value("O'Brien")
        "O\\\\'Brien"
    """
    if not isinstance(value, str):
        raise ValidationError("Query value must be a string")
    return value.replace("\\", "\\\\").replace("'", "\\'")


def validate_date(value: str, field: str) -> str:
    """Check that a date filter is in ISO format (YYYY-MM-DD)."""
    try:
        if not _DATE_RE.fullmatch(value):
            raise ValueError(value)
        date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Invalid date for {field}: {value!r}. Use ISO format: YYYY-MM-DD",
            field=field,
        ) from e
    return value


@dataclass(frozen=True)
class Predicate:
    """One ``<field> <operator> <value>`` condition of a WHERE clause.

    Args:
        field: Entity field name (e.g. "DisplayName", "CustomerRef").
        operator: Comparison operator.
        value: Booleans render unquoted, strings are escaped and quoted.
        substring: Wrap the escaped string in ``%`` wildcards (LIKE).
    """

    field: str
    operator: str
    value: str | bool
    substring: bool = False

    def __post_init__(self) -> None:
        if not _FIELD_RE.match(self.field):
            raise ValidationError(f"Invalid query field: {self.field!r}", field=self.field)
        if self.operator not in _OPERATORS:
            raise ValidationError(f"Invalid query operator: {self.operator!r}")

    def render(self) -> str:
        if isinstance(self.value, bool):
            literal = "true" if self.value else "false"
        elif self.substring:
            literal = f"'%{escape_query_value(self.value)}%'"
        else:
            literal = f"'{escape_query_value(self.value)}'"
        return f"{self.field} {self.operator} {literal}"


class QueryBuilder:
    """Builder for ``SELECT * FROM <Entity>`` queries.

    Example:
        >>> QueryBuilder("Customer").where("Active", "=", True).paginate(10, 0).build()
        'SELECT * FROM Customer WHERE Active = true STARTPOSITION 1 MAXRESULTS 10'
    """

    def __init__(self, entity: str) -> None:
        if entity not in ENTITY_KINDS:
            raise ValidationError(f"Invalid entity kind: {entity!r}")
        self.entity = entity
        self.predicates: list[Predicate] = []
        self.limit = DEFAULT_LIMIT
        self.offset = DEFAULT_OFFSET

    def where(self, field: str, operator: str, value: str | bool) -> "QueryBuilder":
        self.predicates.append(Predicate(field, operator, value))
        return self

    def where_like(self, field: str, term: str) -> "QueryBuilder":
        """Add a substring match (``LIKE '%term%'``)."""
        self.predicates.append(Predicate(field, "LIKE", term, substring=True))
        return self

    def paginate(self, limit: int, offset: int) -> "QueryBuilder":
        """Set page size and 0-based offset.

        Raises:
            ValidationError: If limit is outside 1..1000 or offset is negative.
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_RESULTS:
            raise ValidationError(
                f"limit must be between 1 and {MAX_RESULTS}, got {limit!r}", field="limit"
            )
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValidationError(
                f"offset must be a non-negative integer, got {offset!r}", field="offset"
            )
        self.limit = limit
        self.offset = offset
        return self

    def build(self) -> str:
        sql = f"SELECT * FROM {self.entity}"
        if self.predicates:
            sql += " WHERE " + " AND ".join(p.render() for p in self.predicates)
        # STARTPOSITION is 1-based
        sql += f" STARTPOSITION {self.offset + 1} MAXRESULTS {self.limit}"
        return sql


# =============================================================================
# Per-entity builders
# =============================================================================


def build_customer_query(options: CustomerQuery) -> str:
    """Build the query for listing customers."""
    builder = QueryBuilder("Customer")
    if options.active_only:
        builder.where("Active", "=", True)
    if options.search:
        builder.where_like("DisplayName", options.search)
    return builder.paginate(options.limit, options.offset).build()


def build_vendor_query(options: VendorQuery) -> str:
    """Build the query for listing vendors."""
    builder = QueryBuilder("Vendor")
    if options.active_only:
        builder.where("Active", "=", True)
    if options.search:
        builder.where_like("DisplayName", options.search)
    return builder.paginate(options.limit, options.offset).build()


def build_invoice_query(options: InvoiceQuery) -> str:
    """Build the query for listing invoices.

    Status 'open' and 'paid' filter on Balance. Status 'overdue' adds no
    predicate: whether it should mean ``Balance > 0 AND DueDate < today`` is
    undecided, so the unfiltered page is returned.
    """
    builder = QueryBuilder("Invoice")
    if options.customer_id:
        builder.where("CustomerRef", "=", options.customer_id)

    if options.status == "open":
        builder.where("Balance", ">", "0")
    elif options.status == "paid":
        builder.where("Balance", "=", "0")
    elif options.status == "overdue":
        logger.debug("Invoice status 'overdue' has no query predicate, not filtering")

    if options.start_date:
        builder.where("TxnDate", ">=", validate_date(options.start_date, "start_date"))
    if options.end_date:
        builder.where("TxnDate", "<=", validate_date(options.end_date, "end_date"))
    return builder.paginate(options.limit, options.offset).build()


def build_account_query(options: AccountQuery) -> str:
    """Build the query for listing active accounts."""
    builder = QueryBuilder("Account").where("Active", "=", True)
    if options.account_type:
        builder.where("AccountType", "=", options.account_type)
    return builder.paginate(options.limit, options.offset).build()


def build_bill_query(options: BillQuery) -> str:
    """Build the query for listing bills."""
    builder = QueryBuilder("Bill")
    if options.vendor_id:
        builder.where("VendorRef", "=", options.vendor_id)

    if options.status == "unpaid":
        builder.where("Balance", ">", "0")
    elif options.status == "paid":
        builder.where("Balance", "=", "0")
    return builder.paginate(options.limit, options.offset).build()
