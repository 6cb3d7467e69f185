"""Parsing of QuickBooks report responses.

QuickBooks reports are a tree of rows. Section rows carry a ``group`` (and
sometimes a ``type``) discriminator and a ``Summary`` whose ``ColData`` holds
the label in column 0 and the total in column 1:

    {"Rows": {"Row": [
        {"group": "Income",
         "Rows": {"Row": [...]},
         "Summary": {"ColData": [{"value": "Total Income"}, {"value": "10000.00"}]}},
        ...
    ]}}
"""

import logging
import math
from collections import deque
from collections.abc import Iterator
from typing import Any

from quickbooks_mcp.models import ProfitLossReport

logger = logging.getLogger(__name__)

# Report discriminator -> ProfitLossReport field
PROFIT_AND_LOSS_FIELDS: dict[str, str] = {
    "Income": "total_income",
    "COGS": "total_cogs",
    "GrossProfit": "gross_profit",
    "Expenses": "total_expenses",
    "NetIncome": "net_income",
}


def walk_rows(report: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Yield every row of a report, breadth-first.

    Top-level rows come before any nested row, so a top-level section always
    wins over a nested row with the same discriminator.

    Args:
        report: Raw report response.

    Yields:
        Row dictionaries.
    """
    queue: deque[dict[str, Any]] = deque(_child_rows(report))
    while queue:
        row = queue.popleft()
        yield row
        queue.extend(_child_rows(row))


def _child_rows(node: dict[str, Any]) -> list[dict[str, Any]]:
    rows = (node.get("Rows") or {}).get("Row") or []
    return [row for row in rows if isinstance(row, dict)]


def summary_amount(row: dict[str, Any]) -> float:
    """Read the total from a row's summary (second column).

    Missing columns and non-numeric values yield 0.0.
    """
    columns = (row.get("Summary") or {}).get("ColData") or []
    if len(columns) < 2 or not isinstance(columns[1], dict):
        return 0.0
    value = columns[1].get("value")
    if value in (None, ""):
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        logger.debug(f"Non-numeric report value {value!r}, using 0")
        return 0.0
    return amount if math.isfinite(amount) else 0.0


def find_row(rows: list[dict[str, Any]], discriminator: str) -> dict[str, Any] | None:
    """Return the first row whose ``type`` or ``group`` matches."""
    for row in rows:
        if row.get("type") == discriminator or row.get("group") == discriminator:
            return row
    return None


def parse_profit_and_loss(report: dict[str, Any]) -> ProfitLossReport:
    """Extract the Profit & Loss totals from a raw report response.

    Args:
        report: Raw response of the ProfitAndLoss report endpoint.

    Returns:
        ProfitLossReport with the five headline totals; every other grouped
        section with a summary is collected in ``details``.
    """
    rows = list(walk_rows(report or {}))
    result = ProfitLossReport()

    for discriminator, field_name in PROFIT_AND_LOSS_FIELDS.items():
        row = find_row(rows, discriminator)
        if row is not None:
            setattr(result, field_name, summary_amount(row))

    for row in rows:
        group = row.get("group")
        if (
            group
            and group not in PROFIT_AND_LOSS_FIELDS
            and group not in result.details
            and row.get("Summary")
        ):
            result.details[group] = summary_amount(row)

    return result
