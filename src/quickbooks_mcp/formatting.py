"""Markdown and JSON rendering of QuickBooks records for tool responses."""

import json
from collections.abc import Iterable
from typing import Any, Literal

from quickbooks_mcp.models import ProfitLossReport

ResponseFormat = Literal["markdown", "json"]


def to_json(data: Any) -> str:
    """Serialize records for the 'json' response format."""
    return json.dumps(data, indent=2, default=str)


def money(value: Any) -> str:
    """Format an amount as dollars, treating missing values as zero."""
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        amount = 0.0
    return f"${amount:,.2f}"


def _ref_name(record: dict[str, Any], key: str) -> str:
    return (record.get(key) or {}).get("name") or "N/A"


def _contact_lines(record: dict[str, Any]) -> list[str]:
    lines = [f"- **ID:** {record.get('Id')}"]
    email = (record.get("PrimaryEmailAddr") or {}).get("Address")
    if email:
        lines.append(f"- **Email:** {email}")
    phone = (record.get("PrimaryPhone") or {}).get("FreeFormNumber")
    if phone:
        lines.append(f"- **Phone:** {phone}")
    lines.append(f"- **Balance:** {money(record.get('Balance'))}")
    return lines


def invoice_status(invoice: dict[str, Any]) -> str:
    """Label an invoice Paid, Open or Partial from its balance."""
    balance = float(invoice.get("Balance") or 0)
    total = float(invoice.get("TotalAmt") or 0)
    if balance == 0:
        return "Paid"
    if balance == total:
        return "Open"
    return "Partial"


def format_customer(customer: dict[str, Any]) -> list[str]:
    lines = [f"## {customer.get('DisplayName', 'Unnamed customer')}"]
    lines.extend(_contact_lines(customer))
    lines.append(f"- **Active:** {'Yes' if customer.get('Active') else 'No'}\n")
    return lines


def format_customers(customers: list[dict[str, Any]]) -> str:
    lines = ["# QuickBooks Customers\n", f"Found {len(customers)} customers\n"]
    for customer in customers:
        lines.extend(format_customer(customer))
    return "\n".join(lines)


def format_vendors(vendors: list[dict[str, Any]]) -> str:
    lines = ["# QuickBooks Vendors\n", f"Found {len(vendors)} vendors\n"]
    for vendor in vendors:
        lines.append(f"## {vendor.get('DisplayName', 'Unnamed vendor')}")
        lines.extend(_contact_lines(vendor))
        lines.append("")
    return "\n".join(lines)


def format_invoices(invoices: list[dict[str, Any]]) -> str:
    lines = ["# QuickBooks Invoices\n", f"Found {len(invoices)} invoices\n"]
    for inv in invoices:
        lines.append(f"## Invoice #{inv.get('DocNumber') or inv.get('Id')}")
        lines.append(f"- **Customer:** {_ref_name(inv, 'CustomerRef')}")
        lines.append(f"- **Date:** {inv.get('TxnDate')}")
        lines.append(f"- **Due:** {inv.get('DueDate')}")
        lines.append(f"- **Total:** {money(inv.get('TotalAmt'))}")
        lines.append(f"- **Balance:** {money(inv.get('Balance'))}")
        lines.append(f"- **Status:** {invoice_status(inv)}\n")
    return "\n".join(lines)


def format_created_invoice(invoice: dict[str, Any]) -> str:
    return "\n".join([
        "Invoice created successfully!\n",
        f"- **Invoice #:** {invoice.get('DocNumber') or invoice.get('Id')}",
        f"- **Total:** {money(invoice.get('TotalAmt'))}",
        f"- **Due Date:** {invoice.get('DueDate')}",
        f"- **Customer:** {_ref_name(invoice, 'CustomerRef')}",
    ])


def format_bills(bills: list[dict[str, Any]]) -> str:
    lines = ["# QuickBooks Bills\n", f"Found {len(bills)} bills\n"]
    for bill in bills:
        lines.append(f"## Bill #{bill.get('DocNumber') or bill.get('Id')}")
        lines.append(f"- **Vendor:** {_ref_name(bill, 'VendorRef')}")
        lines.append(f"- **Date:** {bill.get('TxnDate')}")
        lines.append(f"- **Due:** {bill.get('DueDate')}")
        lines.append(f"- **Total:** {money(bill.get('TotalAmt'))}")
        lines.append(f"- **Balance:** {money(bill.get('Balance'))}\n")
    return "\n".join(lines)


def format_accounts(accounts: Iterable[dict[str, Any]]) -> str:
    """Render the chart of accounts grouped by AccountType."""
    grouped: dict[str, list[dict[str, Any]]] = {}
    for account in accounts:
        grouped.setdefault(account.get("AccountType") or "Other", []).append(account)

    lines = ["# QuickBooks Chart of Accounts\n"]
    for account_type, members in grouped.items():
        lines.append(f"## {account_type}\n")
        for account in members:
            lines.append(
                f"- **{account.get('Name')}** (ID: {account.get('Id')}): "
                f"{money(account.get('CurrentBalance'))}"
            )
        lines.append("")
    return "\n".join(lines)


def format_profit_and_loss(report: ProfitLossReport, start_date: str, end_date: str) -> str:
    lines = [
        "# Profit & Loss Report",
        f"**Period:** {start_date} to {end_date}\n",
        "## Summary",
        f"- **Total Income:** {money(report.total_income)}",
        f"- **Total COGS:** {money(report.total_cogs)}",
        f"- **Gross Profit:** {money(report.gross_profit)}",
        f"- **Total Expenses:** {money(report.total_expenses)}",
        f"- **Net Income:** {money(report.net_income)}",
    ]
    if report.details:
        lines.append("\n## Other Sections")
        for name, amount in report.details.items():
            lines.append(f"- **{name}:** {money(amount)}")
    return "\n".join(lines) + "\n"
