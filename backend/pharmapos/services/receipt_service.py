# Overview: Renders sale receipts (plain text / HTML) and WhatsApp share links.

"""
Receipt rendering

All functions take the payload of sales_service.get_sale_detail() and are
pure: no database access, so routes can render after the session is done.
Amounts are integer minor units and are printed with thousands separators
prefixed by the branch currency code.
"""

from __future__ import annotations

import re
from html import escape
from urllib.parse import quote

RECEIPT_WIDTH = 40
DEFAULT_TENANT_NAME = "PharmaPOS"
DEFAULT_BRANCH_NAME = "Branch"


class ReceiptError(Exception):
    """Raised when a receipt cannot be produced or shared."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def format_currency(amount: int | None, currency: str = "UGX") -> str:
    return f"{currency} {int(amount or 0):,}"


def _person_name(person: dict | None) -> str | None:
    if not person:
        return None
    name = " ".join(p for p in (person.get("first_name"), person.get("last_name")) if p)
    return name or None


def _payment_label(method: str | None) -> str:
    return (method or "").replace("_", " ").upper()


def receipt_filename(detail: dict, extension: str = "txt") -> str:
    return f"receipt-{detail['sale']['transaction_number']}.{extension}"


def render_text_receipt(detail: dict, currency: str = "UGX", footer: str | None = None) -> str:
    """40-column plain-text receipt."""
    sale = detail["sale"]
    customer = detail.get("customer")
    tenant_name = (detail.get("tenant") or {}).get("name") or DEFAULT_TENANT_NAME
    branch_name = (detail.get("branch") or {}).get("name") or DEFAULT_BRANCH_NAME

    def money(value) -> str:
        return format_currency(value, currency)

    heavy = "=" * RECEIPT_WIDTH
    light = "-" * RECEIPT_WIDTH

    lines = [
        heavy,
        tenant_name.upper().center(RECEIPT_WIDTH).rstrip(),
        f"{branch_name.upper()} RECEIPT".center(RECEIPT_WIDTH).rstrip(),
        heavy,
        "",
        f"Transaction: {sale['transaction_number']}",
        f"Date: {sale['sale_date']}",
        f"Cashier: {_person_name(detail.get('cashier')) or 'N/A'}",
    ]

    if customer:
        lines.append(f"Customer: {_person_name(customer) or 'N/A'}")
        if customer.get("phone"):
            lines.append(f"Phone: {customer['phone']}")
        if customer.get("email"):
            lines.append(f"Email: {customer['email']}")

    lines += ["", light, "ITEMS:", light]

    for index, item in enumerate(detail.get("items") or [], start=1):
        lines.append(f"{index}. {item['product_name']}")
        lines.append(f"   Qty: {item['quantity']} x {money(item['unit_price'])}")
        if (item.get("discount_amount") or 0) > 0:
            lines.append(f"   Discount: -{money(item['discount_amount'])}")
        lines.append(f"   Total: {money(item['total_price'])}")
        lines.append("")

    lines += [
        light,
        f"Subtotal: {money(sale['subtotal'])}",
        f"Tax: {money(sale['tax'])}",
        f"Discount: -{money(sale['discount'])}",
        f"TOTAL: {money(sale['total_amount'])}",
        light,
        f"Payment Method: {_payment_label(sale.get('payment_method'))}",
        f"Status: {(sale.get('payment_status') or '').upper()}",
    ]

    if sale.get("notes"):
        lines += ["", f"Notes: {sale['notes']}"]

    lines += [
        "",
        heavy,
        (footer or "THANK YOU!").center(RECEIPT_WIDTH).rstrip(),
        heavy,
    ]
    return "\n".join(lines) + "\n"


_HTML_STYLE = """
  body { font-family: Arial, sans-serif; margin: 20px; }
  .header { text-align: center; border-bottom: 2px solid #000; padding-bottom: 10px; margin-bottom: 20px; }
  .receipt-info { margin-bottom: 20px; }
  .items-table { width: 100%; border-collapse: collapse; margin: 20px 0; }
  .items-table th, .items-table td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  .items-table th { background-color: #f5f5f5; }
  .total-section { border-top: 2px solid #000; padding-top: 10px; margin-top: 20px; }
  .total-row { display: flex; justify-content: space-between; margin: 5px 0; }
  .footer { text-align: center; margin-top: 30px; border-top: 2px solid #000; padding-top: 10px; }
  @media print { body { margin: 0; } }
"""


def render_html_receipt(detail: dict, currency: str = "UGX", footer: str | None = None) -> str:
    """Printable HTML receipt. Every interpolated value is HTML-escaped."""
    sale = detail["sale"]
    customer = detail.get("customer")
    tenant_name = (detail.get("tenant") or {}).get("name") or DEFAULT_TENANT_NAME
    branch_name = (detail.get("branch") or {}).get("name") or DEFAULT_BRANCH_NAME

    def money(value) -> str:
        return escape(format_currency(value, currency))

    def info(label: str, value) -> str:
        return f"<p><strong>{label}:</strong> {escape(str(value))}</p>"

    header_info = [
        info("Transaction", sale["transaction_number"]),
        info("Date", sale["sale_date"]),
        info("Cashier", _person_name(detail.get("cashier")) or "N/A"),
    ]
    if customer:
        header_info.append(info("Customer", _person_name(customer) or "N/A"))
        if customer.get("phone"):
            header_info.append(info("Phone", customer["phone"]))
        if customer.get("email"):
            header_info.append(info("Email", customer["email"]))

    rows = []
    for item in detail.get("items") or []:
        discount = item.get("discount_amount") or 0
        rows.append(
            "<tr>"
            f"<td>{escape(item['product_name'])}</td>"
            f"<td>{int(item['quantity'])}</td>"
            f"<td>{money(item['unit_price'])}</td>"
            f"<td>{money(discount) if discount > 0 else '-'}</td>"
            f"<td>{money(item['total_price'])}</td>"
            "</tr>"
        )

    payment_info = [
        info("Payment Method", _payment_label(sale.get("payment_method"))),
        info("Status", (sale.get("payment_status") or "").upper()),
    ]
    if sale.get("notes"):
        payment_info.append(info("Notes", sale["notes"]))

    return "\n".join([
        "<!DOCTYPE html>",
        "<html>",
        "<head>",
        f"<title>Receipt - {escape(sale['transaction_number'])}</title>",
        f"<style>{_HTML_STYLE}</style>",
        "</head>",
        "<body>",
        '<div class="header">',
        f"<h1>{escape(tenant_name.upper())}</h1>",
        f"<h2>{escape(branch_name.upper())} RECEIPT</h2>",
        "</div>",
        '<div class="receipt-info">',
        *header_info,
        "</div>",
        '<table class="items-table">',
        "<thead><tr><th>Item</th><th>Qty</th><th>Unit Price</th><th>Discount</th><th>Total</th></tr></thead>",
        "<tbody>",
        *rows,
        "</tbody>",
        "</table>",
        '<div class="total-section">',
        f'<div class="total-row"><span>Subtotal:</span><span>{money(sale["subtotal"])}</span></div>',
        f'<div class="total-row"><span>Tax:</span><span>{money(sale["tax"])}</span></div>',
        f'<div class="total-row"><span>Discount:</span><span>-{money(sale["discount"])}</span></div>',
        f'<div class="total-row" style="font-weight: bold;"><span>TOTAL:</span><span>{money(sale["total_amount"])}</span></div>',
        "</div>",
        '<div class="receipt-info">',
        *payment_info,
        "</div>",
        '<div class="footer">',
        f"<p><strong>{escape(footer or 'Thank you for your purchase!')}</strong></p>",
        "</div>",
        "</body>",
        "</html>",
    ]) + "\n"


def whatsapp_share_link(detail: dict, currency: str = "UGX", phone: str | None = None) -> str:
    """
    Build a wa.me link that carries the text receipt.

    Uses the customer's phone unless one is passed explicitly; only the
    digits are kept.
    """
    customer = detail.get("customer")
    if not customer and not phone:
        raise ReceiptError("Sale has no customer to share the receipt with")

    raw_phone = phone or (customer or {}).get("phone")
    digits = re.sub(r"\D", "", raw_phone or "")
    if not digits:
        raise ReceiptError(
            "Customer has no phone number",
            {"customer_id": (customer or {}).get("id")},
        )

    sale = detail["sale"]
    greeting = (customer or {}).get("first_name") or "there"
    message = (
        f"Hello {greeting}! Here's your receipt for transaction "
        f"{sale['transaction_number']}. Thank you for your purchase!\n\n"
        f"{render_text_receipt(detail, currency)}"
    )
    return f"https://wa.me/{digits}?text={quote(message, safe='')}"
