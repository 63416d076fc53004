# Overview: Pytest coverage for receipt rendering and share links (no database).

from urllib.parse import unquote

import pytest

from pharmapos.services import receipt_service
from pharmapos.services.receipt_service import ReceiptError


@pytest.fixture
def detail():
    return {
        "sale": {
            "id": 7,
            "transaction_number": "SALE-1760601600000",
            "sale_date": "2025-10-16",
            "subtotal": 2250,
            "tax": 405,
            "discount": 155,
            "total_amount": 2500,
            "payment_method": "mobile_money",
            "payment_status": "completed",
            "notes": None,
        },
        "items": [
            {"product_name": "Paracetamol 500mg", "quantity": 2, "unit_price": 1000,
             "total_price": 2000, "discount_amount": 0},
            {"product_name": "ORS <Sachet>", "quantity": 1, "unit_price": 250,
             "total_price": 250, "discount_amount": 50},
        ],
        "customer": {"id": 3, "first_name": "John", "last_name": "Okello",
                     "phone": "+256 700 123456", "email": None},
        "cashier": {"id": 2, "first_name": "Grace", "last_name": "Nakato", "email": "cashier@city.test"},
        "branch": {"name": "Kampala Road"},
        "tenant": {"name": "City Pharmacy"},
    }


class TestFormatting:
    def test_format_currency(self):
        assert receipt_service.format_currency(1234) == "UGX 1,234"
        assert receipt_service.format_currency(None) == "UGX 0"
        assert receipt_service.format_currency(1500000, "KES") == "KES 1,500,000"

    def test_filename(self, detail):
        assert receipt_service.receipt_filename(detail) == "receipt-SALE-1760601600000.txt"
        assert receipt_service.receipt_filename(detail, "html") == "receipt-SALE-1760601600000.html"


class TestTextReceipt:
    def test_contents(self, detail):
        text = receipt_service.render_text_receipt(detail)
        lines = text.splitlines()

        assert "CITY PHARMACY" in lines[1]
        assert "KAMPALA ROAD RECEIPT" in lines[2]
        assert "Transaction: SALE-1760601600000" in lines
        assert "Cashier: Grace Nakato" in lines
        assert "Customer: John Okello" in lines
        assert "Phone: +256 700 123456" in lines
        assert "1. Paracetamol 500mg" in lines
        assert "   Qty: 2 x UGX 1,000" in lines
        assert "   Discount: -UGX 50" in lines
        assert "TOTAL: UGX 2,500" in lines
        assert "Payment Method: MOBILE MONEY" in lines
        assert "THANK YOU!" in text

    def test_lines_fit_the_paper(self, detail):
        for line in receipt_service.render_text_receipt(detail).splitlines():
            assert len(line) <= receipt_service.RECEIPT_WIDTH

    def test_walk_in_sale_has_no_customer_block(self, detail):
        detail["customer"] = None
        text = receipt_service.render_text_receipt(detail)
        assert "Customer:" not in text

    def test_custom_footer_and_currency(self, detail):
        text = receipt_service.render_text_receipt(detail, "KES", "Get well soon")
        assert "TOTAL: KES 2,500" in text
        assert "Get well soon" in text
        assert "THANK YOU!" not in text

    def test_missing_tenant_and_branch_names(self, detail):
        detail["tenant"] = None
        detail["branch"] = None
        text = receipt_service.render_text_receipt(detail)
        assert "PHARMAPOS" in text
        assert "BRANCH RECEIPT" in text


class TestHtmlReceipt:
    def test_values_are_escaped(self, detail):
        html = receipt_service.render_html_receipt(detail)
        assert "ORS &lt;Sachet&gt;" in html
        assert "<Sachet>" not in html

    def test_contents(self, detail):
        html = receipt_service.render_html_receipt(detail)
        assert html.startswith("<!DOCTYPE html>")
        assert "<title>Receipt - SALE-1760601600000</title>" in html
        assert "UGX 2,500" in html
        assert "Thank you for your purchase!" in html


class TestWhatsAppLink:
    def test_link_uses_customer_digits(self, detail):
        url = receipt_service.whatsapp_share_link(detail)
        assert url.startswith("https://wa.me/256700123456?text=")
        message = unquote(url.split("?text=", 1)[1])
        assert message.startswith("Hello John! Here's your receipt for transaction SALE-1760601600000.")
        assert "TOTAL: UGX 2,500" in message

    def test_explicit_phone_wins(self, detail):
        url = receipt_service.whatsapp_share_link(detail, phone="0772-000-111")
        assert url.startswith("https://wa.me/0772000111?text=")

    def test_no_customer(self, detail):
        detail["customer"] = None
        with pytest.raises(ReceiptError, match="Sale has no customer"):
            receipt_service.whatsapp_share_link(detail)

    def test_customer_without_phone(self, detail):
        detail["customer"]["phone"] = ""
        with pytest.raises(ReceiptError, match="Customer has no phone number") as exc:
            receipt_service.whatsapp_share_link(detail)
        assert exc.value.details == {"customer_id": 3}
