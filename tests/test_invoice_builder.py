import unittest
from datetime import date
from unittest.mock import MagicMock

from invoices import InvoiceBuilder, clean_description
from vyfakturuj import ValidationError


def make_order(**overrides):
    order = {
        "id": 1042,
        "number": "1042",
        "status": "processing",
        "currency": "CZK",
        "payment_method": "bacs",
        "payment_method_title": "Direct bank transfer",
        "customer_note": "",
        "date_created": "2024-03-05T14:07:09",
        "billing": {
            "first_name": "Jan",
            "last_name": "Novák",
            "email": "jan@example.cz",
            "phone": "+420777123456",
            "address_1": "Dlouhá 12",
            "address_2": "",
            "city": "Praha",
            "state": "",
            "postcode": "11000",
            "country": "CZ",
            "company": ""
        },
        "line_items": [
            {"name": "Winter tyre", "quantity": 1, "total": "100.00", "total_tax": "21.00", "sku": "", "product_id": 0}
        ],
        "shipping_lines": [
            {"method_title": "Personal pickup", "total": "0.00", "total_tax": "0.00"}
        ],
        "fee_lines": [
            {"name": "Payment fee", "total": "30.00", "total_tax": "6.30"}
        ],
        "meta_data": []
    }
    order.update(overrides)
    return order


class TestInvoiceBuilder(unittest.TestCase):
    def setUp(self):
        self.builder = InvoiceBuilder()

    def test_single_item_order_without_paid_shipping(self):
        data = self.builder.prepare_invoice_data(make_order(), today=date(2024, 3, 5))

        self.assertEqual(len(data["items"]), 1)
        item = data["items"][0]
        self.assertEqual(item["unit_price"], 100.00)
        self.assertEqual(item["vat_rate"], 21)
        self.assertEqual(item["quantity"], 1)
        self.assertEqual(item["unit"], "ks")
        self.assertEqual(data["vs"], "1042")

    def test_invoice_header_fields(self):
        data = self.builder.prepare_invoice_data(make_order(payment_method="stripe_cc"), today=date(2024, 3, 5))

        self.assertEqual(data["type"], 1)
        self.assertEqual(data["date"], "2024-03-05")
        self.assertEqual(data["due_date"], "2024-03-19")
        self.assertEqual(data["calculate_vat"], 1)
        self.assertEqual(data["round_invoice"], 2)
        self.assertEqual(data["payment_method"], 8)
        self.assertEqual(data["currency"], "CZK")

    def test_unit_price_is_derived_per_piece(self):
        order = make_order(line_items=[
            {"name": "Summer tyre", "quantity": 3, "total": "41.32", "total_tax": "8.68", "sku": ""}
        ])

        item = self.builder.prepare_invoice_data(order)["items"][0]

        self.assertEqual(item["unit_price"], round(50.0 / 1.21 / 3, 2))
        self.assertEqual(item["quantity"], 3)

    def test_zero_quantity_gives_zero_price(self):
        order = make_order(line_items=[
            {"name": "Gift", "quantity": 0, "total": "121.00", "total_tax": "0", "sku": ""}
        ])

        self.assertEqual(self.builder.prepare_invoice_data(order)["items"][0]["unit_price"], 0)

    def test_paid_shipping_becomes_a_line_and_fees_do_not(self):
        order = make_order(shipping_lines=[
            {"method_title": "Courier", "total": "100.00", "total_tax": "21.00"}
        ])

        items = self.builder.prepare_invoice_data(order)["items"]

        self.assertEqual(len(items), 2)
        self.assertEqual(items[1], {
            "text": "Shipping: Courier",
            "quantity": 1,
            "unit_price": 100.00,
            "vat_rate": 21,
            "unit": "ks"
        })
        self.assertFalse(any("fee" in item["text"].lower() for item in items))

    def test_note_lists_order_details(self):
        order = make_order(
            customer_note="Fragile",
            shipping_lines=[{"method_title": "Courier", "total": "0", "total_tax": "0"}]
        )

        note = self.builder.prepare_invoice_data(order)["note"]

        self.assertEqual(note.split("\n"), [
            "Order from online store #1042",
            "Order date: 05.03.2024 14:07:09",
            "Payment method: Direct bank transfer",
            "Shipping: Courier",
            "Note: Fragile",
            "NOTE: Prices already include VAT 21%"
        ])

    def test_note_without_customer_note(self):
        note = self.builder.prepare_invoice_data(make_order())["note"]

        self.assertNotIn("Note: ", note)
        self.assertTrue(note.endswith("NOTE: Prices already include VAT 21%"))

    def test_customer_record(self):
        customer = self.builder.prepare_invoice_data(make_order())["customer"]

        self.assertEqual(customer["name"], "Jan Novák")
        self.assertEqual(customer["email"], "jan@example.cz")
        self.assertEqual(customer["zip"], "11000")
        self.assertEqual(customer["address"], "Dlouhá 12")
        self.assertEqual(customer["country"], "CZ")

    def test_customer_name_falls_back_to_email_then_id(self):
        order = make_order()
        order["billing"].update({"first_name": "", "last_name": ""})
        self.assertEqual(self.builder.build_customer(order)["name"], "jan@example.cz")

        order["billing"]["email"] = ""
        self.assertEqual(self.builder.build_customer(order)["name"], "Customer #1042")

    def test_description_includes_sku_and_tyre_attributes(self):
        product = {
            "id": 7,
            "sku": "MI-205",
            "meta_data": [
                {"key": "tyre_brand", "value": "Michelin"},
                {"key": "tyre_model", "value": "Alpin 6"},
                {"key": "width", "value": "205"},
                {"key": "height", "value": "55"},
                {"key": "diameter", "value": "16"},
                {"key": "season", "value": "Winter"},
                {"key": "load_index", "value": "91"},
                {"key": "speed_index", "value": "H"}
            ]
        }
        product_lookup = MagicMock(return_value=product)
        builder = InvoiceBuilder(product_lookup=product_lookup)
        order = make_order(line_items=[
            {"name": "Alpin", "quantity": 4, "total": "8000", "total_tax": "1680", "sku": "", "product_id": 7}
        ])

        item = builder.prepare_invoice_data(order)["items"][0]

        product_lookup.assert_called_once_with(7)
        self.assertEqual(item["text"], "Alpin (SKU: MI-205) - Michelin Alpin 6 205_55 R16 Winter 91H")

    def test_incomplete_tyre_size_is_left_out(self):
        product = {"meta_data": [{"key": "tyre_brand", "value": "Nokian"}, {"key": "width", "value": "205"}]}

        self.assertEqual(self.builder.get_tire_info(product), "Nokian")
        self.assertEqual(self.builder.get_tire_info(None), "")

    def test_description_sanitization(self):
        order = make_order(line_items=[
            {"name": 'Winter "Pro"\nTyre 205/55', "quantity": 1, "total": "100", "total_tax": "21", "sku": ""}
        ])

        item = self.builder.prepare_invoice_data(order)["items"][0]

        self.assertEqual(item["text"], "Winter Pro Tyre 205_55")

    def test_empty_description_uses_fallback(self):
        order = make_order(line_items=[
            {"name": "''", "quantity": 1, "total": "100", "total_tax": "21", "sku": ""}
        ])

        item = self.builder.prepare_invoice_data(order)["items"][0]

        self.assertEqual(item["text"], "Tire from order #1042")

    def test_description_is_truncated_before_cleaning(self):
        self.assertEqual(len(clean_description("x" * 600, "fallback")), 500)
        self.assertEqual(clean_description("a" * 499 + '"b', "fallback"), "a" * 499)

    def test_order_without_id_is_rejected(self):
        order = make_order()
        del order["id"]

        with self.assertRaises(ValidationError):
            self.builder.prepare_invoice_data(order)


if __name__ == "__main__":
    unittest.main()
