import itertools
import json
import logging
import os
import re
import sys
import time
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

import pandas as pd
import requests
from dotenv import load_dotenv
from tenacity import Retrying, RetryError, stop_after_attempt, wait_fixed, retry_if_exception_type, retry_if_result

from vyfakturuj import VyfakturujAPI, VyfakturujError, ProviderError, ValidationError
from woocommerce import WooCommerceAPI, get_meta, handle_request_error

DEBUG = True

# VAT in Czech Republic, already included in shop prices
VAT_RATE = 21
VAT_FACTOR = 1.21

DESCRIPTION_MAX_LENGTH = 500
DUE_DAYS = 14
INVOICE_TYPE_REGULAR = 1
ROUND_MATHEMATICAL = 2

# Order statuses that mean the order has been paid
PAID_STATUSES = ("processing", "completed")

# Order metadata keys, read by other tooling
META_INVOICE_ID = "_vyfakturuj_invoice_id"
META_INVOICE_NUMBER = "_vyfakturuj_invoice_number"
META_PDF_SENT = "_vyfakturuj_pdf_sent"
META_PDF_SENT_EMAIL = "_vyfakturuj_pdf_sent_email"
META_PDF_SENT_METHOD = "_vyfakturuj_pdf_sent_method"
META_LAST_STATUS = "_vyfakturuj_last_status"

# Vyfakturuj.cz payment method IDs
PAYMENT_BANK_TRANSFER = 1
PAYMENT_CASH_ON_DELIVERY = 4
PAYMENT_CARD = 8
PAYMENT_PAYPAL = 128

KNOWN_PAYMENT_METHODS = {
    "bacs": PAYMENT_BANK_TRANSFER,
    "cheque": PAYMENT_BANK_TRANSFER,
    "cod": PAYMENT_CASH_ON_DELIVERY,
    "paypal": PAYMENT_PAYPAL,
    "stripe": PAYMENT_CARD,
    "stripe_cc": PAYMENT_CARD,
    "woocommerce_payments": PAYMENT_CARD,
}

# E-mail payload shapes tried in order: primary, secondary, minimal
DEFAULT_EMAIL_SHAPES = [
    ("to", "subject", "message"),
    ("email", "subject", "message"),
    ("email",),
]
EMAIL_SHAPE_FIELDS = ("to", "email", "subject", "message")

TIRE_META_KEYS = ("tyre_brand", "tyre_model", "width", "height", "diameter", "season", "load_index", "speed_index")


def set_debug(enabled):
    global DEBUG
    DEBUG = bool(enabled)


def log_debug(message):
    """
    Logs debug messages if DEBUG is set to True.

    Args:
        message (str): The message to log.
    """
    if DEBUG:
        logging.info(message)


def round_price(amount):
    """
    Rounds an amount to 2 decimal places, halves away from zero.

    Args:
        amount (float): The amount to be rounded.

    Returns:
        float: The rounded amount.

    Example:
        round_price(2.675)  # Returns 2.68
    """
    return float(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def parse_email_shapes(value):
    """
    Parses e-mail payload shapes from a configuration string.

    Shapes are separated by ';' and their fields by ',', e.g.
    'to,subject,message;email,subject,message;email'.

    Returns:
        list: A list of field tuples, or the default shapes if the value is empty.

    Raises:
        ValidationError: If a shape names a field that cannot be filled.
    """
    if not value:
        return list(DEFAULT_EMAIL_SHAPES)
    shapes = []
    for part in value.split(";"):
        fields = tuple(field.strip() for field in part.split(",") if field.strip())
        if fields:
            shapes.append(fields)
    return validate_email_shapes(shapes) or list(DEFAULT_EMAIL_SHAPES)


def validate_email_shapes(shapes):
    """
    Checks that every field of every e-mail payload shape is one of EMAIL_SHAPE_FIELDS.

    Returns:
        list: The shapes, unchanged.

    Raises:
        ValidationError: If an unknown field is found.
    """
    for shape in shapes:
        unknown = [field for field in shape if field not in EMAIL_SHAPE_FIELDS]
        if unknown:
            raise ValidationError(
                f"Unknown e-mail payload field(s): {', '.join(unknown)}; expected one of {', '.join(EMAIL_SHAPE_FIELDS)}"
            )
    return shapes


def format_mysql_datetime(moment):
    return moment.strftime("%Y-%m-%d %H:%M:%S")


# Configuration
class Config:
    """
    Holds the settings for the Vyfakturuj.cz and WooCommerce clients and the invoice workflow.

    Built once, usually with 'Config.from_env()', and passed to everything that needs it.

    Environment Variables:
        - VYFAKTURUJ_LOGIN and VYFAKTURUJ_API_KEY: Vyfakturuj.cz account login and API key.
        - VYFAKTURUJ_ENDPOINT_URL: Optional API base URL override.
        - WOOCOMMERCE_BASE_URL: Base URL of the shop's REST API.
        - WOOCOMMERCE_CONSUMER_KEY and WOOCOMMERCE_CONSUMER_SECRET: WooCommerce REST credentials.
        - WOOCOMMERCE_WEBHOOK_SECRET: Secret used to sign incoming WooCommerce webhooks.
        - SITE_NAME: Shop name used in invoice e-mails.
        - VYFAKTURUJ_EMAIL_SHAPES: E-mail payload shapes, see 'parse_email_shapes()'.
        - VYFAKTURUJ_SEND_ATTEMPTS, VYFAKTURUJ_RETRY_DELAY: E-mail delivery attempts and pause in seconds.
        - VYFAKTURUJ_PAYMENT_MAPPING: Optional CSV with extra gateway codes.
        - CACHE_DIR: Directory for the product cache.
        - DEBUG: Set to 'false' to stop logging invoice payloads and API responses.

    Example .env File:
        VYFAKTURUJ_LOGIN=shop@example.cz
        VYFAKTURUJ_API_KEY=your_api_key
        WOOCOMMERCE_BASE_URL=https://example.cz/wp-json/wc/v3
        WOOCOMMERCE_CONSUMER_KEY=ck_xxx
        WOOCOMMERCE_CONSUMER_SECRET=cs_xxx
        SITE_NAME=Example Tyres
    """
    def __init__(self, vyfakturuj_login=None, vyfakturuj_api_key=None, vyfakturuj_endpoint_url=None,
                 woocommerce_base_url=None, woocommerce_consumer_key=None, woocommerce_consumer_secret=None,
                 woocommerce_webhook_secret=None, site_name="", email_shapes=None, send_attempts=3,
                 retry_delay=3, payment_mapping_path=None, cache_dir="./cache", debug=True):
        self.vyfakturuj_login = vyfakturuj_login
        self.vyfakturuj_api_key = vyfakturuj_api_key
        self.vyfakturuj_endpoint_url = vyfakturuj_endpoint_url
        self.woocommerce_base_url = woocommerce_base_url
        self.woocommerce_consumer_key = woocommerce_consumer_key
        self.woocommerce_consumer_secret = woocommerce_consumer_secret
        self.woocommerce_webhook_secret = woocommerce_webhook_secret
        self.site_name = site_name
        self.email_shapes = validate_email_shapes(list(email_shapes)) if email_shapes else list(DEFAULT_EMAIL_SHAPES)
        self.send_attempts = send_attempts
        self.retry_delay = retry_delay
        self.payment_mapping_path = payment_mapping_path
        self.cache_dir = cache_dir
        self.debug = debug

    @classmethod
    def from_env(cls):
        load_dotenv()
        return cls(
            vyfakturuj_login=os.getenv("VYFAKTURUJ_LOGIN"),
            vyfakturuj_api_key=os.getenv("VYFAKTURUJ_API_KEY"),
            vyfakturuj_endpoint_url=os.getenv("VYFAKTURUJ_ENDPOINT_URL") or None,
            woocommerce_base_url=os.getenv("WOOCOMMERCE_BASE_URL"),
            woocommerce_consumer_key=os.getenv("WOOCOMMERCE_CONSUMER_KEY"),
            woocommerce_consumer_secret=os.getenv("WOOCOMMERCE_CONSUMER_SECRET"),
            woocommerce_webhook_secret=os.getenv("WOOCOMMERCE_WEBHOOK_SECRET") or None,
            site_name=os.getenv("SITE_NAME", ""),
            email_shapes=parse_email_shapes(os.getenv("VYFAKTURUJ_EMAIL_SHAPES")),
            send_attempts=int(os.getenv("VYFAKTURUJ_SEND_ATTEMPTS", "3")),
            retry_delay=float(os.getenv("VYFAKTURUJ_RETRY_DELAY", "3")),
            payment_mapping_path=os.getenv("VYFAKTURUJ_PAYMENT_MAPPING") or None,
            cache_dir=os.getenv("CACHE_DIR", "./cache"),
            debug=os.getenv("DEBUG", "true").strip().lower() not in ("0", "false", "no", "off")
        )

    @property
    def has_vyfakturuj_credentials(self):
        return bool(self.vyfakturuj_login and self.vyfakturuj_api_key)


# Data Loader for CSV Loading
class DataLoader:
    """
    Loads shop-specific gateway codes from a CSV file.

    - 'payment_mapping.csv': columns 'gateway' (WooCommerce payment method code) and
      'method_id' (Vyfakturuj.cz payment method ID). Entries override the built-in table.
    """
    def __init__(self, payment_mapping_path=None):
        self.payment_mapping_path = payment_mapping_path
        self.payment_mapping_dict = None

    def load_payment_mapping(self):
        """
        Loads the payment method mapping from a CSV file.

        Returns:
            dict: Gateway code to Vyfakturuj.cz payment method ID; empty if no file is configured.
        """
        if self.payment_mapping_dict is None:
            if not self.payment_mapping_path:
                self.payment_mapping_dict = {}
            else:
                mapping = pd.read_csv(self.payment_mapping_path, dtype={'gateway': str})
                self.payment_mapping_dict = {
                    str(gateway): int(method_id)
                    for gateway, method_id in mapping.set_index('gateway')['method_id'].items()
                }
                logging.info(f"Loaded {len(self.payment_mapping_dict)} payment method mappings from {self.payment_mapping_path}")
        return self.payment_mapping_dict


def get_payment_method(wc_payment_method, extra_methods=None):
    """
    Maps a WooCommerce payment method code to a Vyfakturuj.cz payment method ID.

    Exact gateway codes are looked up first, then the code is matched against
    keywords for cash on delivery, PayPal and card payments. Anything else is
    treated as a bank transfer.

    Args:
        wc_payment_method (str): The WooCommerce payment method code, e.g. 'stripe_cc'.
        extra_methods (dict, optional): Additional exact codes, taking precedence over the built-in ones.

    Returns:
        int: The Vyfakturuj.cz payment method ID.

    Example:
        get_payment_method("COD-dobirka")  # Returns 4
    """
    known_methods = dict(KNOWN_PAYMENT_METHODS)
    if extra_methods:
        known_methods.update(extra_methods)

    code = wc_payment_method or ""
    if code in known_methods:
        return known_methods[code]

    method_lower = code.lower()
    if re.search(r"\b(cod|cash.*delivery|dobir)", method_lower):
        return PAYMENT_CASH_ON_DELIVERY
    if re.search(r"\b(paypal|pp_)", method_lower):
        return PAYMENT_PAYPAL
    if re.search(r"\b(card|credit|debit|visa|master|stripe)", method_lower):
        return PAYMENT_CARD
    return PAYMENT_BANK_TRANSFER


def clean_description(text, fallback):
    """
    Truncates a line description and removes characters the invoice API does not accept.

    Slashes become underscores, quotes are dropped and line breaks and tabs become spaces.

    Args:
        text (str): The raw description.
        fallback (str): Used when nothing is left after cleaning.

    Returns:
        str: The cleaned description.
    """
    text = text[:DESCRIPTION_MAX_LENGTH]
    for old, new in (("/", "_"), ("\\", "_"), ('"', ""), ("'", ""), ("\n", " "), ("\r", " "), ("\t", " ")):
        text = text.replace(old, new)
    text = text.strip()
    return text or fallback


def validate_order_data(order):
    """
    Checks that an order has the fields an invoice cannot be built without.

    Raises:
        ValidationError: If a required field is missing.
    """
    if not isinstance(order, dict):
        raise ValidationError("Order data is not a document")
    for field in ("id", "line_items"):
        if field not in order:
            raise ValidationError(f"Missing required field in order: {field}")


def get_order_number(order):
    return str(order.get("number") or order["id"])


# Invoice payload builder
class InvoiceBuilder:
    """
    Builds the Vyfakturuj.cz invoice payload from a WooCommerce order.

    Shop prices already include 21% VAT; the invoice carries prices excluding VAT and
    lets the provider calculate VAT again. Only products and shipping are invoiced, fees
    are left out.

    Args:
        product_lookup (callable, optional): Returns the WooCommerce product for a product ID.
        payment_methods (dict, optional): Extra payment gateway codes, see 'get_payment_method()'.
    """
    def __init__(self, product_lookup=None, payment_methods=None):
        self.product_lookup = product_lookup
        self.payment_methods = payment_methods or {}

    def get_tire_info(self, product):
        """
        Collects tyre attributes from product metadata.

        Returns:
            str: Brand, model, size, season and load/speed index joined by spaces.
        """
        if not product:
            return ""

        meta = {key: get_meta(product, key) for key in TIRE_META_KEYS}
        tire_info = []
        if meta["tyre_brand"]:
            tire_info.append(str(meta["tyre_brand"]))
        if meta["tyre_model"]:
            tire_info.append(str(meta["tyre_model"]))
        if meta["width"] and meta["height"] and meta["diameter"]:
            tire_info.append(f"{meta['width']}/{meta['height']} R{meta['diameter']}")
        if meta["season"]:
            tire_info.append(str(meta["season"]))
        if meta["load_index"] and meta["speed_index"]:
            tire_info.append(f"{meta['load_index']}{meta['speed_index']}")
        return " ".join(tire_info)

    def build_customer(self, order):
        billing = order.get("billing") or {}
        customer = {
            "name": f"{billing.get('first_name') or ''} {billing.get('last_name') or ''}".strip(),
            "email": billing.get("email") or "",
            "phone": billing.get("phone") or "",
            "address": billing.get("address_1") or "",
            "address2": billing.get("address_2") or "",
            "city": billing.get("city") or "",
            "state": billing.get("state") or "",
            "zip": billing.get("postcode") or "",
            "country": billing.get("country") or "CZ",
            "company": billing.get("company") or ""
        }
        # No name on the order: fall back to the e-mail, then to the order ID
        if not customer["name"]:
            customer["name"] = customer["email"] or f"Customer #{order['id']}"
        return customer

    def build_line_items(self, order):
        order_number = get_order_number(order)
        items = []
        for item in order.get("line_items") or []:
            quantity = item.get("quantity") or 0
            total_with_tax = float(item.get("total") or 0) + float(item.get("total_tax") or 0)
            total_without_tax = total_with_tax / VAT_FACTOR
            unit_price_without_tax = total_without_tax / quantity if quantity > 0 else 0

            product = None
            if self.product_lookup and item.get("product_id"):
                product = self.product_lookup(item["product_id"])
            sku = item.get("sku") or (product or {}).get("sku") or ""
            tire_info = self.get_tire_info(product)

            full_description = (item.get("name") or "").strip()
            if sku:
                full_description += f" (SKU: {sku})"
            if tire_info:
                full_description += f" - {tire_info}"
            full_description = clean_description(full_description, f"Tire from order #{order_number}")

            logging.info(f"Product: '{full_description}' | Qty: {quantity} | Price excl. VAT: {round_price(unit_price_without_tax)} | Total price incl. VAT: {round_price(total_with_tax)}")

            items.append({
                "text": full_description,
                "quantity": quantity,
                "unit_price": round_price(unit_price_without_tax),
                "vat_rate": VAT_RATE,
                "unit": "ks"
            })
        return items

    def build_shipping_items(self, order):
        items = []
        for shipping_line in order.get("shipping_lines") or []:
            total_with_tax = float(shipping_line.get("total") or 0) + float(shipping_line.get("total_tax") or 0)
            if total_with_tax <= 0:
                continue
            total_without_tax = total_with_tax / VAT_FACTOR
            method_title = shipping_line.get("method_title") or ""
            items.append({
                "text": f"Shipping: {method_title}",
                "quantity": 1,
                "unit_price": round_price(total_without_tax),
                "vat_rate": VAT_RATE,
                "unit": "ks"
            })
            logging.info(f"Shipping: '{method_title}' | Price excl. VAT: {round_price(total_without_tax)} | Total price incl. VAT: {round_price(total_with_tax)}")
        return items

    def build_note(self, order):
        note_parts = [f"Order from online store #{get_order_number(order)}"]
        if order.get("date_created"):
            created = datetime.fromisoformat(order["date_created"])
            note_parts.append(f"Order date: {created.strftime('%d.%m.%Y %H:%M:%S')}")
        note_parts.append(f"Payment method: {order.get('payment_method_title') or ''}")

        shipping_names = [line.get("method_title") or "" for line in order.get("shipping_lines") or []]
        if shipping_names:
            note_parts.append(f"Shipping: {', '.join(shipping_names)}")

        if order.get("customer_note"):
            note_parts.append(f"Note: {order['customer_note']}")

        note_parts.append(f"NOTE: Prices already include VAT {VAT_RATE}%")
        return "\n".join(note_parts)

    def prepare_invoice_data(self, order, today=None):
        """
        Prepares the invoice payload for an order.

        Args:
            order (dict): The WooCommerce order.
            today (date, optional): Issue date; defaults to the current date.

        Returns:
            dict: The invoice payload for 'VyfakturujAPI.create_invoice()'.

        Raises:
            ValidationError: If the order is missing required fields.
        """
        validate_order_data(order)
        today = today or date.today()

        # Fee lines are not invoiced
        items = self.build_line_items(order) + self.build_shipping_items(order)

        invoice_data = {
            "type": INVOICE_TYPE_REGULAR,
            "date": today.strftime("%Y-%m-%d"),
            "due_date": (today + timedelta(days=DUE_DAYS)).strftime("%Y-%m-%d"),
            "vs": get_order_number(order),
            "calculate_vat": 1,
            "round_invoice": ROUND_MATHEMATICAL,
            "payment_method": get_payment_method(order.get("payment_method"), self.payment_methods),
            "customer": self.build_customer(order),
            "items": items,
            "note": self.build_note(order),
            "currency": order.get("currency") or "CZK"
        }
        logging.info(f"Invoice prepared for order #{get_order_number(order)}: items: {len(items)}")
        return invoice_data


def is_delivery_success(response, http_code):
    """
    Decides whether a send-mail response means the e-mail went out.

    Any of: HTTP 200/201, 'success' set to true, or 'status' equal to 'ok'.
    """
    if http_code in (200, 201):
        return True
    if isinstance(response, dict):
        return response.get("success") is True or response.get("status") == "ok"
    return False


def describe_failure(response, http_code):
    error_msg = f"HTTP: {http_code}"
    if isinstance(response, dict):
        if "error" in response:
            error_msg += f", Error: {response['error']}"
        if "message" in response:
            error_msg += f", Message: {response['message']}"
    return error_msg


# PDF delivery via Vyfakturuj.cz
class InvoiceDelivery:
    """
    Has Vyfakturuj.cz e-mail the invoice PDF to the customer.

    Each attempt uses the next e-mail payload shape. The first attempt validates the
    primary shape with a test call and switches to the secondary shape if the test
    fails. Attempts are separated by a fixed pause.

    Args:
        api (VyfakturujAPI): The API client.
        site_name (str): Shop name for the e-mail subject and message.
        email_shapes (list, optional): Field tuples per attempt, see DEFAULT_EMAIL_SHAPES.
            Unknown fields raise ValidationError here rather than during a send.
        max_attempts (int): Number of send attempts.
        retry_delay (float): Pause between attempts in seconds.
        sleep (callable): Used for the pause.
    """
    def __init__(self, api, site_name="", email_shapes=None, max_attempts=3, retry_delay=3, sleep=time.sleep):
        self.api = api
        self.site_name = site_name
        self.email_shapes = validate_email_shapes(list(email_shapes)) if email_shapes else list(DEFAULT_EMAIL_SHAPES)
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep

    def build_email_payloads(self, order, customer_email):
        billing = order.get("billing") or {}
        customer_name = f"{billing.get('first_name') or ''} {billing.get('last_name') or ''}".strip() or "Dear Customer"
        order_number = get_order_number(order)
        fields = {
            "to": customer_email,
            "email": customer_email,
            "subject": f"Invoice for order #{order_number} - {self.site_name}",
            "message": (
                f"Hello {customer_name}!\n\n"
                f"Thank you for your purchase at {self.site_name}.\n"
                f"Please find attached the invoice for order #{order_number}.\n\n"
                f"Best regards,\n{self.site_name} Team"
            )
        }
        return [{field: fields[field] for field in shape} for shape in self.email_shapes]

    def test_payload(self, invoice_id, payload):
        """Runs a test send with the payload; False if the provider rejects it."""
        try:
            logging.info("Testing data structure before sending...")
            response = self.api.invoice_send_mail_test(invoice_id, payload)
        except VyfakturujError as e:
            logging.warning(f"Data structure test failed: {e}")
            return False

        info = self.api.get_info() or {}
        if not is_delivery_success(response, info.get("http_code")):
            logging.warning(f"Data structure test failed: {describe_failure(response, info.get('http_code'))}")
            return False
        log_debug(f"Test passed successfully: {json.dumps(response, ensure_ascii=False)}")
        return True

    def send(self, order, invoice_id):
        """
        Sends the invoice PDF to the order's billing e-mail.

        Args:
            order (dict): The WooCommerce order.
            invoice_id (int): The Vyfakturuj.cz invoice ID.

        Returns:
            str: The address the invoice was sent to.

        Raises:
            ValidationError: If the order has no billing e-mail.
            TransportError: If the last attempt failed on the network.
            ProviderError: If no attempt was accepted by the provider.
        """
        customer_email = (order.get("billing") or {}).get("email")
        if not customer_email:
            raise ValidationError("Customer email not found in order")

        logging.info(f"Sending PDF invoice #{invoice_id} to email {customer_email} via Vyfakturuj API")
        payloads = self.build_email_payloads(order, customer_email)
        attempts = itertools.count(1)

        def attempt_send():
            attempt = next(attempts)
            payload = payloads[min(attempt, len(payloads)) - 1]
            logging.info(f"Attempt #{attempt} to send email for invoice #{invoice_id}")

            if attempt == 1 and len(payloads) > 1 and not self.test_payload(invoice_id, payload):
                payload = payloads[1]
                logging.info(f"Switching to alternative structure: {', '.join(payload)}")

            log_debug(f"Using format: {json.dumps(payload, ensure_ascii=False)}")
            response = self.api.invoice_send_mail(invoice_id, payload)
            http_code = (self.api.get_info() or {}).get("http_code")
            logging.info(f"Email sending API response (HTTP status {http_code}): {json.dumps(response, ensure_ascii=False)}")

            if is_delivery_success(response, http_code):
                logging.info(f"Email with PDF invoice #{invoice_id} successfully sent to {customer_email} on attempt #{attempt}")
                return True
            logging.warning(f"Attempt #{attempt}: API returned unsuccessful response ({describe_failure(response, http_code)})")
            return False

        def before_sleep(retry_state):
            if retry_state.outcome.failed:
                logging.warning(f"Attempt #{retry_state.attempt_number} email sending failed: {retry_state.outcome.exception()}")
            logging.info("Waiting before next attempt...")

        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(VyfakturujError) | retry_if_result(lambda sent: not sent),
            before_sleep=before_sleep,
            sleep=self.sleep,
            reraise=True
        )
        try:
            retryer(attempt_send)
        except RetryError as e:
            raise ProviderError(f"Failed to send email via API after {self.max_attempts} attempts") from e
        return customer_email


# Order events
class OrderEvents:
    """
    Order event source. Callbacks subscribe to an event name and are called in order on emit.

    Events:
        - 'order_status_changed': (order_id, old_status, new_status)
        - 'new_order': (order_id,)
    """
    def __init__(self):
        self.subscribers = defaultdict(list)

    def subscribe(self, event, callback):
        self.subscribers[event].append(callback)

    def emit(self, event, *args):
        for callback in list(self.subscribers[event]):
            callback(*args)


# Invoice Processor
class InvoiceProcessor:
    """
    Creates Vyfakturuj.cz invoices for paid WooCommerce orders and has the PDF e-mailed.

    An order gets at most one invoice: the invoice ID is stored in the order metadata and,
    when present, creation is skipped and only delivery is attempted. Nothing here raises
    to the caller; failures end up in the log and, for delivery, as an order note.
    """
    def __init__(self, api, store, builder, delivery):
        self.api = api
        self.store = store
        self.builder = builder
        self.delivery = delivery
        self.success_count = 0
        self.failure_count = 0
        self.failed_orders = []

    def register(self, events):
        events.subscribe("order_status_changed", self.on_order_status_changed)
        events.subscribe("new_order", self.on_new_order)

    def on_order_status_changed(self, order_id, old_status, new_status):
        status = (new_status or "").replace("wc-", "", 1)
        if status in PAID_STATUSES:
            logging.info(f"Order #{order_id} changed status {old_status} -> {status}")
            return self.create_invoice_for_order(order_id, status=status)
        return None

    def on_new_order(self, order_id):
        logging.info(f"New order created #{order_id}")

    def create_invoice_for_order(self, order_id, status=None):
        """
        Creates the invoice for an order, or re-sends the PDF if it already has one.

        When called for a status change, the status is stored in the order metadata
        and a repeated change to the same status is ignored. WooCommerce reports every
        order edit, including our own metadata writes, as an update.

        Args:
            order_id (int): The WooCommerce order ID.
            status (str, optional): The paid status the order just moved to.

        Returns:
            The invoice ID, None if the status was already handled, or False if no invoice could be created.
        """
        if not self.api:
            logging.error(f"API not initialized for order #{order_id}")
            return self._failed(order_id)

        try:
            order = self.store.get_order_by_id(order_id)
            if not order:
                raise ValidationError(f"Order #{order_id} not found")

            if status:
                if get_meta(order, META_LAST_STATUS) == status:
                    logging.info(f"Order #{order_id} was already handled in status {status}, skipping")
                    return None
                self.store.update_order_meta(order_id, {META_LAST_STATUS: status})

            existing_invoice_id = get_meta(order, META_INVOICE_ID)
            if existing_invoice_id:
                logging.info(f"Invoice already created for order #{order_id} (ID: {existing_invoice_id})")
                self.send_invoice_pdf_to_customer(order, existing_invoice_id)
                self.success_count += 1
                return existing_invoice_id

            logging.info(f"Starting data preparation for order #{order_id} invoice")
            invoice_data = self.builder.prepare_invoice_data(order)
            log_debug(f"Invoice creation data: {json.dumps(invoice_data, ensure_ascii=False)}")

            logging.info("Sending invoice creation request to Vyfakturuj.cz")
            response = self.api.create_invoice(invoice_data)
            log_debug(f"Vyfakturuj.cz API response: {json.dumps(response, ensure_ascii=False)}")

            if not isinstance(response, dict) or not response.get("id"):
                raise ProviderError(f"Failed to create invoice: {json.dumps(response, ensure_ascii=False)}")

            invoice_id = response["id"]
            invoice_number = response.get("number") or ""
            try:
                self.store.update_order_meta(order_id, {
                    META_INVOICE_ID: invoice_id,
                    META_INVOICE_NUMBER: invoice_number
                })
            except requests.RequestException as e:
                handle_request_error(e)
                logging.error(
                    f"Invoice created for order #{order_id} (ID: {invoice_id}, number: {invoice_number}) "
                    "but it could not be stored on the order. Link it manually before processing the order again."
                )
                return self._failed(order_id)
            logging.info(f"Invoice successfully created for order #{order_id} (ID: {invoice_id})")
            self.store.add_order_note(order_id, f"Vyfakturuj.cz invoice created. ID: {invoice_id}")

            self.send_invoice_pdf_to_customer(order, invoice_id)
            self.success_count += 1
            return invoice_id

        except VyfakturujError as e:
            logging.error(f"Error creating invoice for order #{order_id}: {e}")
            return self._failed(order_id)
        except requests.RequestException as e:
            handle_request_error(e)
            logging.error(f"Error creating invoice for order #{order_id}: {e}")
            return self._failed(order_id)

    def send_invoice_pdf_to_customer(self, order, invoice_id):
        """
        Has the invoice PDF e-mailed and records the outcome on the order.

        Returns:
            bool: True if the PDF was sent.
        """
        order_id = order["id"]
        try:
            customer_email = self.delivery.send(order, invoice_id)
        except VyfakturujError as e:
            logging.error(f"Error sending PDF invoice via API: {e}")
            try:
                self.store.add_order_note(order_id, f"Error sending PDF invoice via API: {e}")
            except requests.RequestException as note_error:
                handle_request_error(note_error)
            return False

        try:
            self.store.update_order_meta(order_id, {
                META_PDF_SENT: format_mysql_datetime(datetime.now()),
                META_PDF_SENT_EMAIL: customer_email,
                META_PDF_SENT_METHOD: "api"
            })
            self.store.add_order_note(order_id, f"PDF invoice sent via Vyfakturuj API to email: {customer_email}")
        except requests.RequestException as e:
            handle_request_error(e)
        logging.info(f"PDF invoice #{invoice_id} successfully sent to {customer_email} via Vyfakturuj API")
        return True

    def resend_invoice_pdf(self, order_id):
        """
        Operator action: e-mails the PDF of an existing invoice again.

        Returns:
            bool: True if the PDF was sent; False if the order or its invoice is missing or sending failed.
        """
        if not self.api:
            logging.error(f"API not initialized for order #{order_id}")
            return False
        try:
            order = self.store.get_order_by_id(order_id)
        except requests.RequestException as e:
            handle_request_error(e)
            return False
        invoice_id = get_meta(order, META_INVOICE_ID) if order else None
        if not invoice_id:
            logging.error(f"Cannot resend PDF for order #{order_id}: no invoice found")
            return False
        return self.send_invoice_pdf_to_customer(order, invoice_id)

    def get_delivery_record(self, order):
        return {
            "invoice_id": get_meta(order, META_INVOICE_ID),
            "invoice_number": get_meta(order, META_INVOICE_NUMBER),
            "pdf_sent": get_meta(order, META_PDF_SENT),
            "pdf_sent_email": get_meta(order, META_PDF_SENT_EMAIL),
            "pdf_sent_method": get_meta(order, META_PDF_SENT_METHOD)
        }

    def _failed(self, order_id):
        self.failure_count += 1
        self.failed_orders.append(order_id)
        return False


def create_processor(config):
    """
    Wires the API clients, payload builder and delivery loop from a configuration.

    Args:
        config (Config): The configuration.

    Returns:
        InvoiceProcessor: The ready processor. Its API client is None without Vyfakturuj.cz credentials.
    """
    set_debug(config.debug)
    api = None
    if config.has_vyfakturuj_credentials:
        api = VyfakturujAPI(config.vyfakturuj_login, config.vyfakturuj_api_key, config.vyfakturuj_endpoint_url)
    store = WooCommerceAPI(
        config.woocommerce_base_url,
        config.woocommerce_consumer_key,
        config.woocommerce_consumer_secret,
        cache_dir=config.cache_dir
    )
    data_loader = DataLoader(config.payment_mapping_path)
    builder = InvoiceBuilder(product_lookup=store.get_product, payment_methods=data_loader.load_payment_mapping())
    delivery = InvoiceDelivery(
        api,
        site_name=config.site_name,
        email_shapes=config.email_shapes,
        max_attempts=config.send_attempts,
        retry_delay=config.retry_delay
    )
    return InvoiceProcessor(api, store, builder, delivery)


def main(argv):
    """
    Command line entry point.

    Usage:
        invoices.py                    # invoice all processing orders
        invoices.py <order_id>         # invoice one order
        invoices.py resend <order_id>  # e-mail the PDF of an existing invoice again
        invoices.py test               # check the Vyfakturuj.cz connection
    """
    config = Config.from_env()
    processor = create_processor(config)

    if argv and argv[0] == "test":
        if not processor.api:
            logging.error("API credentials not configured.")
            return 1
        try:
            result = processor.api.test()
        except VyfakturujError as e:
            logging.error(f"API connection failed: {e}")
            return 1
        logging.info(f"API connection successful: {json.dumps(result, ensure_ascii=False)}")
        return 0

    if argv and argv[0] == "resend":
        if len(argv) < 2:
            logging.error("Usage: invoices.py resend <order_id>")
            return 2
        return 0 if processor.resend_invoice_pdf(argv[1]) else 1

    if argv:
        order_id = argv[0]
        logging.info(f"Creating invoice for order {order_id}...")
        processor.create_invoice_for_order(order_id)
    else:
        logging.info("Fetching all processing orders from WooCommerce...")
        orders = processor.store.get_orders("processing")
        if not orders:
            logging.info("No processing orders found.")
        for order in orders:
            logging.info(f"Creating invoice for order {order['id']}...")
            processor.create_invoice_for_order(order["id"])

    # Summary of results
    logging.info(f"Summary: {processor.success_count} invoices processed successfully, {processor.failure_count} invoices failed.")
    if processor.failed_orders:
        logging.info(f"Failed orders: {', '.join(map(str, processor.failed_orders))}")
    return 1 if processor.failure_count else 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    sys.exit(main(sys.argv[1:]))
