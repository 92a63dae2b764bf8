import json
import logging
from urllib.parse import urlparse

import requests

DEFAULT_ENDPOINT_URL = "https://api.vyfakturuj.cz/2.0/"
REQUEST_TIMEOUT = 30

HTTP_METHOD_GET = "GET"
HTTP_METHOD_POST = "POST"
HTTP_METHOD_PUT = "PUT"
HTTP_METHOD_DELETE = "DELETE"


class VyfakturujError(Exception):
    """Base class for all errors raised while talking to Vyfakturuj.cz."""


class TransportError(VyfakturujError):
    """Network, timeout or TLS failure; the request never produced a response."""


class ProviderError(VyfakturujError):
    """The provider answered, but not with what we expected (e.g. no invoice id)."""


class ValidationError(VyfakturujError):
    """Unusable input, such as a malformed endpoint URL or an incomplete order."""


def is_valid_url(url):
    """
    Checks that the given string is an absolute http(s) URL.

    Args:
        url (str): The URL to check.

    Returns:
        bool: True if the URL has an http/https scheme and a host.
    """
    if not isinstance(url, str):
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# Vyfakturuj.cz API Handler
class VyfakturujAPI:
    """
    Handles interactions with the Vyfakturuj.cz API: invoices, invoice e-mails and contacts.

    Every request carries HTTP Basic credentials built from the account login and API key,
    is sent as JSON and verifies TLS certificates. Request bodies are only attached to POST
    and PUT calls.

    The status code of the last request and the data sent with it are kept and can be read
    back with 'get_info()', which the e-mail delivery loop uses to judge success.
    """
    def __init__(self, login, api_key, endpoint_url=None):
        self.login = login
        self.api_key = api_key
        self.auth = (login, api_key)
        self.endpoint_url = DEFAULT_ENDPOINT_URL
        self.last_info = None
        if endpoint_url is not None:
            self.set_endpoint_url(endpoint_url)

    def set_endpoint_url(self, endpoint_url):
        """
        Points the client at a different API base URL.

        Args:
            endpoint_url (str): The new base URL, e.g. 'https://api.vyfakturuj.cz/2.0/'.

        Raises:
            ValidationError: If the URL is not a valid absolute URL.
        """
        if not is_valid_url(endpoint_url):
            raise ValidationError("Invalid endpoint URL")
        if not endpoint_url.endswith("/"):
            endpoint_url += "/"
        self.endpoint_url = endpoint_url

    @property
    def headers(self):
        return {"Content-Type": "application/json"}

    def create_invoice(self, data):
        return self.fetch_post("invoice/", data)

    def get_invoice(self, invoice_id):
        return self.fetch_get(f"invoice/{invoice_id}/")

    def get_invoices(self, args=None):
        return self.fetch_get("invoice/", params=args)

    def invoice_send_mail(self, invoice_id, data):
        """
        Asks the provider to render the invoice PDF and e-mail it.

        Args:
            invoice_id (int): The Vyfakturuj.cz invoice ID.
            data (dict): The e-mail payload (recipient, subject, message).

        Returns:
            dict | str: The decoded response, or the raw body if it was not JSON.
        """
        return self.fetch_post(f"invoice/{invoice_id}/do/send-mail/", data)

    def invoice_send_mail_test(self, invoice_id, data):
        """
        Same as 'invoice_send_mail()' but flagged as a test, so the provider only
        validates the payload and returns the e-mail template without sending it.
        """
        test_data = dict(data)
        test_data["test"] = True
        return self.invoice_send_mail(invoice_id, test_data)

    def create_contact(self, data):
        return self.fetch_post("contact/", data)

    def get_contact(self, contact_id):
        return self.fetch_get(f"contact/{contact_id}/")

    def get_contacts(self, args=None):
        return self.fetch_get("contact/", params=args)

    def test(self):
        """Checks connectivity and credentials."""
        return self.fetch_get("test/")

    def fetch_request(self, path, method, data=None, params=None):
        """
        Sends a request to the API and decodes the response.

        Args:
            path (str): Path relative to the endpoint URL, e.g. 'invoice/'.
            method (str): HTTP method.
            data (dict, optional): JSON body; only sent for POST and PUT.
            params (dict, optional): Query string arguments.

        Returns:
            dict | list | str: The decoded JSON response, or the raw body if it is not structured JSON.

        Raises:
            TransportError: If the request could not be completed.
        """
        url = f"{self.endpoint_url}{path}"
        body = None
        if data and method in (HTTP_METHOD_POST, HTTP_METHOD_PUT):
            body = json.dumps(data, ensure_ascii=False).encode("utf-8")

        try:
            response = requests.request(
                method,
                url,
                auth=self.auth,
                headers=self.headers,
                params=params or None,
                data=body,
                timeout=REQUEST_TIMEOUT,
                verify=True
            )
        except requests.RequestException as e:
            logging.error(f"Vyfakturuj request {method} {path} failed: {e}")
            raise TransportError(f"HTTP Error: {e}") from e

        self.last_info = {
            "http_code": response.status_code,
            "data_send": data
        }

        try:
            result = response.json()
        except ValueError:
            return response.text
        return result if isinstance(result, (dict, list)) else response.text

    def fetch_get(self, path, params=None):
        return self.fetch_request(path, HTTP_METHOD_GET, params=params)

    def fetch_post(self, path, data=None):
        return self.fetch_request(path, HTTP_METHOD_POST, data)

    def get_info(self):
        """
        Returns information about the last request.

        Returns:
            dict: {'http_code': int, 'data_send': dict | None}, or None before the first request.
        """
        return self.last_info
