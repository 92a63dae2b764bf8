import logging
import time

import diskcache as dc
import requests
from tenacity import retry, stop_after_attempt, wait_exponential, wait_random, retry_if_exception

PRODUCT_CACHE_SECONDS = 3600


def handle_request_error(e, response=None):
    """
    Handles request errors by logging relevant information.

    Args:
        e (Exception): The exception that was raised.
        response (requests.Response, optional): The response object, if available.
    """
    logging.error(f"Request failed: {e}")
    response = response if response is not None else getattr(e, "response", None)
    if response is not None:
        logging.error(f"Response status code: {response.status_code}")
        logging.error(f"Response content: {response.text}")


def is_transient_error(e):
    """Rate limits and server errors are worth another try; everything else is not."""
    return (
        isinstance(e, requests.RequestException)
        and e.response is not None
        and e.response.status_code in [429, 500, 502, 503]
    )


transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10) + wait_random(0, 1),
    retry=retry_if_exception(is_transient_error),
    reraise=True
)


def get_meta(document, key, default=None):
    """
    Reads a metadata value from a WooCommerce order or product document.

    Args:
        document (dict): The order or product as returned by the WooCommerce REST API.
        key (str): The metadata key, e.g. '_vyfakturuj_invoice_id'.
        default: Returned when the key is missing or empty.

    Returns:
        The stored value, or the default.
    """
    for meta in document.get("meta_data") or []:
        if meta.get("key") == key and meta.get("value") not in (None, ""):
            return meta["value"]
    return default


# WooCommerce API Handler
class WooCommerceAPI:
    """
    Handles interactions with the WooCommerce REST API (wc/v3).

    API Endpoints Used:
        - 'orders': list orders by status, fetch a single order, write order metadata.
        - 'orders/{id}/notes': add an order note.
        - 'products/{id}': product metadata (tyre attributes) for invoice line descriptions.

    Orders are never cached. Products are cached on disk for an hour.
    """
    def __init__(self, base_url, consumer_key, consumer_secret, cache=None, cache_dir="./cache"):
        self.base_url = base_url.rstrip("/") if base_url else base_url
        self.auth = (consumer_key, consumer_secret)
        self.cache = cache if cache is not None else dc.Cache(cache_dir)

    @transient_retry
    def get_orders(self, status="processing"):
        """
        Fetches the most recent orders with the given status.

        Args:
            status (str): WooCommerce order status.

        Returns:
            list: A list of orders, or an empty list if they could not be fetched.
        """
        try:
            params = {'status': status, 'orderby': 'date', 'order': 'desc', 'per_page': 100}
            response = requests.get(f"{self.base_url}/orders", auth=self.auth, params=params, timeout=30)
            if self.handle_response(response) is None:
                return []
            return response.json()
        except requests.RequestException as e:
            if is_transient_error(e):
                raise
            handle_request_error(e)
            return []

    @transient_retry
    def get_order_by_id(self, order_id):
        """
        Fetches a specific order by ID.

        Args:
            order_id (int | str): The ID of the order to fetch.

        Returns:
            dict: The order data, or None if the order could not be fetched.
        """
        try:
            response = requests.get(f"{self.base_url}/orders/{order_id}", auth=self.auth, timeout=30)
            if self.handle_response(response) is None:
                return None
            return response.json()
        except requests.RequestException as e:
            if is_transient_error(e):
                raise
            handle_request_error(e)
            return None

    @transient_retry
    def get_product(self, product_id):
        """
        Fetches a product by ID, using caching for efficiency.

        Args:
            product_id (int): The WooCommerce product ID.

        Returns:
            dict: The product data, or None if the product could not be fetched.
        """
        if not product_id:
            return None

        cache_key = f'product_{product_id}'
        if cache_key in self.cache:
            logging.info(f"Fetching product {product_id} from cache.")
            return self.cache[cache_key]

        try:
            response = requests.get(f"{self.base_url}/products/{product_id}", auth=self.auth, timeout=30)
            if self.handle_response(response) is None:
                return None
            product = response.json()
            self.cache.set(cache_key, product, expire=PRODUCT_CACHE_SECONDS)
            return product
        except requests.RequestException as e:
            if is_transient_error(e):
                raise
            handle_request_error(e)
            return None

    @transient_retry
    def update_order_meta(self, order_id, meta):
        """
        Writes metadata fields to an order.

        Args:
            order_id (int): The order ID.
            meta (dict): Metadata key/value pairs.

        Raises:
            requests.RequestException: If the order could not be updated.
        """
        meta_data = [{"key": key, "value": value} for key, value in meta.items()]
        response = requests.put(
            f"{self.base_url}/orders/{order_id}",
            auth=self.auth,
            json={"meta_data": meta_data},
            timeout=30
        )
        self.handle_response(response)
        logging.info(f"Order {order_id} metadata updated: {', '.join(meta)}")

    @transient_retry
    def add_order_note(self, order_id, note):
        """
        Adds a private note to an order.

        Args:
            order_id (int): The order ID.
            note (str): The note text.

        Raises:
            requests.RequestException: If the note could not be added.
        """
        response = requests.post(
            f"{self.base_url}/orders/{order_id}/notes",
            auth=self.auth,
            json={"note": note},
            timeout=30
        )
        self.handle_response(response)

    def handle_response(self, response):
        """
        Handles the response from an API request, including error handling for rate limits and server errors.

        Args:
            response (requests.Response): The response object.

        Returns:
            requests.Response: The response, or None if the resource was not found.
        """
        if response.status_code == 429:  # Too many requests
            logging.warning("Rate limit hit. Retrying after delay...")
            time.sleep(10)
            raise requests.exceptions.RequestException("Rate limit hit", response=response)
        elif 500 <= response.status_code < 600:  # Server errors
            logging.error(f"Server error: {response.status_code}")
            raise requests.exceptions.RequestException("Server error", response=response)
        elif response.status_code == 404:
            logging.error("Resource not found")
            return None
        response.raise_for_status()
        return response
