import base64
import hashlib
import hmac
import logging

from flask import Flask, request, jsonify
from flask_cors import CORS

from invoices import Config, OrderEvents, META_LAST_STATUS, create_processor
from vyfakturuj import VyfakturujError
from woocommerce import get_meta


def verify_webhook_signature(body, signature, secret):
    """
    Checks a WooCommerce webhook signature: base64 of the HMAC-SHA256 of the raw body.

    Args:
        body (bytes): The raw request body.
        signature (str): The 'X-WC-Webhook-Signature' header value.
        secret (str): The webhook secret configured in WooCommerce.

    Returns:
        bool: True if the signature matches.
    """
    if not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


def create_app(config=None, processor=None, events=None):
    config = config or Config.from_env()
    processor = processor or create_processor(config)
    events = events or OrderEvents()
    processor.register(events)

    app = Flask(__name__)
    CORS(app, resources={r"/process_orders": {"origins": "*"}})

    @app.route('/process_orders', methods=['POST'])
    def process_orders():
        data = request.get_json(silent=True)
        order_ids = data.get("orders", []) if isinstance(data, dict) else None

        # Validate that we received a list of order IDs
        if not isinstance(order_ids, list) or not order_ids:
            logging.error("Invalid or empty orders list received.")
            return jsonify({"status": "error", "message": "Invalid or empty orders list"}), 400

        results = []
        for order_id in order_ids:
            logging.info(f"Processing order ID: {order_id}")
            invoice_id = processor.create_invoice_for_order(order_id)
            if invoice_id:
                results.append({"order_id": order_id, "status": "success", "invoice_id": invoice_id})
            else:
                results.append({"order_id": order_id, "status": "failed"})

        return jsonify({"status": "completed", "results": results}), 200

    @app.route('/orders/<order_id>/invoice', methods=['POST'])
    def create_invoice(order_id):
        invoice_id = processor.create_invoice_for_order(order_id)
        if not invoice_id:
            return jsonify({"status": "failed", "order_id": order_id}), 502
        return jsonify({"status": "success", "order_id": order_id, "invoice_id": invoice_id}), 200

    @app.route('/orders/<order_id>/invoice', methods=['GET'])
    def get_invoice(order_id):
        order = processor.store.get_order_by_id(order_id)
        if not order:
            return jsonify({"status": "error", "message": f"Order #{order_id} not found"}), 404
        return jsonify(processor.get_delivery_record(order)), 200

    @app.route('/orders/<order_id>/resend-pdf', methods=['POST'])
    def resend_pdf(order_id):
        if not processor.resend_invoice_pdf(order_id):
            return jsonify({"status": "failed", "order_id": order_id}), 502
        return jsonify({"status": "success", "order_id": order_id}), 200

    @app.route('/webhooks/woocommerce', methods=['POST'])
    def woocommerce_webhook():
        body = request.get_data()
        if config.woocommerce_webhook_secret:
            signature = request.headers.get("X-WC-Webhook-Signature", "")
            if not verify_webhook_signature(body, signature, config.woocommerce_webhook_secret):
                logging.warning("Rejected WooCommerce webhook with invalid signature.")
                return jsonify({"status": "error", "message": "Invalid signature"}), 401

        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            payload = {}
        topic = request.headers.get("X-WC-Webhook-Topic", "")
        order_id = payload.get("id")
        # WooCommerce pings a new webhook with a body that only carries 'webhook_id'
        if not order_id:
            return jsonify({"status": "ignored"}), 200

        if topic == "order.created":
            events.emit("new_order", order_id)
        elif topic == "order.updated":
            status = payload.get("status")
            last_status = get_meta(payload, META_LAST_STATUS)
            if status == last_status:
                logging.info(f"Order #{order_id} updated without a status change ({status})")
                return jsonify({"status": "ignored"}), 200
            events.emit("order_status_changed", order_id, last_status, status)
        else:
            logging.info(f"Ignoring WooCommerce webhook topic '{topic}'")
            return jsonify({"status": "ignored"}), 200
        return jsonify({"status": "accepted", "order_id": order_id}), 200

    @app.route('/test', methods=['GET'])
    def test_connection():
        if not processor.api:
            return jsonify({"status": "error", "message": "API credentials not configured"}), 500
        try:
            result = processor.api.test()
        except VyfakturujError as e:
            logging.error(f"API connection failed: {e}")
            return jsonify({"status": "error", "message": str(e)}), 502
        return jsonify({"status": "ok", "result": result}), 200

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    create_app().run(host='0.0.0.0', port=1234, debug=True)
