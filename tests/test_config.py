import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

import invoices
from invoices import Config, DEFAULT_EMAIL_SHAPES, create_processor, parse_email_shapes, round_price
from vyfakturuj import ValidationError


class TestConfig(unittest.TestCase):
    @patch("invoices.load_dotenv")
    def test_from_env(self, mock_load_dotenv):
        env = {
            "VYFAKTURUJ_LOGIN": "shop@example.cz",
            "VYFAKTURUJ_API_KEY": "secret-key",
            "WOOCOMMERCE_BASE_URL": "https://shop.example.cz/wp-json/wc/v3",
            "SITE_NAME": "Pneu Shop",
            "VYFAKTURUJ_EMAIL_SHAPES": "email,subject;email",
            "VYFAKTURUJ_SEND_ATTEMPTS": "2",
            "VYFAKTURUJ_RETRY_DELAY": "1.5"
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        mock_load_dotenv.assert_called_once()
        self.assertTrue(config.has_vyfakturuj_credentials)
        self.assertEqual(config.site_name, "Pneu Shop")
        self.assertEqual(config.email_shapes, [("email", "subject"), ("email",)])
        self.assertEqual(config.send_attempts, 2)
        self.assertEqual(config.retry_delay, 1.5)
        self.assertIsNone(config.vyfakturuj_endpoint_url)

    def test_defaults(self):
        config = Config()

        self.assertFalse(config.has_vyfakturuj_credentials)
        self.assertEqual(config.email_shapes, DEFAULT_EMAIL_SHAPES)
        self.assertEqual(config.send_attempts, 3)
        self.assertEqual(config.retry_delay, 3)

    def test_parse_email_shapes(self):
        self.assertEqual(parse_email_shapes(""), DEFAULT_EMAIL_SHAPES)
        self.assertEqual(parse_email_shapes(" to , subject ;; email "), [("to", "subject"), ("email",)])

    def test_unknown_email_shape_field_is_rejected(self):
        with self.assertRaises(ValidationError):
            parse_email_shapes("to,subject;recipient")
        with self.assertRaises(ValidationError):
            Config(email_shapes=[("email", "body")])

    @patch("invoices.load_dotenv")
    def test_debug_logging_follows_config(self, mock_load_dotenv):
        self.addCleanup(invoices.set_debug, invoices.DEBUG)
        with patch.dict(os.environ, {"DEBUG": "false"}, clear=True):
            config = Config.from_env()
        self.assertFalse(config.debug)

        cache_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, cache_dir, True)
        create_processor(Config(cache_dir=cache_dir, debug=False))
        with self.assertNoLogs(level="INFO"):
            invoices.log_debug("Invoice creation data: {}")

        invoices.set_debug(True)
        with self.assertLogs(level="INFO") as logs:
            invoices.log_debug("Invoice creation data: {}")
        self.assertIn("Invoice creation data: {}", logs.output[0])

    def test_create_processor_without_credentials_has_no_api(self):
        cache_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, cache_dir, True)
        processor = create_processor(Config(woocommerce_base_url="https://shop.example.cz", cache_dir=cache_dir))

        self.assertIsNone(processor.api)
        self.assertFalse(processor.create_invoice_for_order(1))


class TestRoundPrice(unittest.TestCase):
    def test_rounds_half_up(self):
        self.assertEqual(round_price(2.675), 2.68)
        self.assertEqual(round_price(100.00000000000001), 100.0)
        self.assertEqual(round_price(0), 0.0)


if __name__ == "__main__":
    unittest.main()
