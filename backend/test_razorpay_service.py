import hashlib
import hmac
import json
import unittest
from unittest.mock import patch

import httpx

from razorpay_service import RazorpayService

RealAsyncClient = httpx.AsyncClient


def mock_client_factory(handler):
    def factory(*args, **kwargs):
        return RealAsyncClient(transport=httpx.MockTransport(handler), timeout=kwargs.get("timeout"))

    return factory


class TestRazorpaySignature(unittest.TestCase):
    def setUp(self):
        self.service = RazorpayService(key_id="rzp_test_key", key_secret="s3cret")

    def test_signature_is_hmac_of_order_and_payment(self):
        expected = hmac.new(b"s3cret", b"order_1|pay_1", hashlib.sha256).hexdigest()
        self.assertEqual(self.service.expected_signature("order_1", "pay_1"), expected)
        self.assertTrue(self.service.verify_signature("order_1", "pay_1", expected))

    def test_signature_for_other_payment_is_rejected(self):
        signature = self.service.expected_signature("order_1", "pay_1")
        self.assertFalse(self.service.verify_signature("order_1", "pay_2", signature))
        self.assertFalse(self.service.verify_signature("order_1", "pay_1", "deadbeef"))
        self.assertFalse(self.service.verify_signature("order_1", "pay_1", ""))

    def test_without_secret_nothing_verifies(self):
        service = RazorpayService(key_id="", key_secret="")
        self.assertFalse(service.can_verify)
        self.assertFalse(service.enabled)
        self.assertFalse(service.verify_signature("order_1", "pay_1", "anything"))


class TestRazorpayOrders(unittest.IsolatedAsyncioTestCase):
    async def test_create_order_posts_basic_auth_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"id": "order_abc", "amount": 4900, "currency": "INR", "receipt": "r1", "status": "created"},
            )

        service = RazorpayService(key_id="rzp_test_key", key_secret="s3cret")
        with patch("razorpay_service.httpx.AsyncClient", side_effect=mock_client_factory(handler)):
            result = await service.create_order(4900, "INR", notes={"plan": "monthly"})

        self.assertTrue(result["success"])
        self.assertEqual(result["order_id"], "order_abc")
        self.assertTrue(seen["url"].endswith("/orders"))
        self.assertTrue(seen["auth"].startswith("Basic "))
        self.assertEqual(seen["body"]["amount"], 4900)
        self.assertEqual(seen["body"]["notes"], {"plan": "monthly"})

    async def test_create_order_reports_gateway_rejection(self):
        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"description": "Bad amount"}})

        service = RazorpayService(key_id="rzp_test_key", key_secret="s3cret")
        with patch("razorpay_service.httpx.AsyncClient", side_effect=mock_client_factory(handler)):
            result = await service.create_order(0, "INR")

        self.assertFalse(result["success"])
        self.assertEqual(result["error"], "Bad amount")

    async def test_create_order_requires_configuration(self):
        result = await RazorpayService(key_id="", key_secret="").create_order(4900, "INR")
        self.assertFalse(result["success"])


if __name__ == "__main__":
    unittest.main()
