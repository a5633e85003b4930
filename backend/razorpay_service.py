import base64
import hashlib
import hmac
import logging
import os
import uuid
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class RazorpayService:
    """Razorpay helper for order creation + checkout signature checks."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
    ) -> None:
        self.key_id = key_id if key_id is not None else os.getenv("RAZORPAY_KEY_ID", "")
        self.key_secret = (
            key_secret if key_secret is not None else os.getenv("RAZORPAY_KEY_SECRET", "")
        )
        self.base_url = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1").rstrip("/")
        self.timeout_seconds = float(os.getenv("RAZORPAY_TIMEOUT_SECONDS", "20"))
        self.receipt_max_len = int(os.getenv("RAZORPAY_RECEIPT_MAX_LEN", "40"))

    @property
    def can_verify(self) -> bool:
        return bool(self.key_secret)

    @property
    def enabled(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def expected_signature(self, order_id: str, payment_id: str) -> str:
        message = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(self.key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.can_verify:
            return False
        expected = self.expected_signature(order_id, payment_id)
        return hmac.compare_digest(expected, (signature or "").strip().lower())

    def _auth_header(self) -> str:
        raw = f"{self.key_id}:{self.key_secret}".encode("utf-8")
        return f"Basic {base64.b64encode(raw).decode('ascii')}"

    async def create_order(
        self,
        amount: int,
        currency: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"success": False, "error": "Razorpay is not configured"}

        receipt = f"rcpt_{uuid.uuid4().hex}"[: self.receipt_max_len]
        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    f"{self.base_url}/orders",
                    json=payload,
                    headers={"Authorization": self._auth_header()},
                )
                data = response.json()
        except Exception as exc:
            logger.error("Razorpay order request failed: %s", exc)
            return {"success": False, "error": str(exc)}

        if response.status_code != 200 or not data.get("id"):
            error = (data.get("error") or {}).get("description", "Order creation failed")
            logger.error(
                "Razorpay order rejected status=%s error=%s",
                response.status_code,
                error,
            )
            return {"success": False, "error": error, "response": data}

        return {
            "success": True,
            "order_id": data.get("id"),
            "amount": data.get("amount", payload["amount"]),
            "currency": data.get("currency", currency),
            "receipt": data.get("receipt", receipt),
            "status": data.get("status"),
        }
