from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
import base64
import hashlib
import hmac
import json
import logging
import os
import time
import uuid

from .errors import SignatureError, MissingTarget
from .model.db import MAX_AMOUNT

logger = logging.getLogger(__name__)

RAZORPAY_WEBHOOK_SECRET = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

# gateway amounts are in minor units (paise, cents)
MINOR_UNITS_PER_TOKEN = 100


@dataclass
class CapturedPayment:
    reference_id: str
    amount_minor: int
    username: str

    @property
    def tokens(self) -> int:
        # fractional tokens are not credited
        return self.amount_minor // MINOR_UNITS_PER_TOKEN


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name: str = "gateway"
    signature_header: str = ""

    def __init__(self, secret: str) -> None:
        self.secret = secret

    # over the untouched request body, never over re-serialized JSON
    @abstractmethod
    def sign(self, payload: bytes) -> str: ...

    def verify_signature(self, payload: bytes, headers: dict) -> None:
        sig = headers.get(self.signature_header)
        if not self.secret:
            logger.error("%s webhook secret is not configured", self.name)
            raise SignatureError("Invalid signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            logger.warning("SECURITY: %s webhook with invalid signature "
                           "rejected (%d bytes)", self.name, len(payload))
            raise SignatureError("Invalid signature")

    def parse_event(self, payload: bytes) -> Optional[dict]:
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return event if isinstance(event, dict) else None

    @abstractmethod
    def is_capture(self, event: dict) -> bool: ...

    # raises MissingTarget when the event cannot be attributed
    @abstractmethod
    def captured_payment(self, event: dict) -> CapturedPayment: ...


def _amount_minor(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MissingTarget("payment amount missing or invalid")
    if value // MINOR_UNITS_PER_TOKEN > MAX_AMOUNT:
        raise MissingTarget(f"payment amount {value} is out of range",
                            kind="AmountOutOfRange")
    return value


# ----------------------------
# Razorpay
# ----------------------------
class Razorpay(PaymentAdapter):
    name = "razorpay"
    signature_header = "x-razorpay-signature"

    def sign(self, payload: bytes) -> str:
        return hmac.new(
            self.secret.encode(), payload, hashlib.sha256
        ).hexdigest()

    def is_capture(self, event: dict) -> bool:
        return event.get("event") == "payment.captured"

    def captured_payment(self, event: dict) -> CapturedPayment:
        entity = (
            ((event.get("payload") or {}).get("payment") or {})
            .get("entity") or {}
        )
        notes = entity.get("notes") or {}
        if not isinstance(notes, dict):
            # razorpay sends [] for empty notes
            notes = {}
        username = notes.get("username") or notes.get("Username")
        if not username:
            raise MissingTarget("No username found in payment notes")
        reference_id = entity.get("id")
        if not reference_id:
            raise MissingTarget("payment id missing")
        return CapturedPayment(
            reference_id=str(reference_id),
            amount_minor=_amount_minor(entity.get("amount")),
            username=str(username).strip(),
        )


# ----------------------------
# MockPay implementation (dev / load testing)
# ----------------------------
class MockPay(PaymentAdapter):
    name = "mockpay"
    signature_header = "x-mockpay-signature"

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def is_capture(self, event: dict) -> bool:
        return event.get("type") == "payment.captured"

    def captured_payment(self, event: dict) -> CapturedPayment:
        username = (event.get("metadata") or {}).get("username")
        if not username:
            raise MissingTarget("No username found in payment metadata")
        reference_id = event.get("payment_id")
        if not reference_id:
            raise MissingTarget("payment id missing")
        return CapturedPayment(
            reference_id=str(reference_id),
            amount_minor=_amount_minor(event.get("amount")),
            username=str(username).strip(),
        )

    def build_capture(self, username: str, amount_minor: int,
                      payment_id: Optional[str] = None) -> bytes:
        event = {
            "type": "payment.captured",
            "payment_id": payment_id or f"mock_{uuid.uuid4().hex}",
            "amount": int(amount_minor),
            "currency": "inr",
            "created_at": int(time.time()),
            "metadata": {"username": username},
        }
        return json.dumps(event).encode()


def default_adapters() -> dict:
    return {
        "razorpay": Razorpay(RAZORPAY_WEBHOOK_SECRET),
        "mockpay": MockPay(MOCK_SECRET),
    }
