import base64
import hashlib
import hmac
import json

import pytest

from xdtip.errors import MissingTarget, SignatureError
from xdtip.payments import CapturedPayment, MockPay, Razorpay


def test_razorpay_signs_hex_digest():
    rzp = Razorpay("k")
    body = b'{"a":1}'
    assert rzp.sign(body) == hmac.new(b"k", body, hashlib.sha256).hexdigest()


def test_mockpay_signs_base64_digest():
    mock = MockPay("k")
    body = b'{"a":1}'
    digest = hmac.new(b"k", body, hashlib.sha256).digest()
    assert mock.sign(body) == base64.b64encode(digest).decode()


def test_signature_over_raw_bytes_not_reserialized_json():
    rzp = Razorpay("k")
    body = b'{"b": 2,  "a": 1}'
    headers = {"x-razorpay-signature": rzp.sign(body)}
    rzp.verify_signature(body, headers)

    reserialized = json.dumps(json.loads(body)).encode()
    with pytest.raises(SignatureError):
        rzp.verify_signature(reserialized, headers)


def test_wrong_secret_is_rejected():
    body = b"{}"
    headers = {"x-mockpay-signature": MockPay("other").sign(body)}
    with pytest.raises(SignatureError):
        MockPay("k").verify_signature(body, headers)


def test_mockpay_capture_roundtrip():
    mock = MockPay("k")
    event = mock.parse_event(mock.build_capture("bob", 25_050, "pay_9"))
    assert mock.is_capture(event)
    assert mock.captured_payment(event) == CapturedPayment(
        reference_id="pay_9", amount_minor=25_050, username="bob")


def test_tokens_round_down():
    assert CapturedPayment("p", 25_099, "bob").tokens == 250
    assert CapturedPayment("p", 99, "bob").tokens == 0


def test_parse_event_rejects_non_objects():
    mock = MockPay("k")
    assert mock.parse_event(b"[1, 2]") is None
    assert mock.parse_event(b"\xff\xfe") is None
    assert mock.parse_event(b"{") is None


@pytest.mark.parametrize("entity", [
    {"amount": 100, "notes": {"username": "bob"}},
    {"id": "pay_1", "amount": "100", "notes": {"username": "bob"}},
    {"id": "pay_1", "amount": 100, "notes": {}},
])
def test_razorpay_unattributable_payments(entity):
    rzp = Razorpay("k")
    event = {"event": "payment.captured",
             "payload": {"payment": {"entity": entity}}}
    with pytest.raises(MissingTarget):
        rzp.captured_payment(event)


def test_amount_beyond_ledger_range():
    mock = MockPay("k")
    event = mock.parse_event(mock.build_capture("bob", 10 ** 25, "pay_big"))
    with pytest.raises(MissingTarget) as exc:
        mock.captured_payment(event)
    assert exc.value.kind == "AmountOutOfRange"
