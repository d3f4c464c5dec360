import asyncio
import json

import pytest

from xdtip.errors import SignatureError
from xdtip.model.ledger import reconcile, audit
from xdtip.payments import MockPay, Razorpay

SECRET = "whsec_test"


def mock_delivery(adapter, username="bob", amount_minor=50_000,
                  payment_id="pay_1"):
    payload = adapter.build_capture(username, amount_minor, payment_id)
    return payload, {adapter.signature_header: adapter.sign(payload)}


def razorpay_delivery(adapter, notes, amount_minor=50_000, payment_id="pay_r1",
                      event="payment.captured"):
    payload = json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id, "amount": amount_minor, "currency": "INR",
            "notes": notes,
        }}},
    }).encode()
    return payload, {adapter.signature_header: adapter.sign(payload)}


def test_captured_payment_credits_tokens(ledger):
    async def scenario():
        async with ledger.open() as h:
            bob = await h.add_account("bob")
            mock = MockPay(SECRET)
            payload, headers = mock_delivery(mock)

            assert await reconcile(h.db(), mock, payload, headers) == {
                "status": "ok"
            }
            assert await h.balance(bob) == 500
            assert (await audit(h.db()))["ok"]

    asyncio.run(scenario())


def test_duplicate_delivery_credits_once(ledger):
    async def scenario():
        async with ledger.open() as h:
            bob = await h.add_account("bob")
            mock = MockPay(SECRET)
            payload, headers = mock_delivery(mock)

            await reconcile(h.db(), mock, payload, headers)
            again = await reconcile(h.db(), mock, payload, headers)

            assert again == {"status": "ok", "duplicate": True}
            assert await h.balance(bob) == 500
            assert await h.scalar(
                "SELECT COUNT(*) FROM transactions WHERE kind = 'purchase'"
            ) == 1

    asyncio.run(scenario())


def test_concurrent_duplicate_deliveries_credit_once(ledger):
    async def scenario():
        async with ledger.open() as h:
            bob = await h.add_account("bob")
            mock = MockPay(SECRET)
            payload, headers = mock_delivery(mock)

            results = await asyncio.gather(*[
                reconcile(h.db(), mock, payload, headers) for _ in range(5)
            ])
            assert sum(1 for r in results if r.get("duplicate")) == 4
            assert await h.balance(bob) == 500

    asyncio.run(scenario())


def test_tampered_body_is_rejected(ledger):
    async def scenario():
        async with ledger.open() as h:
            bob = await h.add_account("bob")
            mock = MockPay(SECRET)
            payload, headers = mock_delivery(mock, amount_minor=100)
            tampered = payload.replace(b"100", b"999900")

            with pytest.raises(SignatureError):
                await reconcile(h.db(), mock, tampered, headers)
            assert await h.balance(bob) == 0
            assert await h.count("transactions") == 0

    asyncio.run(scenario())


def test_missing_signature_is_rejected(ledger):
    async def scenario():
        async with ledger.open() as h:
            await h.add_account("bob")
            mock = MockPay(SECRET)
            payload, _ = mock_delivery(mock)
            with pytest.raises(SignatureError):
                await reconcile(h.db(), mock, payload, {})

    asyncio.run(scenario())


def test_unconfigured_secret_rejects_everything(ledger):
    async def scenario():
        async with ledger.open() as h:
            unconfigured = Razorpay("")
            payload = b'{"event": "payment.captured"}'
            with pytest.raises(SignatureError):
                await reconcile(h.db(), unconfigured, payload,
                                {"x-razorpay-signature": ""})

    asyncio.run(scenario())


def test_other_events_are_ignored(ledger):
    async def scenario():
        async with ledger.open() as h:
            bob = await h.add_account("bob")
            rzp = Razorpay(SECRET)
            payload, headers = razorpay_delivery(
                rzp, {"username": "bob"}, event="payment.failed")

            assert await reconcile(h.db(), rzp, payload, headers) == {
                "status": "ignored"
            }
            assert await h.balance(bob) == 0

    asyncio.run(scenario())


def test_signed_non_json_payload_is_ignored(ledger):
    async def scenario():
        async with ledger.open() as h:
            rzp = Razorpay(SECRET)
            payload = b"not json"
            headers = {rzp.signature_header: rzp.sign(payload)}
            assert await reconcile(h.db(), rzp, payload, headers) == {
                "status": "ignored"
            }

    asyncio.run(scenario())


def test_missing_username_is_ignored(ledger):
    async def scenario():
        async with ledger.open() as h:
            rzp = Razorpay(SECRET)
            # razorpay sends an empty list when there are no notes
            payload, headers = razorpay_delivery(rzp, [])
            res = await reconcile(h.db(), rzp, payload, headers)
            assert res == {"status": "ignored", "reason": "MissingTarget"}
            assert await h.count("transactions") == 0

    asyncio.run(scenario())


def test_capitalized_username_note(ledger):
    async def scenario():
        async with ledger.open() as h:
            bob = await h.add_account("bob")
            rzp = Razorpay(SECRET)
            payload, headers = razorpay_delivery(rzp, {"Username": "bob"},
                                                 amount_minor=12_345)
            assert await reconcile(h.db(), rzp, payload, headers) == {
                "status": "ok"
            }
            # fractional tokens are dropped
            assert await h.balance(bob) == 123

    asyncio.run(scenario())


def test_payment_below_one_token_is_ignored(ledger):
    async def scenario():
        async with ledger.open() as h:
            bob = await h.add_account("bob")
            mock = MockPay(SECRET)
            payload, headers = mock_delivery(mock, amount_minor=99)
            res = await reconcile(h.db(), mock, payload, headers)
            assert res["status"] == "ignored"
            assert await h.balance(bob) == 0

    asyncio.run(scenario())


def test_unknown_user_is_a_logged_noop(ledger, caplog):
    async def scenario():
        async with ledger.open() as h:
            mock = MockPay(SECRET)
            payload, headers = mock_delivery(mock, username="ghost")
            assert await reconcile(h.db(), mock, payload, headers) == {
                "status": "ok"
            }
            assert await h.count("transactions") == 0

    with caplog.at_level("WARNING"):
        asyncio.run(scenario())
    assert "ghost" in caplog.text


def test_capture_beyond_ledger_range_is_ignored(ledger, caplog):
    async def scenario():
        async with ledger.open() as h:
            bob = await h.add_account("bob")
            mock = MockPay(SECRET)
            payload, headers = mock_delivery(mock, amount_minor=10 ** 25)
            res = await reconcile(h.db(), mock, payload, headers)
            assert res == {"status": "ignored", "reason": "AmountOutOfRange"}
            assert await h.balance(bob) == 0
            assert await h.count("transactions") == 0

    with caplog.at_level("WARNING"):
        asyncio.run(scenario())
    assert "out of range" in caplog.text
