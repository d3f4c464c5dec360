# model/ledger.py
"""
Token ledger on top of the relational store.

- settlement of a tip: validate, split the fee, debit the viewer, credit the
  creator payout and the platform wallet, append the audit rows, notify
- crediting captured payments exactly once per external reference id
- read APIs: tip history, keyed settlement lookup
- audit: recompute balances from the append-only transaction log

Every balance change is a single conditional UPDATE ... RETURNING, and all
changes belonging to one logical operation share one transaction. There is no
read-then-write of a balance anywhere in here.
"""

from __future__ import annotations
import asyncio
import logging
import math
import os
from dataclasses import dataclass, asdict
from fractions import Fraction
from typing import Callable, AsyncContextManager, Optional, Dict, Any, List

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    TipError, InvalidAmount, InvalidMessage, SelfTip, SenderNotFound,
    ReceiverNotFound, InsufficientFundsError, ConflictError, StoreError,
    MissingTarget,
)
from ..helpers import now_ts, to_iso, new_id
from ..infra.timings import timeit
from .db import (
    Tip, Transaction, PLATFORM_ACCOUNT_ID, ROLE_PLATFORM, MAX_AMOUNT,
    KIND_TIP_SENT, KIND_TIP_RECEIVED, KIND_PLATFORM_FEE, KIND_PURCHASE,
)

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


# ------------------------------------------------------------------------------
# Policy
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class FeePolicy:
    # exact rational, so floor() never suffers from binary float error
    fee_rate: Fraction = Fraction(8, 100)
    min_tip: int = 10
    max_message_length: int = 280
    max_amount: int = MAX_AMOUNT
    store_timeout: float = 10.0

    def __post_init__(self):
        if not (0 <= self.fee_rate < 1):
            raise ValueError("fee_rate must be in [0, 1)")
        if self.min_tip < 1:
            raise ValueError("min_tip must be at least 1")
        if not (self.min_tip <= self.max_amount <= MAX_AMOUNT):
            raise ValueError(f"max_amount must be in [min_tip, {MAX_AMOUNT}]")

    @classmethod
    def from_env(cls) -> "FeePolicy":
        return cls(
            fee_rate=Fraction(os.getenv("TIP_FEE_RATE", "0.08")),
            min_tip=int(os.getenv("TIP_MIN_AMOUNT", "10")),
            max_message_length=int(os.getenv("TIP_MAX_MESSAGE", "280")),
            store_timeout=float(os.getenv("TIP_STORE_TIMEOUT", "10")),
        )

    def split(self, amount: int) -> tuple[int, int]:
        """(creator_share, platform_share); the two always sum to amount."""
        creator_share = math.floor(amount * (1 - self.fee_rate))
        return creator_share, amount - creator_share


@dataclass
class Settlement:
    tip_id: str
    sender_id: str
    sender_username: str
    creator_slug: str
    amount: int
    creator_received: int
    platform_fee: int
    message: Optional[str]
    created_at: float
    replayed: bool = False

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["created_at"] = to_iso(self.created_at)
        return d

    def event(self) -> Dict[str, Any]:
        # payload pushed to the creator's overlay
        return {
            "type": "new-tip",
            "tip_id": self.tip_id,
            "sender": self.sender_username,
            "amount": self.amount,
            "message": self.message,
            "created_at": to_iso(self.created_at),
        }


# ------------------------------------------------------------------------------
# Validation (no I/O, runs before anything touches the store)
# ------------------------------------------------------------------------------

def _validate_amount(policy: FeePolicy, amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("amount must be a whole number of tokens")
    if amount <= 0:
        raise InvalidAmount("amount must be positive")
    if amount < policy.min_tip:
        raise InvalidAmount(f"Minimum tip is {policy.min_tip} tokens")
    if amount > policy.max_amount:
        raise InvalidAmount(f"Maximum tip is {policy.max_amount} tokens")
    return amount


def _normalize_message(policy: FeePolicy, message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    message = message.strip()
    if not message:
        return None
    if len(message) > policy.max_message_length:
        raise InvalidMessage(
            f"message is longer than {policy.max_message_length} characters"
        )
    return message


def _check_replay(prior: Settlement, receiver_slug: str,
                  amount: int) -> Settlement:
    if prior.creator_slug != receiver_slug or prior.amount != amount:
        raise ConflictError(
            "Idempotency-Key was already used for a different tip"
        )
    return prior


def _scoped_request_id(sender_id: str, request_id: Optional[str]) -> Optional[str]:
    if not request_id:
        return None
    return f"{sender_id}:{request_id}"


# ------------------------------------------------------------------------------
# Atomic balance primitives (UN-GATED, caller owns the transaction)
# ------------------------------------------------------------------------------

async def _debit_account(s: AsyncSession, account_id: str, amount: int) -> int:
    row = (await s.execute(text("""
        UPDATE accounts
        SET balance = balance - :amount
        WHERE id = :id AND balance >= :amount
        RETURNING balance
    """), {"id": account_id, "amount": amount})).first()
    if row is None:
        raise InsufficientFundsError("Insufficient tokens")
    return int(row[0])


async def _credit_account(s: AsyncSession, account_id: str, amount: int) -> int:
    row = (await s.execute(text("""
        UPDATE accounts
        SET balance = balance + :amount
        WHERE id = :id
        RETURNING balance
    """), {"id": account_id, "amount": amount})).first()
    if row is None:
        raise StoreError("account row missing during credit")
    return int(row[0])


async def _credit_creator(s: AsyncSession, creator_id: str, amount: int) -> int:
    row = (await s.execute(text("""
        UPDATE creator_profiles
        SET payout_balance = payout_balance + :amount
        WHERE id = :id
        RETURNING payout_balance
    """), {"id": creator_id, "amount": amount})).first()
    if row is None:
        raise ReceiverNotFound("Creator not found")
    return int(row[0])


async def _credit_platform(s: AsyncSession, amount: int) -> int:
    return await _credit_account(s, PLATFORM_ACCOUNT_ID, amount)


# ------------------------------------------------------------------------------
# Lookups (UN-GATED)
# ------------------------------------------------------------------------------

async def _get_sender(s: AsyncSession, sender_id: str):
    return (await s.execute(text("""
        SELECT id, username FROM accounts
        WHERE id = :id AND role != :platform
    """), {"id": sender_id, "platform": ROLE_PLATFORM})).mappings().first()


async def _get_creator(s: AsyncSession, slug: str):
    return (await s.execute(text("""
        SELECT id, account_id, slug FROM creator_profiles WHERE slug = :slug
    """), {"slug": slug})).mappings().first()


async def _find_tip(s: AsyncSession, scoped_request_id: str) -> Optional[Settlement]:
    row = (await s.execute(text("""
        SELECT t.id, t.sender_id, a.username AS sender_username,
               c.slug, t.amount, t.creator_share, t.platform_share,
               t.message, t.created_at
        FROM tips AS t
        JOIN accounts AS a ON a.id = t.sender_id
        JOIN creator_profiles AS c ON c.id = t.creator_id
        WHERE t.request_id = :rid
    """), {"rid": scoped_request_id})).mappings().first()
    if not row:
        return None
    return Settlement(
        tip_id=row["id"],
        sender_id=row["sender_id"],
        sender_username=row["sender_username"],
        creator_slug=row["slug"],
        amount=int(row["amount"]),
        creator_received=int(row["creator_share"]),
        platform_fee=int(row["platform_share"]),
        message=row["message"],
        created_at=float(row["created_at"]),
        replayed=True,
    )


# ------------------------------------------------------------------------------
# Settlement
# ------------------------------------------------------------------------------

async def _settle_in_tx(
    s: AsyncSession,
    policy: FeePolicy,
    sender_id: str,
    receiver_slug: str,
    amount: int,
    message: Optional[str],
    scoped_rid: Optional[str],
) -> Settlement:
    sender = await _get_sender(s, sender_id)
    if not sender:
        raise SenderNotFound("Viewer not found")

    creator = await _get_creator(s, receiver_slug)
    if not creator:
        raise ReceiverNotFound("Creator not found")

    if creator["account_id"] == sender["id"]:
        raise SelfTip("You cannot tip yourself")

    if scoped_rid is not None:
        prior = await _find_tip(s, scoped_rid)
        if prior is not None:
            return _check_replay(prior, receiver_slug, amount)

    creator_share, platform_share = policy.split(amount)

    # debit first: if anything below fails the whole tx rolls back, and the
    # conditional debit is what enforces balance >= 0
    await _debit_account(s, sender["id"], amount)
    await _credit_creator(s, creator["id"], creator_share)
    if platform_share:
        await _credit_platform(s, platform_share)

    # audit rows last
    tip_id = new_id()
    ts = now_ts()
    s.add(Tip(
        id=tip_id,
        sender_id=sender["id"],
        creator_id=creator["id"],
        amount=amount,
        creator_share=creator_share,
        platform_share=platform_share,
        message=message,
        request_id=scoped_rid,
        created_at=ts,
    ))
    entries = [
        Transaction(id=new_id(), account_id=sender["id"],
                    kind=KIND_TIP_SENT, amount=amount, created_at=ts),
        Transaction(id=new_id(), account_id=creator["account_id"],
                    kind=KIND_TIP_RECEIVED, amount=creator_share,
                    created_at=ts),
    ]
    if platform_share:
        entries.append(Transaction(
            id=new_id(), account_id=None, kind=KIND_PLATFORM_FEE,
            amount=platform_share, created_at=ts,
        ))
    s.add_all(entries)
    await s.flush()

    return Settlement(
        tip_id=tip_id,
        sender_id=sender["id"],
        sender_username=sender["username"],
        creator_slug=creator["slug"],
        amount=amount,
        creator_received=creator_share,
        platform_fee=platform_share,
        message=message,
        created_at=ts,
    )


async def settle(
    db: GatedAsyncSession,
    policy: FeePolicy,
    sender_id: str,
    receiver_slug: str,
    amount: Any,
    message: Optional[str] = None,
    request_id: Optional[str] = None,
    notifier=None,
) -> Settlement:
    """
    Move `amount` tokens from the sender to the creator addressed by
    `receiver_slug`, keeping the platform fee.

    Raises InvalidAmount, InvalidMessage, SenderNotFound, ReceiverNotFound,
    SelfTip, InsufficientFundsError, ConflictError or StoreError. Nothing is
    written unless the whole settlement commits.

    With a `request_id`, a repeated call returns the original settlement
    (replayed=True) without moving value or notifying again.
    """
    amount = _validate_amount(policy, amount)
    message = _normalize_message(policy, message)
    scoped_rid = _scoped_request_id(sender_id, request_id)

    async def _run() -> Settlement:
        async with db.gated():
            async with db.session.begin():
                return await _settle_in_tx(
                    db.session, policy, sender_id, receiver_slug, amount,
                    message, scoped_rid,
                )

    try:
        async with timeit("ledger.settle"):
            result = await asyncio.wait_for(_run(), policy.store_timeout)
    except TipError:
        raise
    except asyncio.TimeoutError as e:
        # the commit may or may not have happened server-side
        logger.error("settlement timed out sender=%s creator=%s",
                     sender_id, receiver_slug)
        raise StoreError(
            "ledger timed out; the outcome is unknown, look it up before "
            "retrying",
            kind="StoreTimeout",
        ) from e
    except IntegrityError as e:
        # a concurrent request with the same Idempotency-Key won the race
        if scoped_rid is not None:
            prior = await find_settlement(db, sender_id, request_id)
            if prior is not None:
                return _check_replay(prior, receiver_slug, amount)
        logger.error("settlement constraint violation: %s", e.orig)
        raise StoreError("ledger rejected the settlement") from e
    except SQLAlchemyError as e:
        logger.error("settlement store failure: %s", e)
        raise StoreError("ledger unavailable") from e

    if result.replayed:
        logger.info("tip %s replayed for request %s", result.tip_id, request_id)
        return result

    logger.info(
        "tip %s settled: %s -> %s amount=%d creator=%d fee=%d",
        result.tip_id, result.sender_username, result.creator_slug,
        result.amount, result.creator_received, result.platform_fee,
    )
    if notifier is not None:
        await notify_tip(notifier, result)
    return result


async def notify_tip(notifier, settlement: Settlement) -> int:
    """Best effort: never raises, never affects the committed settlement."""
    try:
        async with timeit("notify.publish"):
            return await notifier.publish(
                settlement.creator_slug, settlement.event()
            )
    except Exception as e:
        logger.warning(
            "tip %s committed but overlay notification failed: %r",
            settlement.tip_id, e,
        )
        return 0


async def find_settlement(
    db: GatedAsyncSession, sender_id: str, request_id: str
) -> Optional[Settlement]:
    """Look up the committed outcome of a keyed settlement."""
    scoped_rid = _scoped_request_id(sender_id, request_id)
    if scoped_rid is None:
        return None
    try:
        async with db.gated():
            async with db.session.begin():
                return await _find_tip(db.session, scoped_rid)
    except SQLAlchemyError as e:
        raise StoreError("ledger unavailable") from e


# ------------------------------------------------------------------------------
# Purchases (payment webhook, admin grants)
# ------------------------------------------------------------------------------

CREDITED = "credited"
DUPLICATE = "duplicate"
UNKNOWN_ACCOUNT = "unknown_account"


async def credit_purchase(
    db: GatedAsyncSession,
    username: str,
    amount: int,
    reference_id: str,
) -> Dict[str, Any]:
    """
    Credit `amount` tokens to `username` at most once per `reference_id`.

    The purchase row is inserted first, guarded by the unique reference id; the
    balance is only credited when that insert actually happened. Both changes
    commit together.

    Returns {"status": credited|duplicate|unknown_account, "balance": ...}.
    """
    if amount <= 0:
        raise InvalidAmount("amount must be positive")
    if amount > MAX_AMOUNT:
        raise InvalidAmount(f"amount must be at most {MAX_AMOUNT}")
    try:
        async with timeit("ledger.credit_purchase"):
            async with db.gated():
                async with db.session.begin():
                    s = db.session
                    acc = (await s.execute(text("""
                        SELECT id FROM accounts
                        WHERE username = :u AND role != :platform
                    """), {"u": username, "platform": ROLE_PLATFORM})).first()
                    if acc is None:
                        return {"status": UNKNOWN_ACCOUNT, "balance": None}
                    account_id = acc[0]

                    inserted = (await s.execute(text("""
                        INSERT INTO transactions(
                            id, account_id, kind, amount, reference_id,
                            created_at)
                        VALUES (:id, :acc, :kind, :amount, :ref, :ts)
                        ON CONFLICT (reference_id) DO NOTHING
                        RETURNING id
                    """), {
                        "id": new_id(), "acc": account_id,
                        "kind": KIND_PURCHASE, "amount": amount,
                        "ref": reference_id, "ts": now_ts(),
                    })).first()
                    if inserted is None:
                        return {"status": DUPLICATE, "balance": None}

                    balance = await _credit_account(s, account_id, amount)
    except TipError:
        raise
    except SQLAlchemyError as e:
        logger.error("purchase credit store failure ref=%s: %s",
                     reference_id, e)
        raise StoreError("ledger unavailable") from e

    logger.info("credited %d tokens to %s (ref %s)",
                amount, username, reference_id)
    return {"status": CREDITED, "balance": balance}


async def reconcile(
    db: GatedAsyncSession,
    adapter,
    payload: bytes,
    headers: dict,
) -> Dict[str, Any]:
    """
    Handle one payment-gateway webhook delivery.

    Signature failure raises SignatureError. Everything after a valid
    signature answers the gateway with a success body so it stops retrying.
    """
    # raises SignatureError before anything else happens
    adapter.verify_signature(payload, headers)

    event = adapter.parse_event(payload)
    if event is None:
        logger.warning("%s webhook: signed payload is not JSON",
                       adapter.name)
        return {"status": "ignored"}

    if not adapter.is_capture(event):
        return {"status": "ignored"}

    try:
        payment = adapter.captured_payment(event)
    except MissingTarget as e:
        logger.warning("%s webhook: %s", adapter.name, e.message)
        return {"status": "ignored", "reason": e.kind}

    if payment.tokens <= 0:
        logger.warning("%s webhook: payment %s is worth less than one token",
                       adapter.name, payment.reference_id)
        return {"status": "ignored", "reason": "AmountTooSmall"}

    res = await credit_purchase(
        db, payment.username, payment.tokens, payment.reference_id
    )
    if res["status"] == UNKNOWN_ACCOUNT:
        logger.warning("%s webhook: user '%s' does not exist (payment %s)",
                       adapter.name, payment.username, payment.reference_id)
        return {"status": "ok"}
    if res["status"] == DUPLICATE:
        logger.info("%s webhook: payment %s already credited",
                    adapter.name, payment.reference_id)
        return {"status": "ok", "duplicate": True}
    return {"status": "ok"}


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def tip_history(
    db: GatedAsyncSession, slug: str, limit: int = 20
) -> List[Dict[str, Any]]:
    """Tips received by the creator `slug`, newest first."""
    async with db.gated():
        async with db.session.begin():
            creator = await _get_creator(db.session, slug)
            if not creator:
                raise ReceiverNotFound("Creator not found")
            rows = (await db.session.execute(text("""
                SELECT t.id, a.username AS sender, t.amount,
                       t.creator_share, t.message, t.created_at
                FROM tips AS t
                JOIN accounts AS a ON a.id = t.sender_id
                WHERE t.creator_id = :cid
                ORDER BY t.created_at DESC, t.id DESC
                LIMIT :limit
            """), {"cid": creator["id"], "limit": limit})).mappings().all()
    return [
        {
            "tip_id": r["id"],
            "sender": r["sender"],
            "amount": int(r["amount"]),
            "creator_received": int(r["creator_share"]),
            "message": r["message"],
            "created_at": to_iso(r["created_at"]),
        }
        for r in rows
    ]


# ------------------------------------------------------------------------------
# Audit / reconciliation sweep
# ------------------------------------------------------------------------------

async def audit(db: GatedAsyncSession) -> Dict[str, Any]:
    """
    Recompute every balance from the transaction log and report drift.

    Checks:
      sum(tip_sent) == sum(tip_received) + sum(platform_fee) == sum(tips)
      platform wallet == sum(platform_fee)
      creator payout   == sum(tip_received) for that creator
      account balance  == sum(purchase) - sum(tip_sent) for that account
      creator_share + platform_share == amount for every tip
    """
    mismatches: List[Dict[str, Any]] = []
    async with db.gated():
        async with db.session.begin():
            s = db.session
            sums = {
                row[0]: int(row[1]) for row in (await s.execute(text("""
                    SELECT kind, COALESCE(SUM(amount), 0)
                    FROM transactions GROUP BY kind
                """))).all()
            }
            tips_total = int((await s.execute(text(
                "SELECT COALESCE(SUM(amount), 0) FROM tips"
            ))).scalar_one())
            bad_splits = int((await s.execute(text("""
                SELECT COUNT(*) FROM tips
                WHERE creator_share + platform_share != amount
            """))).scalar_one())
            platform_balance = int((await s.execute(text(
                "SELECT balance FROM accounts WHERE id = :id"
            ), {"id": PLATFORM_ACCOUNT_ID})).scalar_one())

            creators = (await s.execute(text("""
                SELECT c.slug, c.payout_balance,
                       COALESCE(SUM(t.amount), 0) AS received
                FROM creator_profiles AS c
                LEFT JOIN transactions AS t
                  ON t.account_id = c.account_id AND t.kind = :kind
                GROUP BY c.id, c.slug, c.payout_balance
            """), {"kind": KIND_TIP_RECEIVED})).mappings().all()

            accounts = (await s.execute(text("""
                SELECT a.username, a.balance,
                       COALESCE(SUM(CASE WHEN t.kind = :purchase
                                         THEN t.amount ELSE 0 END), 0)
                         AS purchased,
                       COALESCE(SUM(CASE WHEN t.kind = :sent
                                         THEN t.amount ELSE 0 END), 0)
                         AS sent
                FROM accounts AS a
                LEFT JOIN transactions AS t ON t.account_id = a.id
                WHERE a.role != :platform
                GROUP BY a.id, a.username, a.balance
            """), {
                "purchase": KIND_PURCHASE, "sent": KIND_TIP_SENT,
                "platform": ROLE_PLATFORM,
            })).mappings().all()

    sent = sums.get(KIND_TIP_SENT, 0)
    received = sums.get(KIND_TIP_RECEIVED, 0)
    fees = sums.get(KIND_PLATFORM_FEE, 0)
    purchased = sums.get(KIND_PURCHASE, 0)

    if sent != received + fees:
        mismatches.append({"check": "tip_conservation", "tip_sent": sent,
                           "tip_received": received, "platform_fee": fees})
    if sent != tips_total:
        mismatches.append({"check": "tips_vs_log", "tips": tips_total,
                           "tip_sent": sent})
    if bad_splits:
        mismatches.append({"check": "tip_split", "count": bad_splits})
    if platform_balance != fees:
        mismatches.append({"check": "platform_wallet",
                           "balance": platform_balance, "expected": fees})
    for c in creators:
        if int(c["payout_balance"]) != int(c["received"]):
            mismatches.append({"check": "creator_payout", "slug": c["slug"],
                               "balance": int(c["payout_balance"]),
                               "expected": int(c["received"])})
    for a in accounts:
        expected = int(a["purchased"]) - int(a["sent"])
        if int(a["balance"]) != expected:
            mismatches.append({"check": "account_balance",
                               "username": a["username"],
                               "balance": int(a["balance"]),
                               "expected": expected})

    report = {
        "ok": not mismatches,
        "totals": {
            "purchased": purchased,
            "tip_sent": sent,
            "tip_received": received,
            "platform_fee": fees,
            "platform_wallet": platform_balance,
        },
        "mismatches": mismatches,
    }
    if mismatches:
        logger.error("ledger audit found %d mismatches", len(mismatches))
    return report
