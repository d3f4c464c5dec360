from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Float,
    ForeignKey,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# the platform wallet is one distinguished row in `accounts`
PLATFORM_ACCOUNT_ID = "platform"

ROLE_VIEWER = "viewer"
ROLE_CREATOR = "creator"
ROLE_PLATFORM = "platform"

KIND_TIP_SENT = "tip_sent"
KIND_TIP_RECEIVED = "tip_received"
KIND_PLATFORM_FEE = "platform_fee"
KIND_PURCHASE = "purchase"

# upper bound for a single tip or credit, far below the BIGINT columns so
# balances built from many of them cannot overflow either
MAX_AMOUNT = 10 ** 12


# ----------------------------
# ORM models
# ----------------------------
class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="accounts_balance_nonneg"),
        CheckConstraint(
            "role IN ('viewer','creator','platform')", name="accounts_role"
        ),
    )
    id = Column(String, primary_key=True)
    username = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=True, unique=True)
    password_hash = Column(String, nullable=True)
    role = Column(String, nullable=False, default=ROLE_VIEWER)
    balance = Column(BigInteger, nullable=False, default=0)  # tokens
    created_at = Column(Float, nullable=False)


class CreatorProfile(Base):
    __tablename__ = "creator_profiles"
    __table_args__ = (
        CheckConstraint(
            "payout_balance >= 0", name="creator_profiles_payout_nonneg"
        ),
    )
    id = Column(String, primary_key=True)
    account_id = Column(
        String, ForeignKey("accounts.id"), nullable=False, unique=True
    )
    slug = Column(String, nullable=False, unique=True)  # routing key
    payout_balance = Column(BigInteger, nullable=False, default=0)
    # view-only capability for the overlay feed, never for mutations
    overlay_key = Column(String, nullable=False, unique=True)
    created_at = Column(Float, nullable=False)


class Tip(Base):
    __tablename__ = "tips"
    __table_args__ = (
        Index("tips_creator_created_idx", "creator_id", "created_at"),
    )
    id = Column(String, primary_key=True)
    sender_id = Column(String, ForeignKey("accounts.id"), nullable=False)
    creator_id = Column(
        String, ForeignKey("creator_profiles.id"), nullable=False
    )
    amount = Column(BigInteger, nullable=False)
    creator_share = Column(BigInteger, nullable=False)
    platform_share = Column(BigInteger, nullable=False)
    message = Column(String, nullable=True)
    # client supplied Idempotency-Key, scoped to the sender
    request_id = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("transactions_account_kind_idx", "account_id", "kind"),
    )
    id = Column(String, primary_key=True)
    # NULL for platform-only entries
    account_id = Column(String, ForeignKey("accounts.id"), nullable=True)
    # tip_sent | tip_received | platform_fee | purchase
    kind = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)
    # external payment id; unique so a replayed webhook cannot credit twice
    reference_id = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    """
    Create tables if missing and seed the platform wallet row.
    """
    await conn.run_sync(Base.metadata.create_all)
    await conn.execute(text("""
        INSERT INTO accounts (id, username, role, balance, created_at)
        VALUES (:id, :username, :role, 0, 0)
        ON CONFLICT (id) DO NOTHING
    """), {
        "id": PLATFORM_ACCOUNT_ID,
        "username": PLATFORM_ACCOUNT_ID,
        "role": ROLE_PLATFORM,
    })
