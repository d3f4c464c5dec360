# model/accounts.py
"""
Account registration, lookup and creator onboarding.

None of these touch balances; tokens only ever move through model/ledger.py.
"""
from __future__ import annotations
import logging
from typing import Optional, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import (
    ConflictError, AccountNotFound, MissingField, ValidationError, StoreError,
)
from ..helpers import now_ts, new_id, new_overlay_key, is_valid_email
from ..helpers import is_valid_username
from .db import (
    Account, CreatorProfile, ROLE_VIEWER, ROLE_CREATOR,
)
from .ledger import GatedAsyncSession

logger = logging.getLogger(__name__)


def _account_dict(acc: Account, profile: Optional[CreatorProfile] = None
                  ) -> Dict[str, Any]:
    out = {
        "id": acc.id,
        "username": acc.username,
        "role": acc.role,
        "balance": acc.balance,
    }
    if profile is not None:
        out["creator"] = {
            "slug": profile.slug,
            "payout_balance": profile.payout_balance,
            "overlay_key": profile.overlay_key,
        }
    return out


async def register(
    db: GatedAsyncSession,
    username: str,
    email: str,
    password_hash: str,
    role: str = ROLE_VIEWER,
) -> Dict[str, Any]:
    if not username or not email or not password_hash:
        raise MissingField("Fill all fields")
    username = username.strip()
    email = email.strip().lower()
    if not is_valid_username(username):
        raise ValidationError("username must be 3-32 letters, digits, _ . -")
    if not is_valid_email(email):
        raise ValidationError("email must be a valid email address")
    if role not in (ROLE_VIEWER, ROLE_CREATOR):
        raise ValidationError("Invalid role")

    acc = Account(
        id=new_id(),
        username=username,
        email=email,
        password_hash=password_hash,
        role=role,
        balance=0,
        created_at=now_ts(),
    )
    profile = None
    try:
        async with db.gated():
            async with db.session.begin():
                db.session.add(acc)
                if role == ROLE_CREATOR:
                    profile = _new_profile(acc)
                    db.session.add(profile)
    except IntegrityError:
        raise ConflictError("User already exists")
    except SQLAlchemyError as e:
        raise StoreError("account store unavailable") from e
    logger.info("registered %s as %s", username, role)
    return _account_dict(acc, profile)


def _new_profile(acc: Account) -> CreatorProfile:
    return CreatorProfile(
        id=new_id(),
        account_id=acc.id,
        slug=acc.username,
        payout_balance=0,
        overlay_key=new_overlay_key(),
        created_at=now_ts(),
    )


async def get_by_email(db: GatedAsyncSession, email: str) -> Optional[Account]:
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(
                select(Account).where(Account.email == email.strip().lower())
            )).scalar_one_or_none()


async def get_account(db: GatedAsyncSession, account_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            acc = await db.session.get(Account, account_id)
            if acc is None:
                raise AccountNotFound("User not found")
            profile = (await db.session.execute(
                select(CreatorProfile)
                .where(CreatorProfile.account_id == account_id)
            )).scalar_one_or_none()
    return _account_dict(acc, profile)


async def public_profile(db: GatedAsyncSession, username: str
                         ) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                select(Account.username, CreatorProfile.slug)
                .outerjoin(CreatorProfile,
                           CreatorProfile.account_id == Account.id)
                .where(Account.username == username)
                .where(Account.role != "platform")
            )).first()
    if row is None:
        return None
    return {"username": row[0], "slug": row[1]}


async def become_creator(db: GatedAsyncSession, account_id: str
                         ) -> Dict[str, Any]:
    try:
        async with db.gated():
            async with db.session.begin():
                acc = await db.session.get(Account, account_id)
                if acc is None:
                    raise AccountNotFound("User not found")
                existing = (await db.session.execute(
                    select(CreatorProfile.id)
                    .where(CreatorProfile.account_id == account_id)
                )).first()
                if existing is not None:
                    raise ConflictError("User is already a creator")
                profile = _new_profile(acc)
                db.session.add(profile)
                await db.session.execute(
                    update(Account).where(Account.id == account_id)
                    .values(role=ROLE_CREATOR)
                )
    except IntegrityError:
        # concurrent onboarding, or the slug is taken
        raise ConflictError("User is already a creator")
    except SQLAlchemyError as e:
        raise StoreError("account store unavailable") from e
    logger.info("%s is now a creator", acc.username)
    return {
        "slug": profile.slug,
        "overlay_key": profile.overlay_key,
        "creator_url": f"/creator-tips/{profile.slug}",
    }


async def creator_for_overlay(db: GatedAsyncSession, overlay_key: str
                              ) -> Optional[str]:
    """Resolve the overlay capability to a routing key (slug)."""
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(
                select(CreatorProfile.slug)
                .where(CreatorProfile.overlay_key == overlay_key)
            )).scalar_one_or_none()


async def creator_slug_for(db: GatedAsyncSession, account_id: str
                           ) -> Optional[str]:
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(
                select(CreatorProfile.slug)
                .where(CreatorProfile.account_id == account_id)
            )).scalar_one_or_none()
