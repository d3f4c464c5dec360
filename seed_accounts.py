import argparse
import asyncio
import os

from xdtip.auth import hash_password
from xdtip.errors import ConflictError
from xdtip.infra.sql import make_async_engine
from xdtip.model import accounts
from xdtip.model.db import create_schema, ROLE_CREATOR, ROLE_VIEWER
from xdtip.model.ledger import GatedAsyncSession, credit_purchase

# Demo accounts
DemoCreator = ("streamer", "streamer@example.com")
DemoViewer = ("viewer", "viewer@example.com")
DemoPassword = "password123"
DemoGrant = 1_000


async def create_accounts(db: GatedAsyncSession, password: str):
    created = []
    for (username, email), role in (
        (DemoCreator, ROLE_CREATOR),
        (DemoViewer, ROLE_VIEWER),
    ):
        try:
            user = await accounts.register(
                db, username, email, hash_password(password), role
            )
        except ConflictError:
            print(f'- {username} already exists')
            continue
        created.append(user)
        overlay = (user.get("creator") or {}).get("overlay_key")
        if overlay:
            print(f'✅ {role} {username} created, overlay key {overlay}')
        else:
            print(f'✅ {role} {username} created')
    return created


async def initial_grants(db: GatedAsyncSession, amount: int):
    username = DemoViewer[0]
    # fixed reference: re-running the seed never grants twice
    res = await credit_purchase(db, username, amount, f"grant:seed:{username}")
    print(f'✅ grant to {username}: {res["status"]} (balance {res["balance"]})')


async def main(database_url: str, password: str, grant: int):
    engine, SessionAsync, _, gated = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        print('✅ schema ready')

        async with SessionAsync() as session:
            db = GatedAsyncSession(session=session, gated=gated)
            await create_accounts(db, password)
            await initial_grants(db, grant)
    finally:
        await engine.dispose()


if __name__ == '__main__':
    ap = argparse.ArgumentParser(description="seed xdtip demo accounts")
    ap.add_argument("--database-url",
                    default=os.getenv("DATABASE_URL", "sqlite:///./xdtip.db"))
    ap.add_argument("--password", default=DemoPassword)
    ap.add_argument("--grant", type=int, default=DemoGrant)
    args = ap.parse_args()
    asyncio.run(main(args.database_url, args.password, args.grant))
