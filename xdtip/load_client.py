#!/usr/bin/env python3
"""
xdtip load client (async)

Drives the tipping flow against a running server:
  1) POST /admin/login, then register one creator and N viewers
  2) POST /api/admin/grant tokens to every viewer
  3) POST /login for each viewer -> bearer token
  4) fire --total tips concurrently, each with its own Idempotency-Key
  5) GET /api/admin/audit and check that no balance drifted

It records timings per tip and prints an aggregate report.

Usage:
  python -m xdtip.load_client --base http://localhost:8000 \
                              --viewers 20 --total 500 --concurrency 50

Notes:
- Viewers get --grant tokens each; tips are sized so some of them run out,
  which exercises the InsufficientFunds path under contention.
- Keep server workers=1 with SQLite to avoid lock contention artifacts.
"""

import asyncio
import random
import string
import time
import argparse
import uuid
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx


def _rand_name(prefix: str) -> str:
    tail = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=8)
    )
    return f"{prefix}_{tail}"


@dataclass
class Result:
    ok: bool
    outcome: str  # SETTLED/REJECTED/ERROR
    kind: Optional[str] = None
    t_tip: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_tip for r in self.results if r.ok]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "settled": sum(1 for r in self.results if r.outcome == "SETTLED"),
            "rejected": sum(
                1 for r in self.results if r.outcome == "REJECTED"
            ),
            "error": sum(1 for r in self.results if r.outcome == "ERROR"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def rejections(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for r in self.results:
            if r.outcome == "REJECTED":
                out[r.kind or "?"] = out.get(r.kind or "?", 0) + 1
        return out

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   SETTLED: {int(s['settled'])}   "
            f"REJECTED: {int(s['rejected'])}   ERROR: {int(s['error'])}"
        )
        if self.rejections():
            print(f"Rejections: {self.rejections()}")
        print(
            f"Latency (POST /tip): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} tips/s"
        )


async def register_and_login(
    client: httpx.AsyncClient, base: str, username: str, role: str
) -> str:
    password = uuid.uuid4().hex
    resp = await client.post(f"{base}/register", json={
        "username": username,
        "email": f"{username}@example.com",
        "password": password,
        "role": role,
    })
    resp.raise_for_status()
    resp = await client.post(f"{base}/login", json={
        "email": f"{username}@example.com",
        "password": password,
    })
    resp.raise_for_status()
    return resp.json()["token"]


async def one_tip(
    client: httpx.AsyncClient,
    base: str,
    token: str,
    creator: str,
    amount: int,
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/tip",
            json={"receiverRoutingKey": creator, "amount": amount,
                  "message": "load test"},
            headers={"Authorization": f"Bearer {token}",
                     "Idempotency-Key": uuid.uuid4().hex},
            timeout=30.0,
        )
    except Exception as e:
        r.err = f"tip: {e}"
        return r
    r.t_tip = time.perf_counter() - t0
    r.ok = True
    if resp.status_code == 200:
        r.outcome = "SETTLED"
    elif resp.status_code < 500:
        r.outcome = "REJECTED"
        r.kind = resp.json().get("error", {}).get("kind")
    else:
        r.ok = False
        r.err = f"tip HTTP {resp.status_code}"
    return r


async def run_load(
    base: str,
    viewers: int,
    total: int,
    concurrency: int,
    grant: int,
    admin_user: str,
    admin_password: str,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "xdtipLoad/1.0"}
    ) as client:
        resp = await client.post(f"{base}/admin/login", data={
            "username": admin_user, "password": admin_password,
        })
        resp.raise_for_status()

        creator = _rand_name("creator")
        await register_and_login(client, base, creator, "creator")

        tokens = []
        for _ in range(viewers):
            name = _rand_name("viewer")
            tokens.append(await register_and_login(client, base, name,
                                                   "viewer"))
            resp = await client.post(f"{base}/api/admin/grant", json={
                "username": name, "amount": grant,
            })
            resp.raise_for_status()
        print(f"Seeded creator '{creator}' and {viewers} viewers "
              f"with {grant} tokens each")

        async def worker(n: int):
            async with sem:
                amount = random.randint(10, max(10, grant // 5))
                res = await one_tip(
                    client, base, random.choice(tokens), creator, amount
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        resp = await client.get(f"{base}/api/admin/audit")
        resp.raise_for_status()
        report = resp.json()
        print(f"\nAudit: {'OK' if report['ok'] else 'MISMATCH'}  "
              f"{report['totals']}")
        for m in report["mismatches"]:
            print(f"  !! {m}")

    return stats


def main():
    ap = argparse.ArgumentParser(description="xdtip load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--viewers", type=int, default=10,
                    help="Number of tipping viewers to create")
    ap.add_argument("--total", type=int, default=100,
                    help="Total tips to send")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--grant", type=int, default=500,
                    help="Tokens granted to each viewer")
    ap.add_argument("--admin-user", default="admin")
    ap.add_argument("--admin-password", default="supasecret")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        viewers=args.viewers,
        total=args.total,
        concurrency=args.concurrency,
        grant=args.grant,
        admin_user=args.admin_user,
        admin_password=args.admin_password,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
