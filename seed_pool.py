#!/usr/bin/env python3
"""
Seed pre-provisioned accounts into the pool.

Usage:
    python seed_pool.py 100
    python seed_pool.py 50 --prefix user --domain ciliosclick.com
"""
import argparse
import asyncio
import sys

from ciliosclick.core.database import AsyncSessionLocal, close_db_engine
from ciliosclick.core.exceptions import CiliosClickError
from ciliosclick.services.allocator import UserAllocator


async def seed(count: int, prefix: str, domain: str) -> int:
    allocator = UserAllocator(AsyncSessionLocal)
    try:
        result = await allocator.seed_accounts(count=count, prefix=prefix, email_domain=domain)
        stats = await allocator.pool_stats()
    finally:
        await close_db_engine()

    print(f"✅ Created {result.created} accounts: {result.first_username} .. {result.last_username}")
    print(f"📊 Pool: {stats.available} available, {stats.occupied} occupied, {stats.suspended} suspended")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed pre-provisioned accounts")
    parser.add_argument("count", type=int, help="Number of accounts to create")
    parser.add_argument("--prefix", default=None, help="Username prefix (default POOL_USERNAME_PREFIX)")
    parser.add_argument("--domain", default=None, help="Email domain (default POOL_EMAIL_DOMAIN)")
    args = parser.parse_args()

    try:
        return asyncio.run(seed(args.count, args.prefix, args.domain))
    except (CiliosClickError, ValueError) as e:
        print(f"❌ Seeding failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
