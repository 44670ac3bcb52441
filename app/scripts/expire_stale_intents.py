"""
Mark pending payment intents past their expiry as expired.

Advisory only: expiry is already enforced when an intent is read or settled.
Safe to run repeatedly (e.g. from cron).
Usage: python -m app.scripts.expire_stale_intents
"""

import asyncio

from app.api.v1.payments.expiry import expire_stale_intents
from app.core.logging_config import configure_logging
from app.db.session import AsyncSessionLocal


async def run() -> int:
    async with AsyncSessionLocal() as session:
        return await expire_stale_intents(session)


def main() -> None:
    configure_logging()
    count = asyncio.run(run())
    print(f"Done. Expired {count} payment intent(s).")


if __name__ == "__main__":
    main()
