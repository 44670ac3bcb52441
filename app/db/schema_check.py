import asyncio
from typing import List

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

import app.core.models  # noqa: F401  (registers all tables on Base.metadata)
from app.db.session import Base, engine


REQUIRED_TABLES: List[str] = [
    "students",
    "payment_intents",
    "fee_records",
    "fee_payment_refs",
    "fee_audit_logs",
]


async def ensure_tables(db_engine: AsyncEngine) -> List[str]:
    """
    Ensure that all ledger/payment tables (with their unique and partial indexes) exist.
    Missing tables are created; existing ones are left untouched. Returns the created names.
    """
    async with db_engine.begin() as conn:
        existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        await conn.run_sync(Base.metadata.create_all)
    return missing


async def main() -> None:
    missing = await ensure_tables(engine)
    if missing:
        print("Created missing tables: " + ", ".join(missing))
    else:
        print("All required ledger tables already exist in the database.")


if __name__ == "__main__":
    asyncio.run(main())
