import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.db.schema_check import REQUIRED_TABLES, ensure_tables


@pytest.mark.asyncio
async def test_ensure_tables_creates_missing_then_noop() -> None:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    try:
        assert sorted(await ensure_tables(engine)) == sorted(REQUIRED_TABLES)
        assert await ensure_tables(engine) == []

        async with engine.connect() as conn:
            indexes = await conn.run_sync(lambda c: inspect(c).get_indexes("payment_intents"))
        slot = [i for i in indexes if i["name"] == "uq_payment_intent_pending_slot"]
        assert slot and slot[0]["unique"]
    finally:
        await engine.dispose()
