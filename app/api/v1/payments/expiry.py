"""
Expiry policy for payment intents.

A pending intent with expires_at < now is expired at read time: it no longer
blocks a new intent for its slot and cannot be settled. Rewriting its status
to "expired" (reaper, or just before a new insert into the same slot) is
bookkeeping only; the predicate holds either way.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.enums import PaymentIntentStatus
from app.core.exceptions import InternalError
from app.core.fee_audit import log_fee_audit
from app.core.models import PaymentIntent

logger = logging.getLogger(__name__)


def expiry_for(created_at: datetime) -> datetime:
    return created_at + timedelta(hours=settings.intent_ttl_hours)


def stale_pending_clause(now: datetime):
    return and_(
        PaymentIntent.status == PaymentIntentStatus.pending.value,
        PaymentIntent.expires_at < now,
    )


async def find_active_pending(
    db: AsyncSession,
    student_id: UUID,
    fee_type: str,
    semester: int,
    now: datetime,
) -> Optional[PaymentIntent]:
    """The unexpired pending intent holding this (student, fee type, semester) slot, if any."""
    return (
        await db.execute(
            select(PaymentIntent).where(
                PaymentIntent.student_id == student_id,
                PaymentIntent.fee_type == fee_type,
                PaymentIntent.semester == semester,
                PaymentIntent.status == PaymentIntentStatus.pending.value,
                PaymentIntent.expires_at >= now,
            )
        )
    ).scalar_one_or_none()


async def release_stale_slot(
    db: AsyncSession,
    student_id: UUID,
    fee_type: str,
    semester: int,
    now: datetime,
) -> int:
    """Mark a stale pending intent in this slot expired so the pending-slot index admits a new one. Caller commits."""
    result = await db.execute(
        update(PaymentIntent)
        .where(
            PaymentIntent.student_id == student_id,
            PaymentIntent.fee_type == fee_type,
            PaymentIntent.semester == semester,
            stale_pending_clause(now),
        )
        .values(status=PaymentIntentStatus.expired.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def expire_stale_intents(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Reclassify every stale pending intent as expired. Returns how many were changed."""
    now = now or utcnow()
    stale_ids = (
        await db.execute(select(PaymentIntent.id).where(stale_pending_clause(now)))
    ).scalars().all()
    if not stale_ids:
        return 0

    result = await db.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id.in_(stale_ids), stale_pending_clause(now))
        .values(status=PaymentIntentStatus.expired.value)
        .execution_options(synchronize_session=False)
    )
    for intent_id in stale_ids:
        await log_fee_audit(
            db, "payment_intents", intent_id,
            "EXPIRE",
            {"status": PaymentIntentStatus.pending.value},
            {"status": PaymentIntentStatus.expired.value},
        )
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Expiring stale payment intents failed")
        raise InternalError() from e
    count = result.rowcount or 0
    logger.info("Expired %d stale payment intent(s)", count)
    return count
