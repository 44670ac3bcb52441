"""Fees service: ledger views, administrative fee structure edits, fee status. Financial logic with audit."""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.enums import FeeRecordStatus, PaymentIntentStatus
from app.core.exceptions import ConflictError, InternalError, NotFoundError
from app.core.fee_audit import log_fee_audit
from app.core.fee_ledger import FeeLedger, academic_year_for, settled_payments
from app.core.models import FeeRecord, PaymentIntent, Student
from app.core.models.fee_record import COMPONENT_COLUMNS

from .schemas import (
    FeeComponents,
    FeeRecordResponse,
    FeeRecordSummary,
    FeeStatusResponse,
    FeeStructureUpdate,
    LedgerResponse,
    PaymentRefResponse,
    PaymentSummary,
)

logger = logging.getLogger(__name__)


def _to_decimal(val) -> Decimal:
    if val is None:
        return Decimal("0")
    return val if isinstance(val, Decimal) else Decimal(str(val))


async def get_student_or_404(db: AsyncSession, student_id: UUID) -> Student:
    student = await db.get(Student, student_id, populate_existing=True)
    if not student:
        raise NotFoundError("Student not found")
    return student


def record_snapshot(record: FeeRecord) -> dict:
    """JSON-safe copy of a fee record's amounts, for audit rows."""
    snapshot = {k: str(v) for k, v in record.components().items()}
    snapshot.update(
        total=str(_to_decimal(record.total)),
        paid=str(_to_decimal(record.paid)),
        pending=str(_to_decimal(record.pending)),
        status=record.status,
    )
    return snapshot


def record_to_summary(record: FeeRecord) -> FeeRecordSummary:
    return FeeRecordSummary(
        semester=record.semester,
        total=_to_decimal(record.total),
        paid=_to_decimal(record.paid),
        pending=_to_decimal(record.pending),
        status=FeeRecordStatus(record.status),
    )


async def record_to_response(db: AsyncSession, record: FeeRecord) -> FeeRecordResponse:
    refs = await settled_payments(db, record)
    return FeeRecordResponse(
        id=record.id,
        semester=record.semester,
        academic_year=record.academic_year,
        components=FeeComponents(**record.components()),
        total=_to_decimal(record.total),
        paid=_to_decimal(record.paid),
        pending=_to_decimal(record.pending),
        due_date=record.due_date,
        status=FeeRecordStatus(record.status),
        settled_payments=[PaymentRefResponse.model_validate(ref) for ref in refs],
    )


async def get_ledger(db: AsyncSession, student_id: UUID) -> LedgerResponse:
    student = await get_student_or_404(db, student_id)
    ledger = await FeeLedger.load(db, student)
    current = await record_to_response(db, ledger.current) if ledger.current else None
    history = {sem: await record_to_response(db, rec) for sem, rec in ledger.history.items()}
    return LedgerResponse(
        student_id=student.id,
        roll_number=student.roll_number,
        current_semester=student.semester,
        current=current,
        history=history,
    )


async def update_fee_structure(
    db: AsyncSession,
    student_id: UUID,
    payload: FeeStructureUpdate,
    changed_by: Optional[UUID] = None,
) -> FeeRecordResponse:
    student = await get_student_or_404(db, student_id)
    semester = payload.semester or student.semester
    now = utcnow()

    record = (
        await db.execute(
            select(FeeRecord)
            .where(FeeRecord.student_id == student.id, FeeRecord.semester == semester)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    old_value = record_snapshot(record) if record else None
    if record is None:
        record = FeeRecord(
            student_id=student.id,
            semester=semester,
            academic_year=payload.academic_year or academic_year_for(now),
            total=Decimal("0"),
            paid=Decimal("0"),
            pending=Decimal("0"),
            due_date=payload.due_date or (now + timedelta(days=settings.default_due_days)).date(),
            status=FeeRecordStatus.pending.value,
        )
        db.add(record)

    if payload.components is not None:
        for fee_type, column in COMPONENT_COLUMNS.items():
            setattr(record, column, getattr(payload.components, fee_type.value))
    if payload.total is not None:
        record.total = payload.total
    if payload.due_date is not None:
        record.due_date = payload.due_date
    if payload.academic_year is not None:
        record.academic_year = payload.academic_year.strip()
    record.recalculate()

    await db.flush()
    await log_fee_audit(
        db, "fee_records", record.id,
        "UPDATE" if old_value else "CREATE",
        old_value,
        record_snapshot(record),
        changed_by,
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"Fee record for semester {semester} was created concurrently; retry")
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Fee structure update failed for student %s", student_id)
        raise InternalError() from e
    await db.refresh(record)
    logger.info(
        "Fee structure for student %s semester %s set: total=%s paid=%s pending=%s",
        student.roll_number, semester, record.total, record.paid, record.pending,
    )
    return await record_to_response(db, record)


async def get_fee_status(db: AsyncSession, student_id: UUID) -> FeeStatusResponse:
    student = await get_student_or_404(db, student_id)
    ledger = await FeeLedger.load(db, student)
    now = utcnow()

    completed = (
        await db.execute(
            select(func.coalesce(func.sum(PaymentIntent.amount), 0), func.count(PaymentIntent.id)).where(
                PaymentIntent.student_id == student.id,
                PaymentIntent.status == PaymentIntentStatus.completed.value,
            )
        )
    ).one()
    active_pending = (
        await db.execute(
            select(PaymentIntent)
            .where(
                PaymentIntent.student_id == student.id,
                PaymentIntent.status == PaymentIntentStatus.pending.value,
                PaymentIntent.expires_at >= now,
            )
            .order_by(PaymentIntent.expires_at)
        )
    ).scalars().all()

    current = ledger.current
    return FeeStatusResponse(
        student_id=student.id,
        roll_number=student.roll_number,
        name=student.full_name,
        current=record_to_summary(current) if current else None,
        payment_summary=PaymentSummary(
            total_paid=_to_decimal(completed[0]),
            total_pending=sum((_to_decimal(i.amount) for i in active_pending), Decimal("0")),
            completed_payments=int(completed[1] or 0),
            pending_payments=len(active_pending),
        ),
        next_pending_intent_id=active_pending[0].id if active_pending else None,
        is_fee_pending=bool(current and _to_decimal(current.pending) > 0),
    )
