"""Payments service: payment intent creation and payment queries."""

import asyncio
import logging
import math
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fees.service import get_student_or_404, record_to_summary
from app.core.clock import utcnow
from app.core.config import settings
from app.core.enums import FeeType, PaymentIntentStatus
from app.core.exceptions import ConflictError, GatewayError, InternalError, NotFoundError, ValidationError
from app.core.fee_audit import log_fee_audit
from app.core.fee_ledger import FeeLedger, academic_year_for
from app.core.gateway import PaymentGateway
from app.core.identifiers import generate_intent_id
from app.core.models import FeeRecord, PaymentIntent, Student
from app.core.payment_code import build_payment_code

from .expiry import expiry_for, find_active_pending, release_stale_slot, stale_pending_clause
from .schemas import (
    Pagination,
    PaymentCodeResponse,
    PaymentIntentCreate,
    PaymentIntentCreated,
    PaymentIntentPage,
    PaymentIntentResponse,
    PaymentIntentStatusResponse,
    ReceiptResponse,
)

logger = logging.getLogger(__name__)


def _to_decimal(val) -> Decimal:
    if val is None:
        return Decimal("0")
    return val if isinstance(val, Decimal) else Decimal(str(val))


def _duplicate_conflict(existing: PaymentIntent) -> ConflictError:
    return ConflictError(
        f"A pending payment already exists for {existing.fee_type} fee. Please complete or wait for it to expire.",
        data={"existing_intent_id": existing.id, "expires_at": existing.expires_at},
    )


async def create_intent(
    db: AsyncSession,
    gateway: PaymentGateway,
    payload: PaymentIntentCreate,
) -> PaymentIntentCreated:
    student = await db.get(Student, payload.student_id)
    if not student or not student.is_active:
        raise NotFoundError("Student not found")

    student_id = student.id
    fee_type = FeeType(payload.fee_type)
    amount = _to_decimal(payload.amount)
    semester = payload.semester or student.semester

    ledger = await FeeLedger.load(db, student)
    record = ledger.record_for(semester)
    if record is None:
        raise ValidationError(f"Fee structure not found for semester {semester}")

    if ledger.is_settled(fee_type, semester):
        raise ConflictError(f"{fee_type.value} fee is already paid for semester {semester}")

    warnings = []
    expected = record.allocation(fee_type)
    if expected > 0 and amount > expected:
        raise ValidationError(
            f"Amount ({amount}) exceeds expected {fee_type.value} fee ({expected})",
            data={"expected_amount": expected},
        )
    if expected > 0 and amount < expected:
        warnings.append(f"This is a partial payment. Expected {fee_type.value} fee is {expected}")

    paid = _to_decimal(record.paid)
    total = _to_decimal(record.total)
    if paid + amount > total:
        max_payable = max(total - paid, Decimal("0"))
        raise ConflictError(
            f"Payment amount ({amount}) would exceed pending amount ({max_payable})",
            data={"max_payable": max_payable},
        )

    now = utcnow()
    existing = await find_active_pending(db, student_id, fee_type.value, semester, now)
    if existing:
        logger.info("Rejected duplicate intent for %s %s sem %s: %s pending", student.roll_number, fee_type.value, semester, existing.id)
        raise _duplicate_conflict(existing)

    intent_id = generate_intent_id()
    description = (payload.description or "").strip() or (
        f"{fee_type.value} payment for {student.full_name} - Semester {semester}"
    )
    metadata = {
        "student_id": str(student_id),
        "roll_number": student.roll_number,
        "fee_type": fee_type.value,
        "semester": str(semester),
        "payment_id": intent_id,
    }
    try:
        order_id = await asyncio.wait_for(
            gateway.create_order(amount, settings.currency, metadata),
            timeout=settings.gateway_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        logger.error("Gateway order creation timed out for %s", intent_id)
        raise GatewayError("Payment gateway did not respond in time") from e

    code = build_payment_code(intent_id, order_id, amount, description)

    await release_stale_slot(db, student_id, fee_type.value, semester, now)
    intent = PaymentIntent(
        id=intent_id,
        student_id=student_id,
        fee_type=fee_type.value,
        semester=semester,
        academic_year=record.academic_year or academic_year_for(now),
        amount=amount,
        description=description,
        status=PaymentIntentStatus.pending.value,
        gateway_order_id=order_id,
        payment_url=code.url,
        payment_code_image=code.image,
        created_by=payload.created_by,
        created_at=now,
        expires_at=expiry_for(now),
    )
    db.add(intent)
    await log_fee_audit(
        db, "payment_intents", intent_id,
        "CREATE",
        None,
        {"amount": str(amount), "fee_type": fee_type.value, "semester": semester, "gateway_order_id": order_id},
        payload.created_by,
    )
    try:
        await db.commit()
    except IntegrityError:
        # Lost the race for this slot to a concurrent caller.
        await db.rollback()
        existing = await find_active_pending(db, student_id, fee_type.value, semester, now)
        if existing:
            raise _duplicate_conflict(existing)
        raise ConflictError("A pending payment for this fee could not be registered; retry")
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Persisting payment intent %s failed", intent_id)
        raise InternalError() from e

    logger.info(
        "Created payment intent %s for %s: %s %s sem %s (order %s)",
        intent_id, student.roll_number, fee_type.value, amount, semester, order_id,
    )
    return PaymentIntentCreated(
        intent_id=intent.id,
        payment_code=PaymentCodeResponse(url=code.url, image=code.image),
        amount=amount,
        fee_type=fee_type,
        semester=semester,
        status=PaymentIntentStatus.pending,
        expires_at=intent.expires_at,
        gateway_order_id=order_id,
        warnings=warnings,
    )


def intent_to_response(intent: PaymentIntent, now=None) -> PaymentIntentResponse:
    now = now or utcnow()
    return PaymentIntentResponse(
        intent_id=intent.id,
        student_id=intent.student_id,
        fee_type=FeeType(intent.fee_type),
        semester=intent.semester,
        academic_year=intent.academic_year,
        amount=_to_decimal(intent.amount),
        description=intent.description,
        status=PaymentIntentStatus(intent.effective_status(now)),
        gateway_order_id=intent.gateway_order_id,
        gateway_payment_id=intent.gateway_payment_id,
        payment_url=intent.payment_url,
        created_by=intent.created_by,
        created_at=intent.created_at,
        expires_at=intent.expires_at,
        paid_at=intent.paid_at,
        receipt_number=intent.receipt_number,
        settlement_source=intent.settlement_source,
        notes=intent.notes,
    )


async def _get_intent_or_404(db: AsyncSession, intent_id: str) -> PaymentIntent:
    intent = await db.get(PaymentIntent, intent_id, populate_existing=True)
    if not intent:
        raise NotFoundError("Payment intent not found")
    return intent


async def get_intent(db: AsyncSession, intent_id: str) -> PaymentIntentStatusResponse:
    intent = await _get_intent_or_404(db, intent_id)
    record = (
        await db.execute(
            select(FeeRecord).where(
                FeeRecord.student_id == intent.student_id,
                FeeRecord.semester == intent.semester,
            )
        )
    ).scalar_one_or_none()
    return PaymentIntentStatusResponse(
        intent=intent_to_response(intent),
        fee_record=record_to_summary(record) if record else None,
    )


async def get_receipt(db: AsyncSession, intent_id: str) -> ReceiptResponse:
    intent = await _get_intent_or_404(db, intent_id)
    if intent.status != PaymentIntentStatus.completed.value or not intent.receipt_number:
        raise ConflictError("Receipt available only for completed payments")
    student = await db.get(Student, intent.student_id)
    return ReceiptResponse(
        receipt_number=intent.receipt_number,
        issued_at=intent.receipt_issued_at or intent.paid_at,
        intent_id=intent.id,
        student_id=student.id,
        student_name=student.full_name,
        roll_number=student.roll_number,
        amount=_to_decimal(intent.amount),
        fee_type=FeeType(intent.fee_type),
        semester=intent.semester,
        academic_year=intent.academic_year,
        paid_at=intent.paid_at,
        gateway_payment_id=intent.gateway_payment_id,
        description=intent.description,
    )


def _status_filter(stmt, status_filter: Optional[PaymentIntentStatus], now):
    # Filters on effective status: stale pending rows count as expired.
    if status_filter is None:
        return stmt
    if status_filter == PaymentIntentStatus.pending:
        return stmt.where(
            PaymentIntent.status == PaymentIntentStatus.pending.value,
            PaymentIntent.expires_at >= now,
        )
    if status_filter == PaymentIntentStatus.expired:
        return stmt.where(
            or_(PaymentIntent.status == PaymentIntentStatus.expired.value, stale_pending_clause(now))
        )
    return stmt.where(PaymentIntent.status == status_filter.value)


async def _paginate(db: AsyncSession, stmt, page: int, limit: int) -> PaymentIntentPage:
    now = utcnow()
    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    rows = (
        await db.execute(
            stmt.order_by(PaymentIntent.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
    ).scalars().all()
    return PaymentIntentPage(
        items=[intent_to_response(i, now) for i in rows],
        pagination=Pagination(current=page, pages=math.ceil(total / limit) if limit else 0, total=total),
    )


async def list_student_payments(
    db: AsyncSession,
    student_id: UUID,
    status_filter: Optional[PaymentIntentStatus] = None,
    semester: Optional[int] = None,
    page: int = 1,
    limit: int = 10,
) -> PaymentIntentPage:
    await get_student_or_404(db, student_id)
    stmt = select(PaymentIntent).where(PaymentIntent.student_id == student_id)
    stmt = _status_filter(stmt, status_filter, utcnow())
    if semester is not None:
        stmt = stmt.where(PaymentIntent.semester == semester)
    return await _paginate(db, stmt, page, limit)


async def list_payments(
    db: AsyncSession,
    status_filter: Optional[PaymentIntentStatus] = None,
    fee_type: Optional[FeeType] = None,
    semester: Optional[int] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> PaymentIntentPage:
    stmt = select(PaymentIntent)
    stmt = _status_filter(stmt, status_filter, utcnow())
    if fee_type is not None:
        stmt = stmt.where(PaymentIntent.fee_type == FeeType(fee_type).value)
    if semester is not None:
        stmt = stmt.where(PaymentIntent.semester == semester)
    if search and search.strip():
        term = f"%{search.strip()}%"
        stmt = stmt.join(Student, Student.id == PaymentIntent.student_id).where(
            or_(Student.roll_number.ilike(term), PaymentIntent.receipt_number.ilike(term))
        )
    return await _paginate(db, stmt, page, limit)
