"""
Settlement engine: applies a confirmed payment intent to the fee ledger exactly once.

Both confirmation paths (gateway callback, manual/UPI entry) end in _settle():

  1. lock the intent row; a completed intent returns its original result
     (duplicate delivery is a success, not an error);
  2. reject non-pending or expired intents;
  3. lock the student, then apply the amount to the ledger unless a payment
     reference for this intent already exists;
  4. issue the receipt and flip the intent to completed;
  5. commit ledger and intent together.

Uniqueness collisions at commit (receipt number, payment reference, pending
intent) roll the whole attempt back and the loop tries again from step 1.
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fees.service import record_to_summary
from app.core.clock import utcnow
from app.core.enums import FeeType, PaymentIntentStatus, SettlementSource
from app.core.exceptions import ConflictError, InternalError, NotFoundError, SignatureError, ValidationError
from app.core.fee_audit import log_fee_audit
from app.core.fee_ledger import FeeLedger
from app.core.gateway import PaymentGateway
from app.core.identifiers import generate_receipt_number
from app.core.models import FeeRecord, PaymentIntent, Student

from .schemas import GatewayConfirmation, ManualConfirmation, SettlementResult, SettlementStudent

logger = logging.getLogger(__name__)

MAX_SETTLE_ATTEMPTS = 3


def _to_decimal(val) -> Decimal:
    if val is None:
        return Decimal("0")
    return val if isinstance(val, Decimal) else Decimal(str(val))


async def settle(
    db: AsyncSession,
    gateway: PaymentGateway,
    payload: GatewayConfirmation,
) -> SettlementResult:
    """Gateway-confirmed path. The signature is checked before anything is read or written."""
    if not gateway.verify(payload.gateway_order_id, payload.gateway_payment_id, payload.signature):
        logger.warning("Signature mismatch for gateway order %s", payload.gateway_order_id)
        raise SignatureError()
    return await _settle(
        db,
        PaymentIntent.gateway_order_id == payload.gateway_order_id,
        transaction_id=payload.gateway_payment_id,
        source=SettlementSource.GATEWAY,
        signature=payload.signature,
    )


async def settle_manual(db: AsyncSession, payload: ManualConfirmation) -> SettlementResult:
    """Out-of-band confirmation. No signature; the amount must match the intent exactly."""
    return await _settle(
        db,
        PaymentIntent.id == payload.intent_id,
        transaction_id=payload.external_transaction_id,
        source=SettlementSource.MANUAL,
        expected_amount=payload.amount,
        notes=payload.notes,
        changed_by=payload.confirmed_by,
    )


async def _lock_intent(db: AsyncSession, criterion) -> Optional[PaymentIntent]:
    return (
        await db.execute(
            select(PaymentIntent)
            .where(criterion)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def _lock_student(db: AsyncSession, student_id: UUID) -> Student:
    return (
        await db.execute(
            select(Student)
            .where(Student.id == student_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


async def _transaction_id_taken(db: AsyncSession, transaction_id: str, intent_id: str) -> bool:
    found = (
        await db.execute(
            select(PaymentIntent.id).where(
                PaymentIntent.gateway_payment_id == transaction_id,
                PaymentIntent.id != intent_id,
            )
        )
    ).first()
    return found is not None


async def build_result(db: AsyncSession, intent: PaymentIntent) -> SettlementResult:
    student = await db.get(Student, intent.student_id)
    record = (
        await db.execute(
            select(FeeRecord)
            .where(
                FeeRecord.student_id == intent.student_id,
                FeeRecord.semester == intent.semester,
            )
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    is_fully_paid = bool(record and _to_decimal(record.paid) >= _to_decimal(record.total))
    return SettlementResult(
        intent_id=intent.id,
        receipt_number=intent.receipt_number,
        amount=_to_decimal(intent.amount),
        fee_type=FeeType(intent.fee_type),
        semester=intent.semester,
        status=PaymentIntentStatus(intent.status),
        paid_at=intent.paid_at,
        is_fully_paid=is_fully_paid,
        updated_ledger_summary=record_to_summary(record) if record else None,
        student=SettlementStudent(
            id=student.id,
            name=student.full_name,
            roll_number=student.roll_number,
            current_semester=student.semester,
        ),
    )


async def _settle(
    db: AsyncSession,
    criterion,
    *,
    transaction_id: str,
    source: SettlementSource,
    signature: Optional[str] = None,
    expected_amount: Optional[Decimal] = None,
    notes: Optional[str] = None,
    changed_by: Optional[UUID] = None,
) -> SettlementResult:
    for attempt in range(1, MAX_SETTLE_ATTEMPTS + 1):
        intent = await _lock_intent(db, criterion)
        if intent is None:
            raise NotFoundError("Payment intent not found")
        intent_id = intent.id

        if expected_amount is not None and _to_decimal(expected_amount) != _to_decimal(intent.amount):
            raise ValidationError(
                "Payment amount mismatch",
                data={"intent_id": intent_id, "expected_amount": _to_decimal(intent.amount)},
            )

        if intent.status == PaymentIntentStatus.completed.value:
            result = await build_result(db, intent)
            await db.commit()
            logger.info("Duplicate confirmation for %s; returning receipt %s", intent_id, result.receipt_number)
            return result

        if intent.status != PaymentIntentStatus.pending.value:
            raise ConflictError(
                f"Payment intent is {intent.status}",
                data={"intent_id": intent_id, "status": intent.status},
            )

        now = utcnow()
        if intent.is_expired(now):
            raise ConflictError(
                "Payment intent expired",
                data={"intent_id": intent_id, "expires_at": intent.expires_at},
            )

        if await _transaction_id_taken(db, transaction_id, intent_id):
            raise ConflictError(
                "Transaction id is already recorded against another payment",
                data={"transaction_id": transaction_id},
            )

        try:
            student = await _lock_student(db, intent.student_id)
            ledger = await FeeLedger.load(db, student, for_update=True)
            if await ledger.has_applied(db, intent_id):
                # Ledger committed earlier but the intent never flipped; do not apply twice.
                logger.warning("Ledger already reflects %s; completing intent without re-applying", intent_id)
            else:
                record = await ledger.apply_payment(db, intent, transaction_id=transaction_id, paid_at=now)
                await log_fee_audit(
                    db, "fee_records", record.id,
                    "PAYMENT",
                    None,
                    {
                        "payment_intent_id": intent_id,
                        "amount": str(_to_decimal(intent.amount)),
                        "paid": str(_to_decimal(record.paid)),
                        "pending": str(_to_decimal(record.pending)),
                        "status": record.status,
                    },
                    changed_by,
                )

            if not intent.receipt_number:
                intent.receipt_number = generate_receipt_number()
                intent.receipt_issued_at = now
            intent.gateway_payment_id = transaction_id
            if signature is not None:
                intent.signature = signature
            intent.paid_at = now
            intent.status = PaymentIntentStatus.completed.value
            intent.settlement_source = source.value
            if notes and notes.strip():
                intent.notes = notes.strip()
            await log_fee_audit(
                db, "payment_intents", intent_id,
                "SETTLE",
                {"status": PaymentIntentStatus.pending.value},
                {
                    "status": PaymentIntentStatus.completed.value,
                    "receipt_number": intent.receipt_number,
                    "transaction_id": transaction_id,
                    "source": source.value,
                },
                changed_by,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(
                "Settlement of %s hit a uniqueness collision (attempt %d/%d); retrying",
                intent_id, attempt, MAX_SETTLE_ATTEMPTS,
            )
            continue
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception("Settlement of %s failed", intent_id)
            raise InternalError() from e

        result = await build_result(db, intent)
        logger.info(
            "Settled %s via %s: receipt %s, %s to semester %s (fully paid: %s)",
            intent_id, source.value, result.receipt_number, result.amount, result.semester, result.is_fully_paid,
        )
        return result

    raise ConflictError("Payment could not be settled; retry")
