"""
Fee ledger: a student's fee records keyed by semester.

The record for the student's active semester is "current"; the rest is history.
apply_payment is the only path that increments paid. It runs as a single
UPDATE ... SET paid = paid + :amount so concurrent settlements for the same
student cannot lose an update, and recomputes pending/status in that same
statement.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import and_, case, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.core.enums import FeeRecordStatus, FeeType
from app.core.models import FeePaymentRef, FeeRecord, PaymentIntent, Student

logger = logging.getLogger(__name__)


def _to_decimal(val) -> Decimal:
    if val is None:
        return Decimal("0")
    return val if isinstance(val, Decimal) else Decimal(str(val))


def academic_year_for(moment: datetime) -> str:
    return f"{moment.year}-{moment.year + 1}"


class FeeLedger:
    """Per-student view over fee records. Build with FeeLedger.load()."""

    def __init__(self, student: Student, records: Dict[int, FeeRecord]) -> None:
        self.student = student
        self._records = records

    @classmethod
    async def load(cls, db: AsyncSession, student: Student, *, for_update: bool = False) -> "FeeLedger":
        stmt = (
            select(FeeRecord)
            .where(FeeRecord.student_id == student.id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        rows = (await db.execute(stmt)).scalars().all()
        return cls(student, {r.semester: r for r in rows})

    @property
    def current(self) -> Optional[FeeRecord]:
        return self._records.get(self.student.semester)

    @property
    def history(self) -> Dict[int, FeeRecord]:
        return {sem: r for sem, r in sorted(self._records.items()) if sem != self.student.semester}

    def record_for(self, semester: Optional[int] = None) -> Optional[FeeRecord]:
        return self._records.get(semester or self.student.semester)

    def is_settled(self, fee_type: FeeType, semester: Optional[int] = None) -> bool:
        record = self.record_for(semester)
        if record is None:
            return False
        fee_type = FeeType(fee_type)
        paid = _to_decimal(record.paid)
        if fee_type == FeeType.FULL:
            return paid >= _to_decimal(record.total)
        allocated = record.allocation(fee_type)
        return allocated > 0 and paid >= allocated

    async def has_applied(self, db: AsyncSession, intent_id: str) -> bool:
        """True if the ledger already carries a payment reference for this intent."""
        found = (
            await db.execute(
                select(FeePaymentRef.id).where(FeePaymentRef.payment_intent_id == intent_id)
            )
        ).scalar_one_or_none()
        return found is not None

    async def _create_record(self, db: AsyncSession, semester: int, intent: PaymentIntent) -> FeeRecord:
        # Payment targeting a semester with no record: start one sized to the payment.
        now = utcnow()
        record = FeeRecord(
            student_id=self.student.id,
            semester=semester,
            academic_year=intent.academic_year or academic_year_for(now),
            total=_to_decimal(intent.amount),
            paid=Decimal("0"),
            pending=_to_decimal(intent.amount),
            due_date=(now + timedelta(days=settings.historical_due_days)).date(),
            status=FeeRecordStatus.pending.value,
        )
        db.add(record)
        await db.flush()
        self._records[semester] = record
        logger.info(
            "Created fee record for student %s semester %s on first payment",
            self.student.roll_number,
            semester,
        )
        return record

    async def apply_payment(
        self,
        db: AsyncSession,
        intent: PaymentIntent,
        *,
        transaction_id: Optional[str],
        paid_at: datetime,
    ) -> FeeRecord:
        """
        Add intent.amount to the target semester's paid amount and record the payment.

        Caller owns the transaction and must check has_applied() first; the unique
        payment reference per intent makes a second application fail at commit.
        """
        amount = _to_decimal(intent.amount)
        record = self.record_for(intent.semester)
        if record is None:
            record = await self._create_record(db, intent.semester, intent)

        new_paid = FeeRecord.paid + amount
        remaining = FeeRecord.total - new_paid
        await db.execute(
            update(FeeRecord)
            .where(FeeRecord.id == record.id)
            .values(
                paid=new_paid,
                pending=case((remaining > 0, remaining), else_=literal(0)),
                status=case(
                    (and_(FeeRecord.total > 0, new_paid >= FeeRecord.total), FeeRecordStatus.completed.value),
                    (and_(new_paid > 0, new_paid < FeeRecord.total), FeeRecordStatus.partial.value),
                    else_=FeeRecordStatus.pending.value,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.add(
            FeePaymentRef(
                fee_record_id=record.id,
                payment_intent_id=intent.id,
                amount=amount,
                fee_type=intent.fee_type,
                transaction_id=transaction_id,
                paid_at=paid_at,
            )
        )
        await db.flush()
        await db.refresh(record)
        logger.info(
            "Applied %s (%s) to student %s semester %s: paid=%s pending=%s status=%s",
            amount,
            intent.fee_type,
            self.student.roll_number,
            record.semester,
            record.paid,
            record.pending,
            record.status,
        )
        return record


async def settled_payments(db: AsyncSession, record: FeeRecord) -> list:
    rows = await db.execute(
        select(FeePaymentRef)
        .where(FeePaymentRef.fee_record_id == record.id)
        .order_by(FeePaymentRef.paid_at)
    )
    return list(rows.scalars().all())
