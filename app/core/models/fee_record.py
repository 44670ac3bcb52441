"""Fee record: one semester's fee obligation for a student, plus the payments settled against it."""

import uuid
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.core.enums import COMPONENT_FEE_TYPES, FeeRecordStatus, FeeType
from app.db.session import Base

# fee type -> column holding that component's allocation
COMPONENT_COLUMNS = {
    FeeType.TUITION: "tuition_fee",
    FeeType.EXAM: "exam_fee",
    FeeType.LIBRARY: "library_fee",
    FeeType.LAB: "lab_fee",
    FeeType.HOSTEL: "hostel_fee",
    FeeType.MESS: "mess_fee",
    FeeType.OTHER: "other_fee",
}


def derive_total(components, previous_total) -> Decimal:
    """Sum of components when any is non-zero; otherwise the lump total set earlier."""
    component_sum = sum((Decimal(str(v or 0)) for v in components), Decimal("0"))
    if component_sum > 0:
        return component_sum
    return Decimal(str(previous_total or 0))


def derive_pending(total, paid) -> Decimal:
    remaining = Decimal(str(total or 0)) - Decimal(str(paid or 0))
    return remaining if remaining > 0 else Decimal("0")


def derive_status(total, paid) -> FeeRecordStatus:
    total = Decimal(str(total or 0))
    paid = Decimal(str(paid or 0))
    if total > 0 and paid >= total:
        return FeeRecordStatus.completed
    if paid > 0 and paid < total:
        return FeeRecordStatus.partial
    return FeeRecordStatus.pending


class FeeRecord(Base):
    """
    Fee obligation for one (student, semester). At most one row per semester.
    The row for the student's active semester is the ledger's current record;
    every other row is history.
    pending = max(0, total - paid) and status are recomputed on every mutation.
    """

    __tablename__ = "fee_records"
    __table_args__ = (
        UniqueConstraint("student_id", "semester", name="uq_fee_record_student_semester"),
        CheckConstraint("paid >= 0", name="chk_fee_record_paid_non_negative"),
        CheckConstraint("pending >= 0", name="chk_fee_record_pending_non_negative"),
        CheckConstraint(
            "status IN ('pending','partial','completed')",
            name="chk_fee_record_status",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    student_id = Column(UUID(as_uuid=True), ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    semester = Column(Integer, nullable=False)
    academic_year = Column(String(20), nullable=True)  # e.g. "2025-2026"

    tuition_fee = Column(Numeric(12, 2), nullable=False, default=0)
    exam_fee = Column(Numeric(12, 2), nullable=False, default=0)
    library_fee = Column(Numeric(12, 2), nullable=False, default=0)
    lab_fee = Column(Numeric(12, 2), nullable=False, default=0)
    hostel_fee = Column(Numeric(12, 2), nullable=False, default=0)
    mess_fee = Column(Numeric(12, 2), nullable=False, default=0)
    other_fee = Column(Numeric(12, 2), nullable=False, default=0)

    total = Column(Numeric(12, 2), nullable=False, default=0)
    paid = Column(Numeric(12, 2), nullable=False, default=0)
    pending = Column(Numeric(12, 2), nullable=False, default=0)
    due_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default=FeeRecordStatus.pending.value)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    student = relationship("Student")

    def components(self) -> dict:
        return {ft.value: Decimal(str(getattr(self, COMPONENT_COLUMNS[ft]) or 0)) for ft in COMPONENT_FEE_TYPES}

    def allocation(self, fee_type: FeeType) -> Decimal:
        """Amount allocated to a component; for "full", what is still pending."""
        fee_type = FeeType(fee_type)
        if fee_type == FeeType.FULL:
            return derive_pending(self.total, self.paid)
        return Decimal(str(getattr(self, COMPONENT_COLUMNS[fee_type]) or 0))

    def recalculate(self) -> None:
        self.total = derive_total(self.components().values(), self.total)
        self.pending = derive_pending(self.total, self.paid)
        self.status = derive_status(self.total, self.paid).value


class FeePaymentRef(Base):
    """Payment settled against a fee record. One row per payment intent, ever."""

    __tablename__ = "fee_payment_refs"
    __table_args__ = (
        UniqueConstraint("payment_intent_id", name="uq_fee_payment_ref_intent"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    fee_record_id = Column(UUID(as_uuid=True), ForeignKey("fee_records.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_intent_id = Column(String(40), ForeignKey("payment_intents.id", ondelete="RESTRICT"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    fee_type = Column(String(20), nullable=False)
    transaction_id = Column(String(100), nullable=True)
    paid_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    fee_record = relationship("FeeRecord")
