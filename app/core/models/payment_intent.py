"""Payment intent: single-use request to collect an amount for one fee component and semester."""

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.clock import utcnow
from app.core.enums import PaymentIntentStatus
from app.db.session import Base


class PaymentIntent(Base):
    """
    Permanent audit record; never deleted.
    pending -> completed | expired | failed. completed is terminal.
    A pending intent past expires_at reads as expired (see effective_status).
    """

    __tablename__ = "payment_intents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','completed','expired','failed')",
            name="chk_payment_intent_status",
        ),
        CheckConstraint("amount > 0", name="chk_payment_intent_amount_positive"),
        # At most one pending intent per (student, fee type, semester) slot.
        Index(
            "uq_payment_intent_pending_slot",
            "student_id",
            "fee_type",
            "semester",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_payment_intent_student_created", "student_id", "created_at"),
    )

    id = Column(String(40), primary_key=True)  # PAY_<millis>_<base36>
    student_id = Column(UUID(as_uuid=True), ForeignKey("students.id", ondelete="RESTRICT"), nullable=False)
    fee_type = Column(String(20), nullable=False)
    semester = Column(Integer, nullable=False)
    academic_year = Column(String(20), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentIntentStatus.pending.value, index=True)

    gateway_order_id = Column(String(100), nullable=True, unique=True)
    gateway_payment_id = Column(String(100), nullable=True, unique=True)
    signature = Column(String(255), nullable=True)
    payment_url = Column(Text, nullable=False)
    payment_code_image = Column(Text, nullable=False)  # SVG data URI

    created_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    receipt_number = Column(String(40), nullable=True, unique=True)
    receipt_issued_at = Column(DateTime, nullable=True)
    settlement_source = Column(String(20), nullable=True)  # gateway | manual
    notes = Column(String(500), nullable=True)

    student = relationship("Student")

    def is_expired(self, now: datetime) -> bool:
        return self.status == PaymentIntentStatus.pending.value and self.expires_at < now

    def effective_status(self, now: datetime) -> str:
        if self.is_expired(now):
            return PaymentIntentStatus.expired.value
        return self.status
