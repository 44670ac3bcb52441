from app.core.models.student import Student
from app.core.models.fee_record import FeePaymentRef, FeeRecord
from app.core.models.payment_intent import PaymentIntent
from app.core.models.fee_audit_log import FeeAuditLog

__all__ = [
    "Student",
    "FeeRecord",
    "FeePaymentRef",
    "PaymentIntent",
    "FeeAuditLog",
]
