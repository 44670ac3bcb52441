from enum import Enum


class FeeType(str, Enum):
    TUITION = "tuition"
    EXAM = "exam"
    LIBRARY = "library"
    LAB = "lab"
    HOSTEL = "hostel"
    MESS = "mess"
    OTHER = "other"
    FULL = "full"


# Itemized components; "full" targets the whole obligation.
COMPONENT_FEE_TYPES = (
    FeeType.TUITION,
    FeeType.EXAM,
    FeeType.LIBRARY,
    FeeType.LAB,
    FeeType.HOSTEL,
    FeeType.MESS,
    FeeType.OTHER,
)


class FeeRecordStatus(str, Enum):
    pending = "pending"
    partial = "partial"
    completed = "completed"


class PaymentIntentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    expired = "expired"
    failed = "failed"


class SettlementSource(str, Enum):
    GATEWAY = "gateway"
    MANUAL = "manual"
