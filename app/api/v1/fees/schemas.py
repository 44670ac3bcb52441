"""Fee ledger schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.enums import FeeRecordStatus


class FeeComponents(BaseModel):
    tuition: Decimal = Field(Decimal("0"), ge=0)
    exam: Decimal = Field(Decimal("0"), ge=0)
    library: Decimal = Field(Decimal("0"), ge=0)
    lab: Decimal = Field(Decimal("0"), ge=0)
    hostel: Decimal = Field(Decimal("0"), ge=0)
    mess: Decimal = Field(Decimal("0"), ge=0)
    other: Decimal = Field(Decimal("0"), ge=0)


class FeeStructureUpdate(BaseModel):
    """Administrative edit of one semester's fees. paid is never touched here."""

    semester: Optional[int] = Field(None, ge=1, le=8, description="Defaults to the student's active semester")
    components: Optional[FeeComponents] = None
    total: Optional[Decimal] = Field(None, ge=0, description="Lump total; used only when no component is set")
    due_date: Optional[date] = None
    academic_year: Optional[str] = Field(None, max_length=20)


class PaymentRefResponse(BaseModel):
    payment_intent_id: str
    amount: Decimal
    fee_type: str
    transaction_id: Optional[str] = None
    paid_at: datetime

    class Config:
        from_attributes = True


class FeeRecordResponse(BaseModel):
    id: UUID
    semester: int
    academic_year: Optional[str] = None
    components: FeeComponents
    total: Decimal
    paid: Decimal
    pending: Decimal
    due_date: Optional[date] = None
    status: FeeRecordStatus
    settled_payments: List[PaymentRefResponse] = Field(default_factory=list)


class FeeRecordSummary(BaseModel):
    semester: int
    total: Decimal
    paid: Decimal
    pending: Decimal
    status: FeeRecordStatus


class LedgerResponse(BaseModel):
    student_id: UUID
    roll_number: str
    current_semester: int
    current: Optional[FeeRecordResponse] = None
    history: Dict[int, FeeRecordResponse] = Field(default_factory=dict)


class PaymentSummary(BaseModel):
    total_paid: Decimal
    total_pending: Decimal
    completed_payments: int
    pending_payments: int


class FeeStatusResponse(BaseModel):
    student_id: UUID
    roll_number: str
    name: str
    current: Optional[FeeRecordSummary] = None
    payment_summary: PaymentSummary
    next_pending_intent_id: Optional[str] = None
    is_fee_pending: bool
