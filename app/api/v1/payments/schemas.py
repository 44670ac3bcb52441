"""Payments schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.api.v1.fees.schemas import FeeRecordSummary
from app.core.enums import FeeType, PaymentIntentStatus


# --- Intent creation ---
class PaymentIntentCreate(BaseModel):
    student_id: UUID
    fee_type: FeeType
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    semester: Optional[int] = Field(None, ge=1, le=8, description="Defaults to the student's active semester")
    description: Optional[str] = Field(None, max_length=255)
    created_by: Optional[UUID] = None


class PaymentCodeResponse(BaseModel):
    url: str = Field(..., description="UPI deep link")
    image: str = Field(..., description="QR code of the deep link, SVG data URI")


class PaymentIntentCreated(BaseModel):
    intent_id: str
    payment_code: PaymentCodeResponse
    amount: Decimal
    fee_type: FeeType
    semester: int
    status: PaymentIntentStatus
    expires_at: datetime
    gateway_order_id: str
    warnings: List[str] = Field(default_factory=list)


# --- Confirmation ---
class GatewayConfirmation(BaseModel):
    gateway_order_id: str = Field(..., min_length=1, max_length=100)
    gateway_payment_id: str = Field(..., min_length=1, max_length=100)
    signature: str = Field(..., min_length=1, max_length=255)


class ManualConfirmation(BaseModel):
    intent_id: str = Field(..., min_length=1, max_length=40)
    external_transaction_id: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=500)
    confirmed_by: Optional[UUID] = None


class SettlementStudent(BaseModel):
    id: UUID
    name: str
    roll_number: str
    current_semester: int


class SettlementResult(BaseModel):
    intent_id: str
    receipt_number: str
    amount: Decimal
    fee_type: FeeType
    semester: int
    status: PaymentIntentStatus
    paid_at: datetime
    is_fully_paid: bool
    updated_ledger_summary: Optional[FeeRecordSummary] = None
    student: SettlementStudent


# --- Queries ---
class PaymentIntentResponse(BaseModel):
    intent_id: str
    student_id: UUID
    fee_type: FeeType
    semester: int
    academic_year: Optional[str] = None
    amount: Decimal
    description: str
    status: PaymentIntentStatus = Field(..., description="Effective status; a stale pending intent reads as expired")
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    payment_url: str
    created_by: Optional[UUID] = None
    created_at: datetime
    expires_at: datetime
    paid_at: Optional[datetime] = None
    receipt_number: Optional[str] = None
    settlement_source: Optional[str] = None
    notes: Optional[str] = None


class PaymentIntentStatusResponse(BaseModel):
    intent: PaymentIntentResponse
    fee_record: Optional[FeeRecordSummary] = None


class ReceiptResponse(BaseModel):
    receipt_number: str
    issued_at: datetime
    intent_id: str
    student_id: UUID
    student_name: str
    roll_number: str
    amount: Decimal
    fee_type: FeeType
    semester: int
    academic_year: Optional[str] = None
    paid_at: datetime
    gateway_payment_id: Optional[str] = None
    description: str


class Pagination(BaseModel):
    current: int
    pages: int
    total: int


class PaymentIntentPage(BaseModel):
    items: List[PaymentIntentResponse]
    pagination: Pagination


class ExpireStaleResponse(BaseModel):
    expired: int
