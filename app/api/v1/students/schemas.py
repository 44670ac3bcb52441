from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from app.api.v1.fees.schemas import FeeComponents, FeeRecordSummary
from app.api.v1.payments.schemas import Pagination, PaymentIntentResponse


class StudentCreate(BaseModel):
    """Creates the student and its current-semester fee record (paid starts at 0)."""

    roll_number: str = Field(..., min_length=1, max_length=50)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=30)
    course: Optional[str] = Field(None, max_length=100)
    department: Optional[str] = Field(None, max_length=100)
    admission_year: Optional[int] = None
    semester: int = Field(..., ge=1, le=8)
    academic_year: Optional[str] = Field(None, max_length=20)
    fees: Optional[FeeComponents] = None
    total: Optional[Decimal] = Field(None, ge=0, description="Lump total when fees are not itemized")
    due_date: Optional[date] = None


class StudentUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    course: Optional[str] = Field(None, max_length=100)
    department: Optional[str] = Field(None, max_length=100)
    semester: Optional[int] = Field(None, ge=1, le=8, description="Moves the active semester; old record stays in history")
    is_active: Optional[bool] = None


class StudentResponse(BaseModel):
    id: UUID
    roll_number: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    course: Optional[str] = None
    department: Optional[str] = None
    admission_year: Optional[int] = None
    semester: int
    is_active: bool
    created_at: datetime
    updated_at: datetime
    current_fees: Optional[FeeRecordSummary] = None


class StudentSearchRequest(BaseModel):
    roll_number: str = Field(..., max_length=50)


class StudentSearchResponse(BaseModel):
    student: StudentResponse
    recent_payments: List[PaymentIntentResponse] = Field(default_factory=list)


class StudentPage(BaseModel):
    items: List[StudentResponse]
    pagination: Pagination
