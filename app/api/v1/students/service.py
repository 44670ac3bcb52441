import logging
import math
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fees.service import get_student_or_404, record_snapshot, record_to_summary
from app.api.v1.payments.schemas import Pagination
from app.api.v1.payments.service import intent_to_response
from app.core.clock import utcnow
from app.core.config import settings
from app.core.enums import FeeRecordStatus
from app.core.exceptions import ConflictError, InternalError, NotFoundError, ValidationError
from app.core.fee_audit import log_fee_audit
from app.core.fee_ledger import FeeLedger, academic_year_for
from app.core.models import FeeRecord, PaymentIntent, Student
from app.core.models.fee_record import COMPONENT_COLUMNS

from .schemas import StudentCreate, StudentPage, StudentResponse, StudentSearchResponse, StudentUpdate

logger = logging.getLogger(__name__)

RECENT_PAYMENTS_LIMIT = 5


async def _check_duplicate_email(db: AsyncSession, email: str, exclude_student_id: Optional[UUID] = None) -> bool:
    stmt = select(Student.id).where(func.lower(Student.email) == email.strip().lower())
    if exclude_student_id is not None:
        stmt = stmt.where(Student.id != exclude_student_id)
    return (await db.execute(stmt)).first() is not None


async def _check_duplicate_roll_number(db: AsyncSession, roll_number: str) -> bool:
    stmt = select(Student.id).where(Student.roll_number == roll_number.strip().upper())
    return (await db.execute(stmt)).first() is not None


async def _student_to_response(db: AsyncSession, student: Student) -> StudentResponse:
    ledger = await FeeLedger.load(db, student)
    return StudentResponse(
        id=student.id,
        roll_number=student.roll_number,
        first_name=student.first_name,
        last_name=student.last_name,
        email=student.email,
        phone=student.phone,
        course=student.course,
        department=student.department,
        admission_year=student.admission_year,
        semester=student.semester,
        is_active=student.is_active,
        created_at=student.created_at,
        updated_at=student.updated_at,
        current_fees=record_to_summary(ledger.current) if ledger.current else None,
    )


async def create_student(
    db: AsyncSession,
    payload: StudentCreate,
    changed_by: Optional[UUID] = None,
) -> StudentResponse:
    if await _check_duplicate_roll_number(db, payload.roll_number):
        raise ConflictError("Student with this roll number already exists")
    if await _check_duplicate_email(db, payload.email):
        raise ConflictError("Student with this email already exists")

    now = utcnow()
    student = Student(
        roll_number=payload.roll_number.strip().upper(),
        first_name=payload.first_name.strip(),
        last_name=payload.last_name.strip(),
        email=payload.email.strip().lower(),
        phone=(payload.phone or "").strip() or None,
        course=(payload.course or "").strip() or None,
        department=(payload.department or "").strip() or None,
        admission_year=payload.admission_year,
        semester=payload.semester,
        is_active=True,
    )
    db.add(student)
    await db.flush()

    record = FeeRecord(
        student_id=student.id,
        semester=payload.semester,
        academic_year=payload.academic_year or academic_year_for(now),
        total=payload.total if payload.total is not None else Decimal("0"),
        paid=Decimal("0"),
        pending=Decimal("0"),
        due_date=payload.due_date or (now + timedelta(days=settings.default_due_days)).date(),
        status=FeeRecordStatus.pending.value,
    )
    if payload.fees is not None:
        for fee_type, column in COMPONENT_COLUMNS.items():
            setattr(record, column, getattr(payload.fees, fee_type.value))
    record.recalculate()
    db.add(record)
    await db.flush()
    await log_fee_audit(db, "fee_records", record.id, "CREATE", None, record_snapshot(record), changed_by)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Student with this roll number or email already exists")
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Student creation failed for %s", payload.roll_number)
        raise InternalError() from e
    await db.refresh(student)
    logger.info("Created student %s with fee total %s", student.roll_number, record.total)
    return await _student_to_response(db, student)


async def get_student(db: AsyncSession, student_id: UUID) -> StudentResponse:
    student = await get_student_or_404(db, student_id)
    return await _student_to_response(db, student)


async def update_student(
    db: AsyncSession,
    student_id: UUID,
    payload: StudentUpdate,
) -> StudentResponse:
    student = await get_student_or_404(db, student_id)

    if payload.email is not None and await _check_duplicate_email(db, payload.email, exclude_student_id=student.id):
        raise ConflictError("Email already exists for another student")

    if payload.first_name is not None:
        student.first_name = payload.first_name.strip()
    if payload.last_name is not None:
        student.last_name = payload.last_name.strip()
    if payload.email is not None:
        student.email = payload.email.strip().lower()
    if payload.phone is not None:
        student.phone = payload.phone.strip() or None
    if payload.course is not None:
        student.course = payload.course.strip() or None
    if payload.department is not None:
        student.department = payload.department.strip() or None
    if payload.is_active is not None:
        student.is_active = payload.is_active
    if payload.semester is not None and payload.semester != student.semester:
        logger.info("Student %s moves from semester %s to %s", student.roll_number, student.semester, payload.semester)
        student.semester = payload.semester

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Email already exists for another student")
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("Student update failed for %s", student_id)
        raise InternalError() from e
    await db.refresh(student)
    return await _student_to_response(db, student)


async def search_student(db: AsyncSession, roll_number: str) -> StudentSearchResponse:
    """Look a student up by roll number, with their most recent payment intents."""
    roll_number = (roll_number or "").strip().upper()
    if not roll_number:
        raise ValidationError("Roll number is required")

    student = (
        await db.execute(select(Student).where(Student.roll_number == roll_number))
    ).scalar_one_or_none()
    if not student:
        raise NotFoundError("Student not found")

    recent = (
        await db.execute(
            select(PaymentIntent)
            .where(PaymentIntent.student_id == student.id)
            .order_by(PaymentIntent.created_at.desc())
            .limit(RECENT_PAYMENTS_LIMIT)
        )
    ).scalars().all()
    now = utcnow()
    return StudentSearchResponse(
        student=await _student_to_response(db, student),
        recent_payments=[intent_to_response(i, now) for i in recent],
    )


async def list_students(
    db: AsyncSession,
    search: Optional[str] = None,
    department: Optional[str] = None,
    course: Optional[str] = None,
    semester: Optional[int] = None,
    page: int = 1,
    limit: int = 20,
) -> StudentPage:
    stmt = select(Student)
    if search and search.strip():
        term = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(
                Student.roll_number.ilike(term),
                Student.first_name.ilike(term),
                Student.last_name.ilike(term),
                Student.email.ilike(term),
            )
        )
    if department:
        stmt = stmt.where(Student.department == department)
    if course:
        stmt = stmt.where(Student.course == course)
    if semester is not None:
        stmt = stmt.where(Student.semester == semester)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    rows = (
        await db.execute(
            stmt.order_by(Student.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
    ).scalars().all()
    return StudentPage(
        items=[await _student_to_response(db, s) for s in rows],
        pagination=Pagination(current=page, pages=math.ceil(total / limit) if limit else 0, total=total),
    )
