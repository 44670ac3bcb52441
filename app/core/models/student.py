"""Student: owner of a fee ledger. The active semester selects the ledger's current record."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import UUID

from app.core.clock import utcnow
from app.db.session import Base


class Student(Base):
    __tablename__ = "students"
    __table_args__ = (
        CheckConstraint("semester BETWEEN 1 AND 8", name="chk_student_semester"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    roll_number = Column(String(50), nullable=False, unique=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(30), nullable=True)
    course = Column(String(100), nullable=True)
    department = Column(String(100), nullable=True)
    admission_year = Column(Integer, nullable=True)
    semester = Column(Integer, nullable=False)  # active semester, 1..8
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
