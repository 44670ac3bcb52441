"""Fee audit log: immutable financial change tracking for audit safety."""

import uuid

from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.dialects.postgresql import JSONB, UUID

from app.core.clock import utcnow
from app.db.session import Base


class FeeAuditLog(Base):
    """Immutable audit trail for ledger mutations and payment intent transitions."""

    __tablename__ = "fee_audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reference_table = Column(String(50), nullable=False)
    reference_id = Column(String(64), nullable=False, index=True)
    action_type = Column(String(30), nullable=False)  # CREATE, UPDATE, SETTLE, EXPIRE
    old_value = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    new_value = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    changed_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
