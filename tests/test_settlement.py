"""Settlement engine: exactly-once application of confirmed payments to the ledger."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.api.v1.payments import service, settlement
from app.api.v1.payments.schemas import GatewayConfirmation, ManualConfirmation, PaymentIntentCreate
from app.core.clock import utcnow
from app.core.enums import FeeRecordStatus, PaymentIntentStatus
from app.core.exceptions import ConflictError, NotFoundError, SignatureError, ValidationError
from app.core.fee_ledger import FeeLedger
from app.core.models import FeeAuditLog, FeePaymentRef, FeeRecord, PaymentIntent, Student
from app.db.session import Base

from conftest import FakeGateway, make_student


async def _create(db: AsyncSession, gateway: FakeGateway, student: Student, fee_type: str, amount: str):
    return await service.create_intent(
        db,
        gateway,
        PaymentIntentCreate(student_id=student.id, fee_type=fee_type, amount=Decimal(amount)),
    )


def _confirmation(gateway: FakeGateway, order_id: str, payment_id: str = "pay_001") -> GatewayConfirmation:
    return GatewayConfirmation(
        gateway_order_id=order_id,
        gateway_payment_id=payment_id,
        signature=gateway.sign(order_id, payment_id),
    )


async def _record(db: AsyncSession, student: Student, semester: int = 3) -> FeeRecord:
    return (
        await db.execute(
            select(FeeRecord)
            .where(FeeRecord.student_id == student.id, FeeRecord.semester == semester)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


async def _intent(db: AsyncSession, intent_id: str) -> PaymentIntent:
    return await db.get(PaymentIntent, intent_id, populate_existing=True)


@pytest.mark.asyncio
async def test_full_payment_completes_record(db_session: AsyncSession, gateway: FakeGateway, lump_student: Student) -> None:
    created = await _create(db_session, gateway, lump_student, "full", "10000")

    result = await settlement.settle(db_session, gateway, _confirmation(gateway, created.gateway_order_id))

    assert result.intent_id == created.intent_id
    assert result.is_fully_paid is True
    assert result.status == PaymentIntentStatus.completed
    assert result.receipt_number.startswith("RCP")
    assert result.updated_ledger_summary.status == FeeRecordStatus.completed
    assert result.student.roll_number == "CS2023002"

    record = await _record(db_session, lump_student)
    assert record.status == FeeRecordStatus.completed.value
    assert record.pending == Decimal("0")

    intent = await _intent(db_session, created.intent_id)
    assert intent.status == PaymentIntentStatus.completed.value
    assert intent.gateway_payment_id == "pay_001"
    assert intent.settlement_source == "gateway"
    assert intent.paid_at is not None


@pytest.mark.asyncio
async def test_partial_tuition_payment(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    created = await _create(db_session, gateway, student, "tuition", "3000")

    result = await settlement.settle(db_session, gateway, _confirmation(gateway, created.gateway_order_id))

    assert result.is_fully_paid is False
    record = await _record(db_session, student)
    assert record.paid == Decimal("3000")
    assert record.pending == Decimal("7000")
    assert record.status == FeeRecordStatus.partial.value

    audit = (
        await db_session.execute(select(FeeAuditLog).where(FeeAuditLog.action_type == "SETTLE"))
    ).scalars().all()
    assert len(audit) == 1
    assert audit[0].new_value["receipt_number"] == result.receipt_number


@pytest.mark.asyncio
async def test_duplicate_confirmation_is_idempotent(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    created = await _create(db_session, gateway, student, "tuition", "3000")
    confirmation = _confirmation(gateway, created.gateway_order_id)

    first = await settlement.settle(db_session, gateway, confirmation)
    second = await settlement.settle(db_session, gateway, confirmation)

    assert second.receipt_number == first.receipt_number
    assert second.paid_at == first.paid_at
    record = await _record(db_session, student)
    assert record.paid == Decimal("3000")
    refs = (await db_session.execute(select(FeePaymentRef))).scalars().all()
    assert len(refs) == 1


@pytest.mark.parametrize("tamper", ["order", "payment", "signature"])
@pytest.mark.asyncio
async def test_tampered_confirmation_changes_nothing(
    db_session: AsyncSession, gateway: FakeGateway, student: Student, tamper: str
) -> None:
    created = await _create(db_session, gateway, student, "tuition", "3000")
    confirmation = _confirmation(gateway, created.gateway_order_id)
    if tamper == "order":
        confirmation.gateway_order_id = confirmation.gateway_order_id[:-1] + "9"
    elif tamper == "payment":
        confirmation.gateway_payment_id = "pay_002"
    else:
        last = confirmation.signature[-1]
        confirmation.signature = confirmation.signature[:-1] + ("0" if last != "0" else "1")

    with pytest.raises(SignatureError):
        await settlement.settle(db_session, gateway, confirmation)

    record = await _record(db_session, student)
    assert record.paid == Decimal("0")
    intent = await _intent(db_session, created.intent_id)
    assert intent.status == PaymentIntentStatus.pending.value
    assert intent.receipt_number is None


@pytest.mark.asyncio
async def test_unknown_order_is_not_found(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    with pytest.raises(NotFoundError):
        await settlement.settle(db_session, gateway, _confirmation(gateway, "order_999999"))


@pytest.mark.asyncio
async def test_expired_intent_cannot_settle(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    created = await _create(db_session, gateway, student, "tuition", "3000")
    await db_session.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == created.intent_id)
        .values(expires_at=utcnow() - timedelta(seconds=1))
    )
    await db_session.commit()

    with pytest.raises(ConflictError) as exc:
        await settlement.settle(db_session, gateway, _confirmation(gateway, created.gateway_order_id))
    assert "expired" in exc.value.message
    assert (await _record(db_session, student)).paid == Decimal("0")


@pytest.mark.asyncio
async def test_failed_intent_cannot_settle(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    created = await _create(db_session, gateway, student, "tuition", "3000")
    await db_session.execute(
        update(PaymentIntent)
        .where(PaymentIntent.id == created.intent_id)
        .values(status=PaymentIntentStatus.failed.value)
    )
    await db_session.commit()

    with pytest.raises(ConflictError):
        await settlement.settle_manual(
            db_session,
            ManualConfirmation(intent_id=created.intent_id, external_transaction_id="UTR1", amount=Decimal("3000")),
        )


@pytest.mark.asyncio
async def test_manual_settlement(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    created = await _create(db_session, gateway, student, "lab", "1500")

    result = await settlement.settle_manual(
        db_session,
        ManualConfirmation(
            intent_id=created.intent_id,
            external_transaction_id="UTR123456",
            amount=Decimal("1500.00"),
            notes="  paid at counter ",
        ),
    )

    assert result.status == PaymentIntentStatus.completed
    intent = await _intent(db_session, created.intent_id)
    assert intent.settlement_source == "manual"
    assert intent.gateway_payment_id == "UTR123456"
    assert intent.signature is None
    assert intent.notes == "paid at counter"
    assert (await _record(db_session, student)).paid == Decimal("1500")


@pytest.mark.asyncio
async def test_manual_amount_mismatch(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    created = await _create(db_session, gateway, student, "lab", "1500")

    with pytest.raises(ValidationError) as exc:
        await settlement.settle_manual(
            db_session,
            ManualConfirmation(intent_id=created.intent_id, external_transaction_id="UTR1", amount=Decimal("1499")),
        )
    assert exc.value.data["expected_amount"] == Decimal("1500")
    assert (await _intent(db_session, created.intent_id)).status == PaymentIntentStatus.pending.value


@pytest.mark.asyncio
async def test_transaction_id_cannot_be_reused(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    lab = await _create(db_session, gateway, student, "lab", "1500")
    exam = await _create(db_session, gateway, student, "exam", "1000")

    await settlement.settle_manual(
        db_session,
        ManualConfirmation(intent_id=lab.intent_id, external_transaction_id="UTR1", amount=Decimal("1500")),
    )
    with pytest.raises(ConflictError):
        await settlement.settle_manual(
            db_session,
            ManualConfirmation(intent_id=exam.intent_id, external_transaction_id="UTR1", amount=Decimal("1000")),
        )
    assert (await _record(db_session, student)).paid == Decimal("1500")


@pytest.mark.asyncio
async def test_ledger_already_applied_is_not_reapplied(db_session: AsyncSession, gateway: FakeGateway, student: Student) -> None:
    """A crash after the ledger commit but before the intent flip must not double-count."""
    created = await _create(db_session, gateway, student, "tuition", "3000")
    intent = await _intent(db_session, created.intent_id)
    ledger = await FeeLedger.load(db_session, student, for_update=True)
    await ledger.apply_payment(db_session, intent, transaction_id="pay_001", paid_at=utcnow())
    await db_session.commit()

    result = await settlement.settle(db_session, gateway, _confirmation(gateway, created.gateway_order_id))

    assert result.status == PaymentIntentStatus.completed
    record = await _record(db_session, student)
    assert record.paid == Decimal("3000")
    assert record.pending == Decimal("7000")


@pytest.mark.asyncio
async def test_receipt_collision_retries(
    db_session: AsyncSession, gateway: FakeGateway, student: Student, monkeypatch: pytest.MonkeyPatch
) -> None:
    lab = await _create(db_session, gateway, student, "lab", "1500")
    exam = await _create(db_session, gateway, student, "exam", "1000")
    first = await settlement.settle(db_session, gateway, _confirmation(gateway, lab.gateway_order_id, "pay_001"))

    receipts = iter([first.receipt_number, "RCP1760870400000999"])
    monkeypatch.setattr(settlement, "generate_receipt_number", lambda: next(receipts))

    second = await settlement.settle(db_session, gateway, _confirmation(gateway, exam.gateway_order_id, "pay_002"))

    assert second.receipt_number == "RCP1760870400000999"
    record = await _record(db_session, student)
    assert record.paid == Decimal("2500")
    refs = (await db_session.execute(select(FeePaymentRef))).scalars().all()
    assert len(refs) == 2


@pytest.mark.asyncio
async def test_concurrent_confirmations_apply_once(tmp_path: Path) -> None:
    """Five simultaneous deliveries of one confirmation, each on its own connection."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settle.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    sessions = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    gateway = FakeGateway()

    try:
        async with sessions() as db:
            student = await make_student(db, roll_number="CS2023050", total="10000")
            student_id = student.id
            created = await service.create_intent(
                db,
                gateway,
                PaymentIntentCreate(student_id=student_id, fee_type="tuition", amount=Decimal("3000")),
            )
        confirmation = _confirmation(gateway, created.gateway_order_id)

        async def deliver():
            async with sessions() as db:
                return await settlement.settle(db, gateway, confirmation)

        results = await asyncio.gather(*(deliver() for _ in range(5)))

        assert len({r.receipt_number for r in results}) == 1
        assert all(r.status == PaymentIntentStatus.completed for r in results)

        async with sessions() as db:
            record = (
                await db.execute(
                    select(FeeRecord).where(FeeRecord.student_id == student_id, FeeRecord.semester == 3)
                )
            ).scalar_one()
            refs = (await db.execute(select(FeePaymentRef))).scalars().all()
            intent = await db.get(PaymentIntent, created.intent_id)
        assert record.paid == Decimal("3000")
        assert record.pending == Decimal("7000")
        assert record.status == FeeRecordStatus.partial.value
        assert len(refs) == 1
        assert intent.receipt_number == results[0].receipt_number
    finally:
        await engine.dispose()
