"""Payments router: intent creation, gateway/manual confirmation, status, receipts, history."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import FeeType, PaymentIntentStatus
from app.core.exceptions import ServiceError
from app.core.gateway import PaymentGateway, get_gateway
from app.db.session import get_db

from .expiry import expire_stale_intents
from .schemas import (
    ExpireStaleResponse,
    GatewayConfirmation,
    ManualConfirmation,
    PaymentIntentCreate,
    PaymentIntentCreated,
    PaymentIntentPage,
    PaymentIntentStatusResponse,
    ReceiptResponse,
    SettlementResult,
)
from . import service, settlement

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


# --- Intents ---
@router.post(
    "/intents",
    response_model=PaymentIntentCreated,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_intent(
    payload: PaymentIntentCreate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentIntentCreated:
    try:
        return await service.create_intent(db, gateway, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.get("/intents", response_model=PaymentIntentPage)
async def list_payments(
    status_filter: Optional[PaymentIntentStatus] = Query(None, alias="status"),
    fee_type: Optional[FeeType] = Query(None),
    semester: Optional[int] = Query(None, ge=1, le=8),
    search: Optional[str] = Query(None, description="Roll number or receipt number"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> PaymentIntentPage:
    return await service.list_payments(
        db,
        status_filter=status_filter,
        fee_type=fee_type,
        semester=semester,
        search=search,
        page=page,
        limit=limit,
    )


@router.post("/intents/expire-stale", response_model=ExpireStaleResponse)
async def expire_stale(
    db: AsyncSession = Depends(get_db),
) -> ExpireStaleResponse:
    try:
        return ExpireStaleResponse(expired=await expire_stale_intents(db))
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.get("/intents/{intent_id}", response_model=PaymentIntentStatusResponse)
async def get_payment_intent(
    intent_id: str,
    db: AsyncSession = Depends(get_db),
) -> PaymentIntentStatusResponse:
    try:
        return await service.get_intent(db, intent_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.get("/intents/{intent_id}/receipt", response_model=ReceiptResponse)
async def get_receipt(
    intent_id: str,
    db: AsyncSession = Depends(get_db),
) -> ReceiptResponse:
    try:
        return await service.get_receipt(db, intent_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


# --- Confirmation ---
@router.post("/verify", response_model=SettlementResult)
async def verify_gateway_payment(
    payload: GatewayConfirmation,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> SettlementResult:
    try:
        return await settlement.settle(db, gateway, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.post("/verify-manual", response_model=SettlementResult)
async def verify_manual_payment(
    payload: ManualConfirmation,
    db: AsyncSession = Depends(get_db),
) -> SettlementResult:
    try:
        return await settlement.settle_manual(db, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


# --- History ---
@router.get("/history/{student_id}", response_model=PaymentIntentPage)
async def get_payment_history(
    student_id: UUID,
    status_filter: Optional[PaymentIntentStatus] = Query(None, alias="status"),
    semester: Optional[int] = Query(None, ge=1, le=8),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> PaymentIntentPage:
    try:
        return await service.list_student_payments(
            db,
            student_id,
            status_filter=status_filter,
            semester=semester,
            page=page,
            limit=limit,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
