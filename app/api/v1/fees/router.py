"""Fees router: ledger, fee structure, fee status."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import FeeRecordResponse, FeeStatusResponse, FeeStructureUpdate, LedgerResponse
from . import service

router = APIRouter(prefix="/api/v1/fees", tags=["fees"])


@router.get("/ledger/{student_id}", response_model=LedgerResponse)
async def get_ledger(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> LedgerResponse:
    try:
        return await service.get_ledger(db, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.put("/structure/{student_id}", response_model=FeeRecordResponse)
async def update_fee_structure(
    student_id: UUID,
    payload: FeeStructureUpdate,
    db: AsyncSession = Depends(get_db),
) -> FeeRecordResponse:
    try:
        return await service.update_fee_structure(db, student_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.get("/status/{student_id}", response_model=FeeStatusResponse)
async def get_fee_status(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> FeeStatusResponse:
    try:
        return await service.get_fee_status(db, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
