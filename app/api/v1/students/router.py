from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import StudentCreate, StudentPage, StudentResponse, StudentSearchRequest, StudentSearchResponse, StudentUpdate
from . import service

router = APIRouter(prefix="/api/v1/students", tags=["students"])


@router.post(
    "",
    response_model=StudentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_student(
    payload: StudentCreate,
    db: AsyncSession = Depends(get_db),
) -> StudentResponse:
    try:
        return await service.create_student(db, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.get("", response_model=StudentPage)
async def list_students(
    search: Optional[str] = Query(None, description="Roll number, name or e-mail"),
    department: Optional[str] = Query(None),
    course: Optional[str] = Query(None),
    semester: Optional[int] = Query(None, ge=1, le=8),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> StudentPage:
    return await service.list_students(
        db,
        search=search,
        department=department,
        course=course,
        semester=semester,
        page=page,
        limit=limit,
    )


@router.post("/search", response_model=StudentSearchResponse)
async def search_student(
    payload: StudentSearchRequest,
    db: AsyncSession = Depends(get_db),
) -> StudentSearchResponse:
    try:
        return await service.search_student(db, payload.roll_number)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.get("/{student_id}", response_model=StudentResponse)
async def get_student(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> StudentResponse:
    try:
        return await service.get_student(db, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)


@router.put("/{student_id}", response_model=StudentResponse)
async def update_student(
    student_id: UUID,
    payload: StudentUpdate,
    db: AsyncSession = Depends(get_db),
) -> StudentResponse:
    try:
        return await service.update_student(db, student_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
