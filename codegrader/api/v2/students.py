"""学生API。"""

from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from codegrader.api.v2.common import to_http_exception
from codegrader.dependencies import get_db, get_store
from codegrader.services.store import GradingStore, NotFoundError

router = APIRouter()


# === Schemas ===

class StudentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")


class StudentResponse(BaseModel):
    id: int
    name: str
    email: str
    created_at: datetime

    class Config:
        from_attributes = True


class StudentListResponse(BaseModel):
    students: List[StudentResponse]
    total: int


# === API 端点 ===

@router.post("/", response_model=StudentResponse, status_code=status.HTTP_201_CREATED)
async def create_student(
    payload: StudentCreate,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    try:
        return store.create_student(db, payload.name, payload.email)
    except ValueError as exc:
        raise to_http_exception(exc) from exc


@router.get("/", response_model=StudentListResponse)
async def list_students(db: Session = Depends(get_db), store: GradingStore = Depends(get_store)):
    students = store.list_students(db)
    return {"students": students, "total": len(students)}


@router.get("/by-email", response_model=StudentResponse)
async def get_student_by_email(
    email: str,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """按邮箱查找学生（不区分大小写）。"""
    student = store.find_student_by_email(db, email)
    if student is None:
        raise HTTPException(status_code=404, detail=f"student {email} not found")
    return student


@router.get("/{student_id}", response_model=StudentResponse)
async def get_student(
    student_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    try:
        return store.get_student(db, student_id)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
