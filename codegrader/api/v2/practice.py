"""练习任务与练习题生成API。"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from codegrader.api.v2.common import to_http_exception
from codegrader.dependencies import get_db, get_orchestrator, get_pipeline, get_store
from codegrader.models import Difficulty, PracticeQuestionType, PracticeTaskStatus
from codegrader.schemas.evaluation import CodingQuestion
from codegrader.services.evaluator import EvaluationFailedError, EvaluationOrchestrator
from codegrader.services.pipeline import EvaluationPipeline
from codegrader.services.store import GradingStore, NotFoundError

router = APIRouter()


# === Schemas ===

class PracticeTaskResponse(BaseModel):
    id: int
    student_id: int
    subject_id: int
    contest_id: Optional[int]
    question_type: PracticeQuestionType
    title: str
    description: str
    code_template: str
    test_cases: List[Dict[str, Any]]
    topics: List[str]
    difficulty: str
    status: PracticeTaskStatus
    submission_code: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]


class PracticeTaskUpdate(BaseModel):
    status: PracticeTaskStatus
    submission_code: Optional[str] = None


class HistoricalPracticeRequest(BaseModel):
    subject_id: int
    count: int = Field(default=5, ge=1, le=10)


class CodingQuestionRequest(BaseModel):
    topics: str = Field(min_length=1)
    difficulty: Difficulty = Difficulty.MEDIUM


class CodingQuestionResponse(BaseModel):
    questions: List[CodingQuestion]
    total: int


def _build_task_response(task) -> PracticeTaskResponse:
    return PracticeTaskResponse(
        id=task.id,
        student_id=task.student_id,
        subject_id=task.subject_id,
        contest_id=task.contest_id,
        question_type=task.question_type,
        title=task.title,
        description=task.description or "",
        code_template=task.code_template or "",
        test_cases=task.test_cases_json or [],
        topics=task.topics_json or [],
        difficulty=task.difficulty,
        status=task.status,
        submission_code=task.submission_code,
        created_at=task.created_at,
        completed_at=task.completed_at,
    )


# === API 端点 ===

@router.get("/students/{student_id}/tasks", response_model=List[PracticeTaskResponse])
async def list_practice_tasks(
    student_id: int,
    subject_id: Optional[int] = None,
    status_filter: Optional[PracticeTaskStatus] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    tasks = store.list_practice_tasks(db, student_id, subject_id, status_filter)
    return [_build_task_response(task) for task in tasks]


@router.patch("/tasks/{task_id}", response_model=PracticeTaskResponse)
async def update_practice_task(
    task_id: int,
    payload: PracticeTaskUpdate,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """更新练习任务状态；完成时记录完成时间。"""
    try:
        task = store.update_practice_task_status(db, task_id, payload.status, payload.submission_code)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _build_task_response(task)


@router.post(
    "/students/{student_id}/historical",
    response_model=List[PracticeTaskResponse],
    status_code=status.HTTP_201_CREATED,
)
def generate_historical_practice(
    student_id: int,
    payload: HistoricalPracticeRequest,
    db: Session = Depends(get_db),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
):
    """根据历史画像生成练习任务；生成失败时返回空列表。"""
    try:
        tasks = pipeline.generate_historical_practice(db, student_id, payload.subject_id, payload.count)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    return [_build_task_response(task) for task in tasks]


@router.post("/coding-questions", response_model=CodingQuestionResponse)
def generate_coding_questions(
    payload: CodingQuestionRequest,
    orchestrator: EvaluationOrchestrator = Depends(get_orchestrator),
):
    """按知识点与难度生成 5 道编程练习题。"""
    try:
        questions = orchestrator.generate_coding_questions(payload.topics, payload.difficulty.value)
    except EvaluationFailedError as exc:
        raise to_http_exception(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"questions": questions, "total": len(questions)}
