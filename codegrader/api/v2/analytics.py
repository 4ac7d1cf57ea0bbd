"""学生画像、综合分与学习报告API。"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from codegrader.api.v2.common import EvaluationResponse, build_evaluation_response, to_http_exception
from codegrader.dependencies import get_db, get_pipeline, get_store
from codegrader.schemas.evaluation import HistoricalReport
from codegrader.services.evaluator import EvaluationFailedError
from codegrader.services.pipeline import EvaluationPipeline
from codegrader.services.store import GradingStore, NotFoundError

router = APIRouter()


# === Schemas ===

class TopicAnalyticsResponse(BaseModel):
    id: str
    student_id: int
    subject_id: int
    topics: Dict[str, Dict[str, Any]]
    updated_at: datetime


class ContestScoreIn(BaseModel):
    contest_id: Optional[int] = None
    contest_title: Optional[str] = None
    raw_score: Any = None
    max_score: Any = None


class ScorePublish(BaseModel):
    contest_entries: List[ContestScoreIn] = Field(default_factory=list)
    mock_score: float = 0


class SubjectScoreResponse(BaseModel):
    id: str
    student_id: int
    subject_id: int
    contests: List[Dict[str, Any]]
    contest_normalized_total: float
    contest_max_possible: float
    contest_scaled_40: float
    mock_score: float
    total: float
    updated_at: datetime


class EvaluationHistoryItem(BaseModel):
    submission_id: int
    contest_id: int
    contest_title: str
    question_id: int
    evaluated_at: Optional[datetime]
    evaluation: EvaluationResponse


class ImportantTopicResponse(BaseModel):
    topic: str
    count: int

    class Config:
        from_attributes = True


def _build_topic_response(record) -> TopicAnalyticsResponse:
    return TopicAnalyticsResponse(
        id=record.id,
        student_id=record.student_id,
        subject_id=record.subject_id,
        topics=record.topics_json or {},
        updated_at=record.updated_at,
    )


def _build_score_response(record) -> SubjectScoreResponse:
    return SubjectScoreResponse(
        id=record.id,
        student_id=record.student_id,
        subject_id=record.subject_id,
        contests=record.contests_json or [],
        contest_normalized_total=record.contest_normalized_total,
        contest_max_possible=record.contest_max_possible,
        contest_scaled_40=record.contest_scaled_40,
        mock_score=record.mock_score,
        total=record.total,
        updated_at=record.updated_at,
    )


# === API 端点 ===

@router.get("/students/{student_id}/topics", response_model=List[TopicAnalyticsResponse])
async def list_topic_analytics(
    student_id: int,
    subject_id: Optional[int] = None,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """学生各学科的知识点画像。"""
    if subject_id is not None:
        record = store.get_topic_analytics(db, student_id, subject_id)
        records = [record] if record is not None else []
    else:
        records = store.list_topic_analytics(db, student_id)
    return [_build_topic_response(record) for record in records]


@router.put(
    "/students/{student_id}/subjects/{subject_id}/score",
    response_model=SubjectScoreResponse,
)
async def publish_subject_score(
    student_id: int,
    subject_id: int,
    payload: ScorePublish,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """发布学科综合分（整体重算，幂等）。"""
    try:
        record = store.publish_subject_score(
            db,
            student_id,
            subject_id,
            [entry.model_dump() for entry in payload.contest_entries],
            payload.mock_score,
        )
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    return _build_score_response(record)


@router.get("/students/{student_id}/scores", response_model=List[SubjectScoreResponse])
async def list_subject_scores(
    student_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    return [_build_score_response(record) for record in store.list_subject_scores(db, student_id)]


@router.get("/students/{student_id}/evaluations", response_model=List[EvaluationHistoryItem])
async def list_evaluation_history(
    student_id: int,
    subject_id: Optional[int] = None,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """学生已评测提交及最新报告。"""
    try:
        store.get_student(db, student_id)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    return [
        EvaluationHistoryItem(
            submission_id=submission.id,
            contest_id=submission.contest_id,
            contest_title=submission.contest.title,
            question_id=submission.question_id,
            evaluated_at=submission.evaluated_at,
            evaluation=build_evaluation_response(evaluation),
        )
        for submission, evaluation in store.evaluation_history(db, student_id, subject_id)
    ]


@router.post("/students/{student_id}/report", response_model=HistoricalReport)
def generate_student_report(
    student_id: int,
    subject_id: Optional[int] = None,
    db: Session = Depends(get_db),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
):
    """基于全部评测历史生成学习报告。"""
    try:
        return pipeline.historical_report(db, student_id, subject_id)
    except (NotFoundError, EvaluationFailedError) as exc:
        raise to_http_exception(exc) from exc


@router.get("/important-topics", response_model=List[ImportantTopicResponse])
async def list_important_topics(
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """全局高频知识点，按出现次数降序。"""
    return store.list_important_topics(db, limit)
