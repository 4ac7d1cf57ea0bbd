"""路由共用的响应模型与异常转换。"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field

from codegrader.models import Evaluation, SubmissionStatus
from codegrader.services.evaluator import EvaluationFailedError
from codegrader.services.lifecycle import InvalidTransitionError
from codegrader.services.store import NotFoundError


class SubmissionResponse(BaseModel):
    id: int
    contest_id: int
    question_id: int
    student_id: int
    code: str
    language: str
    status: SubmissionStatus
    error_detail: Optional[str] = None
    raw_response: Optional[str] = None
    retry_of_id: Optional[int] = None
    submitted_at: datetime
    evaluated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EvaluationResponse(BaseModel):
    id: int
    submission_id: int
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    topic_scores: Dict[str, float] = Field(default_factory=dict)
    overall_score: float
    detailed_analysis: str = ""
    practice_questions: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime


def build_evaluation_response(item: Evaluation) -> EvaluationResponse:
    return EvaluationResponse(
        id=item.id,
        submission_id=item.submission_id,
        strengths=item.strengths_json or [],
        weaknesses=item.weaknesses_json or [],
        suggestions=item.suggestions_json or [],
        topic_scores=item.topic_scores_json or {},
        overall_score=item.overall_score,
        detailed_analysis=item.detailed_analysis or "",
        practice_questions=item.practice_questions_json or [],
        created_at=item.created_at,
    )


def to_http_exception(exc: Exception) -> HTTPException:
    """把领域异常映射为 HTTP 错误。"""

    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, EvaluationFailedError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": exc.failure.error.value, "message": exc.failure.detail},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
