"""代码提交与评测API。"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Query, UploadFile, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from codegrader.api.v2.common import (
    EvaluationResponse,
    SubmissionResponse,
    build_evaluation_response,
    to_http_exception,
)
from codegrader.dependencies import get_db, get_pipeline, get_sandbox, get_session_factory, get_store
from codegrader.models import SubmissionStatus
from codegrader.services.evaluator import EvaluationFailedError
from codegrader.services.lifecycle import InvalidTransitionError
from codegrader.services.pipeline import BulkSubmissionItem, BulkSubmissionResult, EvaluationPipeline
from codegrader.services.sandbox import ExecutionResult, PistonSandbox, TestRunSummary
from codegrader.services.store import GradingStore, NotFoundError
from codegrader.utils.uploads import UnsupportedUploadError, parse_json_upload, parse_test_cases

router = APIRouter()


# === Schemas ===

class SubmissionCreate(BaseModel):
    contest_id: int
    question_id: int
    student_id: int
    code: str = Field(min_length=1)
    language: str = "java"


class SubmissionListResponse(BaseModel):
    submissions: List[SubmissionResponse]
    total: int


class BulkSubmissionCreate(BaseModel):
    contest_id: int
    submissions: List[BulkSubmissionItem] = Field(min_length=1)


class RunCodeRequest(BaseModel):
    code: str = Field(min_length=1)
    stdin: str = ""
    test_cases: Optional[Any] = None


class ReconcileResponse(BaseModel):
    moved_to_error: List[int]
    total: int


class TestRunResponse(BaseModel):
    __test__ = False

    total: int
    passed: int
    failed: int
    all_passed: bool
    results: List[Dict[str, Any]]


def _build_test_run_response(summary: TestRunSummary) -> TestRunResponse:
    return TestRunResponse(
        total=summary.total,
        passed=summary.passed,
        failed=summary.failed,
        all_passed=summary.all_passed,
        results=[item.model_dump() for item in summary.results],
    )


# === API 端点 ===

@router.post("/", response_model=SubmissionResponse, status_code=status.HTTP_202_ACCEPTED)
def create_submission(
    data: SubmissionCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """创建提交并在后台触发 AI 评测。"""
    try:
        submission = pipeline.create_submission(
            db, data.contest_id, data.question_id, data.student_id, data.code, data.language
        )
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    background_tasks.add_task(pipeline.run_in_background, session_factory, submission.id)
    return submission


@router.post("/bulk", response_model=BulkSubmissionResult, status_code=status.HTTP_202_ACCEPTED)
def create_bulk_submissions(
    data: BulkSubmissionCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """批量创建提交，接受的提交在后台逐个评测。"""
    try:
        result = pipeline.submit_bulk(db, data.contest_id, data.submissions)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    if result.accepted:
        background_tasks.add_task(pipeline.evaluate_many, session_factory, list(result.accepted))
    return result


@router.post("/bulk/upload", response_model=BulkSubmissionResult, status_code=status.HTTP_202_ACCEPTED)
async def upload_bulk_submissions(
    contest_id: int,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """从 JSON 文件批量上传提交（``submissions`` 数组）。"""
    try:
        data = parse_json_upload(await file.read(), file.filename or "")
    except UnsupportedUploadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    raw_items = data.get("submissions")
    if not isinstance(raw_items, list) or not raw_items:
        raise HTTPException(status_code=400, detail="JSON must contain a non-empty 'submissions' array")

    items: List[BulkSubmissionItem] = []
    rejected: List[str] = []
    for index, raw in enumerate(raw_items, start=1):
        try:
            items.append(
                BulkSubmissionItem(
                    student_id=raw.get("studentId"),
                    student_email=raw.get("studentEmail"),
                    question_number=raw.get("questionNumber"),
                    code=raw.get("code") or "",
                )
            )
        except (AttributeError, ValueError) as exc:
            rejected.append(f"item {index}: {exc}")

    try:
        result = pipeline.submit_bulk(db, contest_id, items)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    result.errors = rejected + result.errors
    if result.accepted:
        background_tasks.add_task(pipeline.evaluate_many, session_factory, list(result.accepted))
    return result


@router.get("/", response_model=SubmissionListResponse)
async def list_submissions(
    contest_id: Optional[int] = None,
    student_id: Optional[int] = None,
    status_filter: Optional[SubmissionStatus] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    submissions = store.list_submissions(db, contest_id, student_id, status_filter)
    return {"submissions": submissions, "total": len(submissions)}


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_stale_submissions(
    db: Session = Depends(get_db),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
):
    """把长时间停留在 evaluating 的提交标记为 error。"""
    moved = pipeline.reconcile(db)
    return {"moved_to_error": moved, "total": len(moved)}


@router.post("/run", response_model=None)
def run_code(data: RunCodeRequest, sandbox: PistonSandbox = Depends(get_sandbox)):
    """在沙箱中运行代码；提供测试用例时逐个比对输出。"""
    cases = parse_test_cases(data.test_cases)
    if cases:
        return _build_test_run_response(sandbox.run_test_cases(data.code, cases))
    result: ExecutionResult = sandbox.run(data.code, data.stdin)
    return {**result.model_dump(), "success": result.success}


@router.get("/{submission_id}", response_model=SubmissionResponse)
async def get_submission(
    submission_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    try:
        return store.get_submission(db, submission_id)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{submission_id}/evaluation", response_model=EvaluationResponse)
async def get_submission_evaluation(
    submission_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """获取提交的最新评测报告。"""
    try:
        store.get_submission(db, submission_id)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    evaluation = store.latest_evaluation(db, submission_id)
    if evaluation is None:
        raise HTTPException(status_code=404, detail="evaluation not found")
    return build_evaluation_response(evaluation)


@router.post("/{submission_id}/evaluate", response_model=EvaluationResponse)
def evaluate_submission(
    submission_id: int,
    db: Session = Depends(get_db),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
):
    """同步评测一个处于 submitted 状态的提交。"""
    try:
        evaluation = pipeline.evaluate_submission(db, submission_id)
    except (NotFoundError, InvalidTransitionError, EvaluationFailedError) as exc:
        raise to_http_exception(exc) from exc
    return build_evaluation_response(evaluation)


@router.post("/{submission_id}/run-tests", response_model=TestRunResponse)
def run_submission_tests(
    submission_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
    sandbox: PistonSandbox = Depends(get_sandbox),
):
    """用题目测试用例运行提交代码。"""
    try:
        submission = store.get_submission(db, submission_id)
        question = store.get_question(db, submission.question_id)
        summary = sandbox.run_test_cases(submission.code, question.test_cases_json or [])
    except (NotFoundError, ValueError) as exc:
        raise to_http_exception(exc) from exc
    return _build_test_run_response(summary)


@router.post("/{submission_id}/retry", response_model=SubmissionResponse, status_code=status.HTTP_202_ACCEPTED)
def retry_submission(
    submission_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """为已结束的提交创建重评提交，原提交保持不变。"""
    try:
        submission = pipeline.retry(db, submission_id)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    background_tasks.add_task(pipeline.run_in_background, session_factory, submission.id)
    return submission
