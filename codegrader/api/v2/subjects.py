"""学科与比赛API。"""

from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, UploadFile, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from codegrader.api.v2.common import to_http_exception
from codegrader.dependencies import get_db, get_pipeline, get_session_factory, get_store
from codegrader.services.pipeline import EvaluationPipeline
from codegrader.services.store import GradingStore, NotFoundError
from codegrader.utils.uploads import UnsupportedUploadError, parse_json_upload, split_topics

router = APIRouter()


# === Schemas ===

class SubjectCreate(BaseModel):
    code: str = Field(min_length=1, max_length=30)
    name: str = Field(min_length=1, max_length=100)


class SubjectResponse(BaseModel):
    id: int
    code: str
    name: str
    created_at: datetime

    class Config:
        from_attributes = True


class SubjectListResponse(BaseModel):
    subjects: List[SubjectResponse]
    total: int


class TestCaseIn(BaseModel):
    __test__ = False

    input: str = ""
    expected_output: str = ""


class QuestionIn(BaseModel):
    question_number: Optional[int] = Field(default=None, ge=1)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    reference_solution: Optional[str] = None
    test_cases: Any = Field(default_factory=list)  # 列表、JSON 字符串或 "in:out" 逗号分隔
    topics: List[str] = Field(default_factory=list)


class ContestCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    questions: List[QuestionIn] = Field(min_length=1)


class QuestionResponse(BaseModel):
    id: int
    question_number: int
    title: str
    description: Optional[str]
    reference_solution: Optional[str]
    test_cases: List[TestCaseIn]
    topics: List[str]


class ContestResponse(BaseModel):
    id: int
    subject_id: int
    title: str
    description: Optional[str]
    created_at: datetime
    questions: List[QuestionResponse] = Field(default_factory=list)


class ContestListResponse(BaseModel):
    contests: List[ContestResponse]
    total: int


def _build_contest_response(contest) -> ContestResponse:
    return ContestResponse(
        id=contest.id,
        subject_id=contest.subject_id,
        title=contest.title,
        description=contest.description,
        created_at=contest.created_at,
        questions=[
            QuestionResponse(
                id=q.id,
                question_number=q.question_number,
                title=q.title,
                description=q.description,
                reference_solution=q.reference_solution,
                test_cases=[TestCaseIn(**case) for case in q.test_cases_json or []],
                topics=q.topics_json or [],
            )
            for q in contest.questions
        ],
    )


def _create_contest(
    subject_id: int,
    payload: ContestCreate,
    background_tasks: BackgroundTasks,
    db: Session,
    store: GradingStore,
    pipeline: EvaluationPipeline,
    session_factory: sessionmaker,
) -> ContestResponse:
    try:
        contest = store.create_contest(
            db,
            subject_id,
            payload.title,
            payload.description,
            [question.model_dump() for question in payload.questions],
        )
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    # 题目知识点分析不阻塞比赛创建
    background_tasks.add_task(pipeline.analyze_contest_topics, session_factory, contest.id)
    return _build_contest_response(contest)


# === API 端点 ===

@router.post("/", response_model=SubjectResponse, status_code=status.HTTP_201_CREATED)
async def create_subject(
    payload: SubjectCreate,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """创建学科。"""
    existing = [s for s in store.list_subjects(db) if s.code == payload.code.strip().lower()]
    if existing:
        raise HTTPException(status_code=400, detail=f"subject {payload.code} already exists")
    return store.create_subject(db, payload.code, payload.name)


@router.get("/", response_model=SubjectListResponse)
async def list_subjects(db: Session = Depends(get_db), store: GradingStore = Depends(get_store)):
    subjects = store.list_subjects(db)
    return {"subjects": subjects, "total": len(subjects)}


@router.get("/contests/{contest_id}", response_model=ContestResponse)
async def get_contest(
    contest_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    try:
        contest = store.get_contest(db, contest_id)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    return _build_contest_response(contest)


@router.delete("/contests/{contest_id}")
async def delete_contest(
    contest_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    """删除比赛及其题目、提交与评测报告。"""
    try:
        counts = store.delete_contest(db, contest_id)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc
    return {"message": "contest deleted", "deleted": counts}


@router.get("/{subject_id}", response_model=SubjectResponse)
async def get_subject(
    subject_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    try:
        return store.get_subject(db, subject_id)
    except NotFoundError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/{subject_id}/contests",
    response_model=ContestResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_contest(
    subject_id: int,
    payload: ContestCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """创建比赛及题目，并在后台分析各题知识点。"""
    return _create_contest(subject_id, payload, background_tasks, db, store, pipeline, session_factory)


@router.post(
    "/{subject_id}/contests/import",
    response_model=ContestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def import_contest(
    subject_id: int,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
    pipeline: EvaluationPipeline = Depends(get_pipeline),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """从 JSON 文件导入比赛（``contestTitle`` + ``questions``）。"""
    try:
        data = parse_json_upload(await file.read(), file.filename or "")
    except UnsupportedUploadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    raw_questions = data.get("questions")
    if not data.get("contestTitle") or not isinstance(raw_questions, list) or not raw_questions:
        raise HTTPException(
            status_code=400, detail="JSON must contain contestTitle and a non-empty questions array"
        )

    questions: List[QuestionIn] = []
    for index, item in enumerate(raw_questions, start=1):
        if not isinstance(item, dict) or not item.get("title") or not item.get("description"):
            raise HTTPException(status_code=400, detail=f"question {index} is missing title or description")
        questions.append(
            QuestionIn(
                question_number=item.get("questionNumber") or index,
                title=str(item["title"]).strip(),
                description=str(item["description"]).strip(),
                reference_solution=(item.get("expectedSolution") or "").strip() or None,
                test_cases=item.get("testCases") or [],
                topics=split_topics(item.get("topics")),
            )
        )
    payload = ContestCreate(
        title=str(data["contestTitle"]).strip(),
        description=(data.get("description") or "").strip() or None,
        questions=questions,
    )
    return _create_contest(subject_id, payload, background_tasks, db, store, pipeline, session_factory)


@router.get("/{subject_id}/contests", response_model=ContestListResponse)
async def list_contests(
    subject_id: int,
    db: Session = Depends(get_db),
    store: GradingStore = Depends(get_store),
):
    contests = store.list_contests(db, subject_id)
    return {"contests": [_build_contest_response(c) for c in contests], "total": len(contests)}
