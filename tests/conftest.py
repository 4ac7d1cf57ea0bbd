import json
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("CODEGRADER_DATABASE_URL", "sqlite:///:memory:")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from codegrader.config import Settings, get_settings
from codegrader.db import Base
from codegrader.dependencies import build_pipeline, get_backend, get_db, get_session_factory
from codegrader.main import app
from codegrader.schemas.completion import (
    CapabilityClass,
    CompletionRequest,
    GenerationResponse,
    ModelCandidate,
)
from codegrader.services.store import GradingStore

# Use in-memory SQLite for testing to ensure isolation
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


EVALUATION_PAYLOAD: Dict[str, Any] = {
    "strengths": ["Clear variable names"],
    "weaknesses": ["No input validation"],
    "suggestions": ["Handle empty arrays"],
    "topicScores": {"Arrays": 80, " Recursion ": 40},
    "overallScore": 72,
    "detailedAnalysis": "Solid solution with minor gaps.",
    "practiceQuestions": [
        {
            "title": "Sum of array",
            "description": "Return the sum",
            "codeTemplate": "public class Main {}",
            "testCases": [{"input": "3\n1 2 3", "expectedOutput": "6"}],
            "topics": ["Arrays"],
            "difficulty": "easy",
        },
        {
            "title": "Factorial",
            "description": "Compute n!",
            "codeTemplate": "public class Main {}",
            "testCases": [{"input": "5", "expectedOutput": "120"}],
            "topics": ["recursion"],
            "difficulty": "medium",
        },
    ],
}

EVALUATION_TEXT = "Here is the evaluation:\n```json\n" + json.dumps(EVALUATION_PAYLOAD) + "\n```"
TOPICS_TEXT = '["Arrays", "loops"]'

GENERATION_MODELS = [
    ModelCandidate(name="gemini-2.5-pro", capability_class=CapabilityClass.GENERATION),
    ModelCandidate(name="gemini-2.5-flash", capability_class=CapabilityClass.GENERATION),
    ModelCandidate(name="text-embedding-004", capability_class=CapabilityClass.EMBEDDING),
]


class FakeBackend:
    """按模型脚本化返回结果的生成后端。

    ``responses`` 的值可以是字符串、``GenerationResponse``、异常实例、
    接收请求的可调用对象，或以上元素组成的列表（依次消费，最后一个重复使用）。
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        default: Any = EVALUATION_TEXT,
        models: Any = None,
        configured: bool = True,
    ) -> None:
        self.responses = dict(responses or {})
        self.default = default
        self.models = GENERATION_MODELS if models is None else models
        self.configured = configured
        self.calls: List[tuple] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    def list_models(self) -> List[ModelCandidate]:
        if isinstance(self.models, Exception):
            raise self.models
        return list(self.models)

    def _next(self, model_id: str) -> Any:
        outcome = self.responses.get(model_id, self.default)
        if isinstance(outcome, list):
            if len(outcome) > 1:
                return outcome.pop(0)
            return outcome[0]
        return outcome

    def generate(self, model_id: str, request: CompletionRequest) -> GenerationResponse:
        self.calls.append((model_id, request))
        outcome = self._next(model_id)
        if callable(outcome):
            outcome = outcome(request)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, GenerationResponse):
            return outcome
        return GenerationResponse(text=outcome, finish_reason="STOP")


def route_by_prompt(request: CompletionRequest) -> str:
    """知识点分析请求返回主题数组，其余返回评测报告。"""

    if "identify ALL relevant topics" in request.user_content:
        return TOPICS_TEXT
    return EVALUATION_TEXT


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=SQLALCHEMY_DATABASE_URL,
        gemini_api_key="test-key",
        evaluation_timeout_ms=2000,
        topic_analysis_timeout_ms=2000,
        generation_timeout_ms=2000,
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend(default=route_by_prompt)


@pytest.fixture
def pipeline(settings, fake_backend):
    return build_pipeline(settings, fake_backend)


@pytest.fixture
def store() -> GradingStore:
    return GradingStore()


@pytest.fixture(scope="function")
def session():
    """
    Create a fresh database session for each test.
    """
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seeded(session, store):
    """一个学科、一场两题比赛和一名学生。"""

    subject = store.create_subject(session, "java", "Java")
    contest = store.create_contest(
        session,
        subject.id,
        "Contest 1",
        "Arrays warm-up",
        [
            {
                "title": "Sum",
                "description": "Sum an array",
                "reference_solution": "class Main {}",
                "test_cases": [{"input": "3\n1 2 3", "expectedOutput": "6"}],
            },
            {
                "title": "Max",
                "description": "Find the max",
                "test_cases": "1 2:2, 5 3:5",
            },
        ],
    )
    student = store.create_student(session, "Ada", "Ada@Example.com")
    return {
        "subject_id": subject.id,
        "contest_id": contest.id,
        "question_ids": [q.id for q in contest.questions],
        "student_id": student.id,
    }


@pytest.fixture(scope="function")
def client(session, settings, fake_backend):
    """
    Create a TestClient that uses the override_get_db dependency.

    每个请求使用独立 Session，避免读到后台任务写入前的缓存对象。
    """
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_backend] = lambda: fake_backend
    app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
