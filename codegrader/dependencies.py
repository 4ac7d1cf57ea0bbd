"""FastAPI 依赖注入工具。

生成后端、评测编排与流水线都通过依赖函数构造，测试中可用
``app.dependency_overrides`` 替换为假后端或内存数据库。
"""

from collections.abc import Iterator
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from codegrader.config import Settings, get_settings
from codegrader.db import SessionLocal
from codegrader.services.ai import GeminiBackend, GenerationBackend
from codegrader.services.catalog import ModelCatalog
from codegrader.services.completion import ResilientCompletionClient
from codegrader.services.evaluator import EvaluationOrchestrator
from codegrader.services.lifecycle import SubmissionLifecycle
from codegrader.services.pipeline import EvaluationPipeline
from codegrader.services.sandbox import PistonSandbox
from codegrader.services.store import GradingStore


def get_session_factory() -> sessionmaker:
    """后台任务需要独立 Session，因此暴露工厂本身。"""

    return SessionLocal


def get_db(factory: sessionmaker = Depends(get_session_factory)) -> Iterator[Session]:
    """FastAPI 依赖，用于获取数据库会话。"""

    db = factory()
    try:
        yield db
    finally:
        db.close()


@lru_cache(maxsize=1)
def _default_backend() -> GeminiBackend:
    return GeminiBackend(get_settings())


def get_backend() -> GenerationBackend:
    return _default_backend()


def build_orchestrator(settings: Settings, backend: GenerationBackend) -> EvaluationOrchestrator:
    catalog = ModelCatalog(backend, settings.preferred_models, settings.fallback_models)
    client = ResilientCompletionClient(backend, catalog, settings.max_candidates)
    return EvaluationOrchestrator(client, settings)


def build_pipeline(settings: Settings, backend: GenerationBackend) -> EvaluationPipeline:
    return EvaluationPipeline(
        GradingStore(),
        SubmissionLifecycle(),
        build_orchestrator(settings, backend),
        settings,
    )


def get_store() -> GradingStore:
    return GradingStore()


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    backend: GenerationBackend = Depends(get_backend),
) -> EvaluationOrchestrator:
    return build_orchestrator(settings, backend)


def get_pipeline(
    settings: Settings = Depends(get_settings),
    backend: GenerationBackend = Depends(get_backend),
) -> EvaluationPipeline:
    return build_pipeline(settings, backend)


def get_sandbox(settings: Settings = Depends(get_settings)) -> PistonSandbox:
    return PistonSandbox(settings)
