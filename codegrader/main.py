"""FastAPI 入口，注册路由并初始化数据库表。"""

from fastapi import FastAPI

from codegrader.api.v2 import router as api_v2_router
from codegrader.config import get_settings
from codegrader.db import Base, engine
from codegrader.logging_config import configure_logging
import codegrader.models  # noqa: F401  注册全部模型到 Base.metadata


def create_app() -> FastAPI:
    """应用工厂，便于测试与拓展路由。"""

    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title="codegrader API", version="0.1.0")

    @app.on_event("startup")
    def init_models() -> None:
        """启动时确保表存在。"""

        Base.metadata.create_all(bind=engine)

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "status": "ok",
            "generation_backend_configured": bool(settings.gemini_api_key),
        }

    app.include_router(api_v2_router)
    return app


app = create_app()
