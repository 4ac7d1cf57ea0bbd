"""Gemini/LangChain集成的通用工具。

``GeminiBackend`` 实现生成后端契约：``list_models`` 走 REST 模型列表接口，
``generate`` 通过 LangChain 的 ``ChatGoogleGenerativeAI`` 发送单次请求。
后端异常在此处被归类为 ``GenerationBackendError`` 子类，供上层回退逻辑使用。
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol

import httpx
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from codegrader.config import Settings
from codegrader.schemas.completion import (
    CapabilityClass,
    CompletionRequest,
    GenerationResponse,
    ModelCandidate,
)

logger = logging.getLogger(__name__)


class GenerationBackendError(RuntimeError):
    """生成后端调用失败（传输层或服务端）。"""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelUnavailableError(GenerationBackendError):
    """模型不存在、已下线或不支持 generateContent。"""


class SafetyRejectionError(GenerationBackendError):
    """请求被安全策略拦截。"""


class BackendTimeoutError(GenerationBackendError):
    """单次调用超过截止时间。"""


class GenerationBackend(Protocol):
    """生成后端需要满足的最小接口。"""

    @property
    def is_configured(self) -> bool: ...

    def list_models(self) -> List[ModelCandidate]: ...

    def generate(self, model_id: str, request: CompletionRequest) -> GenerationResponse: ...


def capability_for_methods(methods: List[str]) -> CapabilityClass:
    """根据 ``supportedGenerationMethods`` 推断模型能力类别。"""

    if "generateContent" in methods:
        return CapabilityClass.GENERATION
    if "embedContent" in methods or "embedText" in methods:
        return CapabilityClass.EMBEDDING
    return CapabilityClass.OTHER


def normalize_finish_reason(value: Any) -> Optional[str]:
    """把 SDK 返回的结束原因统一为大写字符串，例如 ``MAX_TOKENS``。"""

    if value is None:
        return None
    name = getattr(value, "name", None)
    text = str(name if name else value).strip()
    if "." in text:
        text = text.rsplit(".", 1)[-1]
    return text.upper() or None


def message_text(content: Any) -> str:
    """LangChain 消息内容可能是字符串或 part 列表，拼接其中的文本。"""

    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return str(content)


def classify_backend_exception(exc: Exception) -> Optional[GenerationBackendError]:
    """把 SDK 异常映射到后端错误类型；无法识别时返回 None，由调用方原样抛出。"""

    status = getattr(exc, "status_code", None)
    if not isinstance(status, int):
        status = getattr(exc, "code", None)
    if not isinstance(status, int):
        status = None
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()

    if status == 404 or "not found" in lowered or "not supported" in lowered:
        return ModelUnavailableError(message, status)
    if isinstance(exc, TimeoutError) or "timeout" in lowered or "deadline" in lowered:
        return BackendTimeoutError(message, status)
    if "safety" in lowered or "blocked" in lowered:
        return SafetyRejectionError(message, status)
    if status is not None or isinstance(exc, httpx.HTTPError):
        return GenerationBackendError(message, status)
    return None


class GeminiBackend:
    """Gemini 生成后端。"""

    def __init__(self, settings: Settings, http_client: Optional[httpx.Client] = None) -> None:
        self.settings = settings
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.gemini_api_key)

    def list_models(self) -> List[ModelCandidate]:
        """调用模型列表接口；失败时抛出异常，由 ``ModelCatalog`` 负责回退。"""

        url = f"{self.settings.gemini_base_url.rstrip('/')}/models"
        params = {"key": self.settings.gemini_api_key or ""}
        timeout = self.settings.gemini_discovery_timeout_seconds
        if self._http_client is not None:
            response = self._http_client.get(url, params=params, timeout=timeout)
        else:
            with httpx.Client(timeout=timeout) as client:
                response = client.get(url, params=params)
        response.raise_for_status()
        payload = response.json() or {}

        candidates: List[ModelCandidate] = []
        for item in payload.get("models") or []:
            name = str(item.get("name") or "")
            if not name:
                continue
            candidates.append(
                ModelCandidate(
                    name=name.split("/", 1)[-1] if name.startswith("models/") else name,
                    capability_class=capability_for_methods(
                        list(item.get("supportedGenerationMethods") or [])
                    ),
                )
            )
        logger.debug("Discovered %d Gemini models", len(candidates))
        return candidates

    def _build_chat(self, model_id: str, request: CompletionRequest) -> ChatGoogleGenerativeAI:
        return ChatGoogleGenerativeAI(
            model=model_id,
            google_api_key=self.settings.gemini_api_key,
            temperature=request.temperature,
            max_output_tokens=request.max_output_tokens,
            timeout=request.timeout_ms / 1000,
            max_retries=0,
        )

    def generate(self, model_id: str, request: CompletionRequest) -> GenerationResponse:
        chat = self._build_chat(model_id, request)
        try:
            message = chat.invoke(
                [
                    SystemMessage(content=request.system_instruction),
                    HumanMessage(content=request.user_content),
                ]
            )
        except Exception as exc:
            classified = classify_backend_exception(exc)
            if classified is None:
                raise
            raise classified from exc

        metadata = getattr(message, "response_metadata", None) or {}
        usage = getattr(message, "usage_metadata", None)
        return GenerationResponse(
            text=message_text(getattr(message, "content", None)) or None,
            finish_reason=normalize_finish_reason(metadata.get("finish_reason")),
            usage=dict(usage) if usage else None,
        )
