"""带模型回退与超时控制的生成客户端。"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import List, Optional

from codegrader.schemas.completion import (
    CompletionFailure,
    CompletionPartial,
    CompletionRequest,
    CompletionResult,
    CompletionSuccess,
    ErrorKind,
    GenerationResponse,
)
from codegrader.services.ai import (
    BackendTimeoutError,
    GenerationBackendError,
    ModelUnavailableError,
    SafetyRejectionError,
)
from codegrader.services.catalog import ModelCatalog
from codegrader.services.extraction import repair_truncated_json

logger = logging.getLogger(__name__)

TRUNCATION_NOTE = (
    "\n\n[Note: Response was truncated due to token limit. Some content may be missing.]"
)
TOKEN_LIMIT_REASONS = {"MAX_TOKENS", "LENGTH", "TOKEN_LIMIT"}
SAFETY_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}
MAX_CONCURRENT_CALLS = 8

# 所有客户端共用一个有界线程池。超时的调用无法被中断，会继续占用一个
# 工作线程直到后端返回；解释器退出时也会等待这些线程结束。
_call_executor = ThreadPoolExecutor(
    max_workers=MAX_CONCURRENT_CALLS, thread_name_prefix="completion"
)


class ResilientCompletionClient:
    """按模型目录顺序逐个尝试，直到某个模型给出可用结果。

    客户端本身无状态；每个候选模型的调用都有独立的截止时间，
    这是取消一次调用的唯一方式。
    """

    def __init__(
        self,
        backend,
        catalog: ModelCatalog,
        max_candidates: Optional[int] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.backend = backend
        self.catalog = catalog
        self.max_candidates = max_candidates
        self.executor = executor or _call_executor

    def complete(self, request: CompletionRequest) -> CompletionResult:
        if not request.system_instruction.strip() or not request.user_content.strip():
            return CompletionFailure(
                error=ErrorKind.CONFIGURATION, detail="system instruction and user content are required"
            )
        if not self.backend.is_configured:
            return CompletionFailure(
                error=ErrorKind.CONFIGURATION, detail="generation backend API key is not configured"
            )

        models = self.catalog.rank(limit=self.max_candidates)
        reasons: List[str] = []
        for model_id in models:
            try:
                response = self._call_with_deadline(model_id, request)
            except SafetyRejectionError as exc:
                logger.warning("Model %s rejected the request for safety: %s", model_id, exc)
                return CompletionFailure(
                    error=ErrorKind.SAFETY_REJECTION, detail=str(exc), model=model_id
                )
            except BackendTimeoutError as exc:
                logger.warning("Model %s timed out after %sms", model_id, request.timeout_ms)
                reasons.append(f"{model_id}: {ErrorKind.TIMEOUT.value} ({exc})")
                continue
            except ModelUnavailableError as exc:
                logger.warning("Model %s unavailable: %s", model_id, exc)
                reasons.append(f"{model_id}: {ErrorKind.MODEL_UNAVAILABLE.value} ({exc})")
                continue
            except GenerationBackendError as exc:
                logger.warning("Model %s failed: %s", model_id, exc)
                reasons.append(f"{model_id}: {ErrorKind.BACKEND_ERROR.value} ({exc})")
                continue

            result = self._interpret(model_id, response)
            if result is None:
                reasons.append(f"{model_id}: {ErrorKind.BACKEND_ERROR.value} (empty response)")
                continue
            return result

        detail = "; ".join(reasons) if reasons else "no candidate models available"
        logger.error("All candidate models failed: %s", detail)
        return CompletionFailure(error=ErrorKind.ALL_MODELS_EXHAUSTED, detail=detail)

    def _call_with_deadline(self, model_id: str, request: CompletionRequest) -> GenerationResponse:
        # 截止时间包含在线程池中排队的时间；排队中的调用超时后会被取消
        future = self.executor.submit(self.backend.generate, model_id, request)
        try:
            return future.result(timeout=request.timeout_ms / 1000)
        except FutureTimeoutError as exc:
            future.cancel()
            raise BackendTimeoutError(
                f"no response within {request.timeout_ms}ms"
            ) from exc

    def _interpret(self, model_id: str, response: GenerationResponse) -> Optional[CompletionResult]:
        text = response.text or ""
        finish_reason = (response.finish_reason or "").upper()

        if finish_reason in TOKEN_LIMIT_REASONS:
            if not text.strip():
                logger.warning("Model %s hit the token limit before producing text", model_id)
                return CompletionFailure(
                    error=ErrorKind.TOKEN_LIMIT,
                    detail="response truncated by token limit with no content",
                    model=model_id,
                )
            return self._salvage(model_id, text)

        if not text.strip():
            if finish_reason in SAFETY_REASONS:
                return CompletionFailure(
                    error=ErrorKind.SAFETY_REJECTION,
                    detail=f"finish reason {finish_reason}",
                    model=model_id,
                )
            logger.warning("Model %s returned empty text (finish reason %s)", model_id, finish_reason or "unknown")
            return None

        return CompletionSuccess(text=text, model=model_id)

    def _salvage(self, model_id: str, text: str) -> CompletionResult:
        try:
            json.loads(text)
        except (json.JSONDecodeError, ValueError):
            pass
        else:
            return CompletionSuccess(text=text, model=model_id)

        repaired = repair_truncated_json(text)
        if repaired is not None:
            logger.info("Model %s output truncated, repaired JSON structure", model_id)
            return CompletionPartial(text=repaired, model=model_id)

        logger.info("Model %s output truncated, returning text with note", model_id)
        return CompletionPartial(text=text + TRUNCATION_NOTE, model=model_id)
