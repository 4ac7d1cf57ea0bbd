"""生成后端调用相关的数据契约。

``CompletionResult`` 是带标签的联合类型，调用方通过 ``kind`` 判别，
预期内的 AI 失败不会以异常形式抛出。
"""

import enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, enum.Enum):
    """生成失败的分类。"""

    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    MODEL_UNAVAILABLE = "model_unavailable"
    TOKEN_LIMIT = "token_limit"
    SAFETY_REJECTION = "safety_rejection"
    ALL_MODELS_EXHAUSTED = "all_models_exhausted"
    BACKEND_ERROR = "backend_error"


class CapabilityClass(str, enum.Enum):
    GENERATION = "generation"
    EMBEDDING = "embedding"
    OTHER = "other"


class ModelCandidate(BaseModel):
    """后端列出的一个模型。"""

    name: str
    capability_class: CapabilityClass = CapabilityClass.OTHER


class CompletionRequest(BaseModel):
    """一次生成请求，创建后不可修改。

    空的 ``system_instruction`` / ``user_content`` 在此处允许构造，
    由客户端统一返回 Configuration 失败。
    """

    model_config = ConfigDict(frozen=True)

    system_instruction: str
    user_content: str
    temperature: float = Field(default=0.5, ge=0, le=1)
    max_output_tokens: int = Field(default=6000, gt=0)
    timeout_ms: int = Field(default=60000, gt=0)


class GenerationResponse(BaseModel):
    """后端单次 generate 调用的原始结果，任何字段都可能缺失。"""

    text: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[dict] = None


class CompletionSuccess(BaseModel):
    kind: Literal["success"] = "success"
    text: str
    model: Optional[str] = None


class CompletionPartial(BaseModel):
    """因 token 上限截断、经修复或附加提示后的结果。"""

    kind: Literal["partial"] = "partial"
    text: str
    reason: Literal["token-limit"] = "token-limit"
    model: Optional[str] = None


class CompletionFailure(BaseModel):
    kind: Literal["failure"] = "failure"
    error: ErrorKind
    detail: str = ""
    model: Optional[str] = None


CompletionResult = Union[CompletionSuccess, CompletionPartial, CompletionFailure]
