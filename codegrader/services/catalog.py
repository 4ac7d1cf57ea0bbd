"""模型目录：发现可用的生成模型并按偏好排序。"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from codegrader.schemas.completion import CapabilityClass

logger = logging.getLogger(__name__)

# 名称中包含这些片段的模型即使声明支持 generateContent 也不用于文本评测
EXCLUDED_VARIANTS = ("embedding", "imagen", "aqa", "robotics")


class ModelCatalog:
    """根据后端模型列表给出候选模型顺序。

    ``rank()`` 从不抛出异常：发现失败或没有合格模型时返回配置的回退列表。
    """

    def __init__(
        self,
        backend,
        preferred_models: Sequence[str],
        fallback_models: Sequence[str],
    ) -> None:
        self.backend = backend
        self.preferred_models = list(preferred_models)
        self.fallback_models = list(fallback_models)

    @staticmethod
    def is_eligible(name: str, capability_class: CapabilityClass) -> bool:
        if capability_class != CapabilityClass.GENERATION:
            return False
        lowered = name.lower()
        return not any(variant in lowered for variant in EXCLUDED_VARIANTS)

    def rank(self, limit: Optional[int] = None) -> List[str]:
        try:
            candidates = self.backend.list_models()
        except Exception as exc:
            logger.warning("Model discovery failed, using fallback list: %s", exc)
            return self._limit(self.fallback_models, limit)

        eligible: List[str] = []
        for candidate in candidates or []:
            if self.is_eligible(candidate.name, candidate.capability_class) and candidate.name not in eligible:
                eligible.append(candidate.name)

        if not eligible:
            logger.warning("No eligible generation models discovered, using fallback list")
            return self._limit(self.fallback_models, limit)

        ordered = [name for name in self.preferred_models if name in eligible]
        ordered.extend(name for name in eligible if name not in ordered)
        return self._limit(ordered, limit)

    @staticmethod
    def _limit(names: Sequence[str], limit: Optional[int]) -> List[str]:
        names = list(names)
        return names[:limit] if limit else names
