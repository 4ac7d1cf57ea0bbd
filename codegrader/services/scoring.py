"""成绩引擎：学科综合分归一化与知识点画像合并。

本模块只包含纯函数，不访问数据库，持久化由 ``GradingStore`` 负责。
"""

from __future__ import annotations

import math
from numbers import Real
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from codegrader.models.enums import TopicStrength
from codegrader.schemas.evaluation import StudentHistory
from codegrader.schemas.scores import NormalizedContestEntry, SubjectScoreResult, TopicAnalyticsEntry

CONTEST_SCALE = 50.0
CONTEST_WEIGHT = 40.0
MOCK_WEIGHT = 60.0
DEFAULT_TOPIC_SCORE = 50.0
STRONG_THRESHOLD = 75.0
WEAK_THRESHOLD = 50.0


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def normalize_topic_name(topic: Any) -> str:
    """知识点名称统一为去除首尾空白的小写形式。"""

    if topic is None:
        return ""
    return str(topic).strip().lower()


def strength_for_score(score: float) -> TopicStrength:
    if score >= STRONG_THRESHOLD:
        return TopicStrength.STRONG
    if score < WEAK_THRESHOLD:
        return TopicStrength.WEAK
    return TopicStrength.MEDIUM


def normalize_subject_score(
    contest_entries: Iterable[Mapping[str, Any]],
    mock_score: Any = 0,
) -> SubjectScoreResult:
    """计算学科综合分。

    每场比赛按 ``raw / max × 50`` 折算并限制在 [0, 50]，满分或原始分
    不是有效数字、或满分不为正数的比赛被剔除；比赛部分按
    ``总和 / (场次 × 50) × 40`` 折算，模拟面试分限制在 [0, 60]。
    所有数值保留两位小数。
    """

    entries = []
    for entry in contest_entries or []:
        if not isinstance(entry, Mapping):
            continue
        raw = entry.get("raw_score")
        maximum = entry.get("max_score")
        if not (_is_number(raw) and _is_number(maximum)) or maximum <= 0:
            continue
        normalized = clamp(raw / maximum * CONTEST_SCALE, 0.0, CONTEST_SCALE)
        entries.append(
            NormalizedContestEntry(
                contest_id=entry.get("contest_id"),
                contest_title=entry.get("contest_title") or "",
                raw_score=round(float(raw), 2),
                max_score=round(float(maximum), 2),
                normalized_score=round(normalized, 2),
            )
        )

    normalized_total = sum(item.normalized_score for item in entries)
    max_possible = len(entries) * CONTEST_SCALE or 1.0
    scaled_40 = clamp(normalized_total / max_possible * CONTEST_WEIGHT, 0.0, CONTEST_WEIGHT)
    mock = clamp(float(mock_score), 0.0, MOCK_WEIGHT) if _is_number(mock_score) else 0.0
    total = clamp(scaled_40 + mock, 0.0, CONTEST_WEIGHT + MOCK_WEIGHT)

    return SubjectScoreResult(
        entries=entries,
        contest_normalized_total=round(normalized_total, 2),
        contest_max_possible=max_possible,
        contest_scaled_40=round(scaled_40, 2),
        mock_score=round(mock, 2),
        total=round(total, 2),
    )


def _update_score(update: Any) -> Optional[float]:
    if isinstance(update, Mapping):
        update = update.get("score")
    if _is_number(update):
        return clamp(float(update), 0.0, 100.0)
    return None


def merge_topic_analytics(
    existing: Optional[Mapping[str, Mapping[str, Any]]],
    updates: Mapping[str, Any],
) -> Dict[str, Dict[str, Any]]:
    """合并一次评测产生的知识点分数，返回新的画像字典。

    ``updates`` 的值可以是分数，也可以是包含 ``score`` 的字典。
    - 带分数的更新覆盖旧分数并重新推导强弱，``contest_count`` 加一；
    - 新知识点即使没有分数也会以默认 50 分写入；
    - 已存在且本次没有分数的知识点保持不变。
    调用方传入的 strength 会被忽略，强弱总是由分数推导。
    """

    merged: Dict[str, Dict[str, Any]] = {}
    for name, entry in (existing or {}).items():
        key = normalize_topic_name(name)
        if key and key not in merged:
            merged[key] = dict(entry)

    for name, update in (updates or {}).items():
        key = normalize_topic_name(name)
        if not key:
            continue
        score = _update_score(update)
        current = merged.get(key)
        if current is not None and score is None:
            continue
        if score is None:
            score = DEFAULT_TOPIC_SCORE
        previous_count = int((current or {}).get("contest_count") or 0)
        entry = TopicAnalyticsEntry(
            topic_name=key,
            score=score,
            strength=strength_for_score(score),
            contest_count=previous_count + 1,
        )
        merged[key] = entry.model_dump(mode="json", exclude={"topic_name"})
    return merged


def build_student_history(
    topics: Optional[Mapping[str, Mapping[str, Any]]],
    past_scores: Sequence[float] = (),
) -> StudentHistory:
    """由知识点画像推导薄弱与擅长知识点，供评测提示词使用。"""

    weak, strong = [], []
    for name, entry in (topics or {}).items():
        score = entry.get("score")
        strength = entry.get("strength")
        if strength == TopicStrength.WEAK.value or (_is_number(score) and score < WEAK_THRESHOLD):
            weak.append(name)
        elif strength == TopicStrength.STRONG.value or (_is_number(score) and score >= STRONG_THRESHOLD):
            strong.append(name)

    numeric = [float(s) for s in past_scores if _is_number(s)]
    average = round(sum(numeric) / len(numeric), 2) if numeric else None
    return StudentHistory(weak_topics=weak, strong_topics=strong, average_score=average)
