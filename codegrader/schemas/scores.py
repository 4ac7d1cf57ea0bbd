"""成绩归一化与知识点画像的数据契约。"""

from typing import List, Optional

from pydantic import BaseModel, Field

from codegrader.models.enums import TopicStrength


class NormalizedContestEntry(BaseModel):
    """单场比赛的原始分与 50 分制归一化分。"""

    contest_id: Optional[int] = None
    contest_title: str = ""
    raw_score: float
    max_score: float
    normalized_score: float = Field(ge=0, le=50)


class SubjectScoreResult(BaseModel):
    """学科综合分：比赛部分折算到 40 分，模拟面试最高 60 分。"""

    entries: List[NormalizedContestEntry] = Field(default_factory=list)
    contest_normalized_total: float = 0.0
    contest_max_possible: float = 1.0
    contest_scaled_40: float = Field(default=0.0, ge=0, le=40)
    mock_score: float = Field(default=0.0, ge=0, le=60)
    total: float = Field(default=0.0, ge=0, le=100)


class TopicAnalyticsEntry(BaseModel):
    topic_name: str
    score: float = Field(default=50.0, ge=0, le=100)
    strength: TopicStrength = TopicStrength.MEDIUM
    contest_count: int = Field(default=0, ge=0)
