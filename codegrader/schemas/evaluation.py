"""评测报告、练习题与学生历史画像的数据契约。"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TestCase(BaseModel):
    """单个测试用例，比较时两端 trim。"""

    __test__ = False  # 避免被 pytest 当作测试类收集

    input: str = ""
    expected_output: str = ""


class PracticeQuestion(BaseModel):
    """AI 生成的练习题。"""

    title: str
    description: str = ""
    code_template: str = ""
    test_cases: List[TestCase] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    difficulty: str = "medium"


class StudentHistory(BaseModel):
    """提示词中使用的学生历史画像摘要。"""

    weak_topics: List[str] = Field(default_factory=list)
    strong_topics: List[str] = Field(default_factory=list)
    average_score: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return not (self.weak_topics or self.strong_topics)


class EvaluationReport(BaseModel):
    """规范化后的评测报告，所有字段始终有值。"""

    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    topic_scores: Dict[str, float] = Field(default_factory=dict)
    overall_score: float = Field(default=50.0, ge=0, le=100)
    detailed_analysis: str = ""
    practice_questions: List[PracticeQuestion] = Field(default_factory=list)
    raw_text: str = ""


class ExtractionFailure(BaseModel):
    """无法从文本中恢复出 JSON 时的结果。"""

    raw_text: str
    error_position: Optional[int] = None
    message: str = ""


class CodingQuestion(PracticeQuestion):
    """编程练习题生成接口的返回项。"""

    id: Optional[str] = None


class HistoricalReport(BaseModel):
    """学生历史学习报告。"""

    summary: str = ""
    merit_score: Dict[str, Any] = Field(default_factory=dict)
    trends: Dict[str, List[str]] = Field(default_factory=dict)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    contest_history: List[Dict[str, Any]] = Field(default_factory=list)
