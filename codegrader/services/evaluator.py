"""评测编排：构造提示词、调用生成客户端、解析并规范化结果。"""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from codegrader.config import Settings
from codegrader.schemas.completion import CompletionFailure, CompletionRequest
from codegrader.schemas.evaluation import (
    CodingQuestion,
    EvaluationReport,
    ExtractionFailure,
    HistoricalReport,
    PracticeQuestion,
    StudentHistory,
    TestCase,
)
from codegrader.services import prompts
from codegrader.services.completion import ResilientCompletionClient
from codegrader.services.extraction import StructuredResponseExtractor
from codegrader.services.scoring import build_student_history, normalize_topic_name

logger = logging.getLogger(__name__)

DEFAULT_OVERALL_SCORE = 50.0
MAX_PRACTICE_QUESTIONS = 10
MAX_QUESTION_TOPICS = 5
CODING_QUESTION_COUNT = 5
DIFFICULTIES = ("easy", "medium", "hard")


class EvaluationFailedError(RuntimeError):
    """生成客户端返回失败结果，无法产出报告。"""

    def __init__(self, failure: CompletionFailure) -> None:
        super().__init__(f"{failure.error.value}: {failure.detail}")
        self.failure = failure


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _clamp_score(value: float) -> float:
    return max(0.0, min(100.0, value))


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [
        str(item).strip()
        for item in value
        if isinstance(item, (str, int, float)) and not isinstance(item, bool) and str(item).strip()
    ]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _coerce_test_cases(value: Any) -> List[TestCase]:
    cases: List[TestCase] = []
    if not isinstance(value, list):
        return cases
    for item in value:
        if not isinstance(item, Mapping):
            continue
        expected = item.get("expectedOutput", item.get("expected_output", item.get("output", "")))
        cases.append(TestCase(input=_text(item.get("input", "")), expected_output=_text(expected)))
    return cases


def _coerce_question(item: Any, model=PracticeQuestion) -> Optional[PracticeQuestion]:
    if not isinstance(item, Mapping):
        return None
    title = _text(item.get("title")).strip()
    if not title:
        return None
    difficulty = _text(item.get("difficulty")).strip().lower()
    topics = []
    for topic in _string_list(item.get("topics")):
        name = normalize_topic_name(topic)
        if name and name not in topics:
            topics.append(name)
    fields = dict(
        title=title,
        description=_text(item.get("description")),
        code_template=_text(item.get("codeTemplate", item.get("code_template"))),
        test_cases=_coerce_test_cases(item.get("testCases", item.get("test_cases"))),
        topics=topics,
        difficulty=difficulty if difficulty in DIFFICULTIES else "medium",
    )
    if model is CodingQuestion and item.get("id") is not None:
        fields["id"] = _text(item.get("id"))
    return model(**fields)


def _coerce_questions(value: Any, limit: int, model=PracticeQuestion) -> List[PracticeQuestion]:
    if isinstance(value, Mapping):
        value = value.get("questions", value.get("practiceQuestions"))
    if not isinstance(value, list):
        return []
    questions = []
    for item in value:
        question = _coerce_question(item, model)
        if question is not None:
            questions.append(question)
        if len(questions) >= limit:
            break
    return questions


class EvaluationOrchestrator:
    """评测流程编排器。

    - ``evaluate``：代码评测，抽取失败时返回保留原文的默认报告；
    - ``analyze_topics``：题目知识点分析，任何失败都返回空列表；
    - 其他生成接口用于历史练习、学习报告与编程练习题。
    生成客户端返回失败结果时抛出 ``EvaluationFailedError``，由调用方决定如何落库。
    """

    def __init__(
        self,
        client: ResilientCompletionClient,
        settings: Settings,
        extractor: Optional[StructuredResponseExtractor] = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.extractor = extractor or StructuredResponseExtractor()

    def _request(self, system_prompt: str, user_prompt: str, **overrides: Any) -> CompletionRequest:
        params = {
            "temperature": self.settings.evaluation_temperature,
            "max_output_tokens": self.settings.evaluation_max_tokens,
            "timeout_ms": self.settings.evaluation_timeout_ms,
        }
        params.update(overrides)
        return CompletionRequest(system_instruction=system_prompt, user_content=user_prompt, **params)

    def _generate(self, request: CompletionRequest) -> str:
        result = self.client.complete(request)
        if isinstance(result, CompletionFailure):
            raise EvaluationFailedError(result)
        if result.kind == "partial":
            logger.info("Using partial generation result from %s", result.model)
        return result.text

    # ------------------------------------------------------------------
    # 代码评测
    # ------------------------------------------------------------------
    def evaluate(
        self,
        student_code: str,
        reference_solution: str,
        problem_statement: str,
        test_cases: Optional[Sequence[Mapping[str, Any]]] = None,
        student_history: Optional[StudentHistory] = None,
    ) -> EvaluationReport:
        system_prompt, user_prompt = prompts.evaluation_prompts(
            student_code, reference_solution, problem_statement, test_cases, student_history
        )
        text = self._generate(self._request(system_prompt, user_prompt))

        data = self.extractor.extract(text)
        if isinstance(data, ExtractionFailure) or not isinstance(data, Mapping):
            logger.warning("Evaluation response was not a JSON object, using default report")
            return EvaluationReport(detailed_analysis=text, raw_text=text)
        return self.normalize_report(data, text)

    @staticmethod
    def normalize_report(data: Mapping[str, Any], raw_text: str = "") -> EvaluationReport:
        """对模型返回的每个字段做类型检查与修正。"""

        topic_scores: Dict[str, float] = {}
        raw_scores = data.get("topicScores", data.get("topic_scores"))
        if isinstance(raw_scores, Mapping):
            for name, value in raw_scores.items():
                key = normalize_topic_name(name)
                score = _as_number(value)
                if key and score is not None:
                    topic_scores[key] = _clamp_score(score)

        overall = _as_number(data.get("overallScore", data.get("overall_score")))
        analysis = data.get("detailedAnalysis", data.get("detailed_analysis"))

        return EvaluationReport(
            strengths=_string_list(data.get("strengths")),
            weaknesses=_string_list(data.get("weaknesses")),
            suggestions=_string_list(data.get("suggestions")),
            topic_scores=topic_scores,
            overall_score=_clamp_score(overall) if overall is not None else DEFAULT_OVERALL_SCORE,
            detailed_analysis=analysis if isinstance(analysis, str) and analysis.strip() else raw_text,
            practice_questions=_coerce_questions(
                data.get("practiceQuestions", data.get("practice_questions")), MAX_PRACTICE_QUESTIONS
            ),
            raw_text=raw_text,
        )

    @staticmethod
    def topic_updates(report: EvaluationReport) -> Dict[str, float]:
        """报告中的知识点分数，作为画像合并的输入。"""

        return dict(report.topic_scores)

    # ------------------------------------------------------------------
    # 题目知识点分析
    # ------------------------------------------------------------------
    def analyze_topics(
        self,
        title: str,
        description: str,
        reference_solution: str,
        test_cases: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> List[str]:
        system_prompt, user_prompt = prompts.topic_analysis_prompts(
            title, description, reference_solution, test_cases
        )
        request = self._request(
            system_prompt,
            user_prompt,
            temperature=0.3,
            max_output_tokens=self.settings.topic_analysis_max_tokens,
            timeout_ms=self.settings.topic_analysis_timeout_ms,
        )
        try:
            text = self._generate(request)
        except EvaluationFailedError as exc:
            logger.warning("Topic analysis failed for %r: %s", title, exc)
            return []

        data = self.extractor.extract(text)
        if isinstance(data, ExtractionFailure):
            return []
        if isinstance(data, Mapping):
            data = data.get("topics", [])
        if isinstance(data, str):
            data = [data]
        if not isinstance(data, list):
            return []

        topics: List[str] = []
        for item in data:
            if not isinstance(item, str):
                continue
            name = normalize_topic_name(item)
            if name and name not in topics:
                topics.append(name)
        return topics[:MAX_QUESTION_TOPICS]

    # ------------------------------------------------------------------
    # 基于历史画像的生成
    # ------------------------------------------------------------------
    def generate_historical_practice_questions(
        self,
        topics: Optional[Mapping[str, Mapping[str, Any]]],
        past_scores: Sequence[float] = (),
        count: int = 5,
    ) -> List[PracticeQuestion]:
        """按历史画像生成练习题；失败时返回空列表。"""

        count = max(1, min(count, MAX_PRACTICE_QUESTIONS))
        history = build_student_history(topics, past_scores)
        system_prompt, user_prompt = prompts.historical_practice_prompts(
            history.weak_topics, history.strong_topics, [float(s) for s in past_scores], count
        )
        try:
            text = self._generate(self._request(system_prompt, user_prompt, temperature=0.6))
        except EvaluationFailedError as exc:
            logger.warning("Historical practice generation failed: %s", exc)
            return []

        data = self.extractor.extract(text)
        if isinstance(data, ExtractionFailure):
            return []
        return _coerce_questions(data, count)

    def generate_historical_report(
        self,
        evaluations: Sequence[Mapping[str, Any]],
        topics: Optional[Mapping[str, Any]],
    ) -> HistoricalReport:
        summary = [
            {
                "contest": item.get("contest_title") or f"Contest {index}",
                "score": item.get("overall_score") or 0,
                "strengths": list(item.get("strengths") or []),
                "weaknesses": list(item.get("weaknesses") or []),
                "topics": list((item.get("topic_scores") or {}).keys()),
            }
            for index, item in enumerate(evaluations, start=1)
        ]
        system_prompt, user_prompt = prompts.historical_report_prompts(summary, topics or {})
        text = self._generate(self._request(system_prompt, user_prompt))

        data = self.extractor.extract(text)
        if isinstance(data, ExtractionFailure) or not isinstance(data, Mapping):
            return HistoricalReport(summary=text)

        trends: Dict[str, List[str]] = {}
        raw_trends = data.get("trends")
        if isinstance(raw_trends, Mapping):
            trends = {str(key): _string_list(value) for key, value in raw_trends.items()}

        merit = data.get("meritScore", data.get("vedamMeritScore"))
        history = data.get("contestHistory")
        if isinstance(history, str):
            history = [{"note": history}] if history.strip() else []
        elif isinstance(history, list):
            history = [item for item in history if isinstance(item, Mapping)]
        else:
            history = []

        return HistoricalReport(
            summary=_text(data.get("summary")) or text,
            merit_score=dict(merit) if isinstance(merit, Mapping) else {},
            trends=trends,
            strengths=_string_list(data.get("strengths")),
            weaknesses=_string_list(data.get("weaknesses")),
            recommendations=_string_list(data.get("recommendations")),
            next_steps=_string_list(data.get("nextSteps", data.get("next_steps"))),
            contest_history=[dict(item) for item in history],
        )

    def generate_coding_questions(self, topics: str, difficulty: str = "medium") -> List[CodingQuestion]:
        """生成 5 道编程练习题，每题 3 个测试用例。

        无法解析时抛出 ``ValueError``，生成失败时抛出 ``EvaluationFailedError``。
        """

        difficulty = difficulty.lower() if difficulty and difficulty.lower() in DIFFICULTIES else "medium"
        system_prompt, user_prompt = prompts.coding_question_prompts(topics, difficulty)
        request = self._request(
            system_prompt,
            user_prompt,
            temperature=0.7,
            max_output_tokens=self.settings.generation_max_tokens,
            timeout_ms=self.settings.generation_timeout_ms,
        )
        text = self._generate(request)

        data = self.extractor.extract(text)
        if isinstance(data, ExtractionFailure):
            raise ValueError(f"could not parse coding questions at position {data.error_position}")
        questions = _coerce_questions(data, CODING_QUESTION_COUNT, model=CodingQuestion)
        if not questions:
            raise ValueError("no coding questions in generated response")
        return questions
