"""提交评测流水线。

单个提交的处理顺序::

    submitted → evaluating → 生成报告 → 写入报告/知识点画像/练习题 → evaluated

任一步骤失败时回滚未提交的数据，把提交标记为 error 并保留错误信息，
然后重新抛出异常。提交的代码始终保留。
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from codegrader.config import Settings
from codegrader.models import (
    Evaluation,
    PracticeQuestionType,
    PracticeTask,
    Submission,
    SubmissionStatus,
)
from codegrader.schemas.evaluation import HistoricalReport
from codegrader.services.evaluator import MAX_PRACTICE_QUESTIONS, EvaluationOrchestrator
from codegrader.services.lifecycle import TERMINAL_STATES, SubmissionLifecycle
from codegrader.services.scoring import build_student_history, normalize_topic_name
from codegrader.services.store import GradingStore, NotFoundError

logger = logging.getLogger(__name__)


class BulkSubmissionItem(BaseModel):
    """批量上传中的一条提交，学生可通过 id 或邮箱定位。"""

    student_id: Optional[int] = None
    student_email: Optional[str] = None
    question_number: int
    code: str = ""


class BulkSubmissionResult(BaseModel):
    accepted: List[int] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class EvaluationPipeline:
    """串联状态机、评测编排与持久化。"""

    def __init__(
        self,
        store: GradingStore,
        lifecycle: SubmissionLifecycle,
        orchestrator: EvaluationOrchestrator,
        settings: Settings,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.orchestrator = orchestrator
        self.settings = settings

    # ------------------------------------------------------------------
    # 提交
    # ------------------------------------------------------------------
    def create_submission(
        self,
        db: Session,
        contest_id: int,
        question_id: int,
        student_id: int,
        code: str,
        language: str = "java",
        retry_of_id: Optional[int] = None,
    ) -> Submission:
        if not code or not code.strip():
            raise ValueError("code is required")
        self.store.get_contest(db, contest_id)
        question = self.store.get_question(db, question_id)
        if question.contest_id != contest_id:
            raise ValueError(f"question {question_id} does not belong to contest {contest_id}")
        self.store.get_student(db, student_id)

        submission = self.store.add_submission(
            db, contest_id, question_id, student_id, code.strip(), language, retry_of_id
        )
        db.commit()
        return self.lifecycle.transition(db, submission, SubmissionStatus.SUBMITTED)

    def submit_bulk(
        self,
        db: Session,
        contest_id: int,
        items: Sequence[BulkSubmissionItem],
    ) -> BulkSubmissionResult:
        """逐条创建提交，错误按条收集，不中断整个批次。"""

        self.store.get_contest(db, contest_id)
        result = BulkSubmissionResult()
        for item in items:
            label = f"{item.student_email or item.student_id} - Q{item.question_number}"
            try:
                student = None
                if item.student_id is not None:
                    try:
                        student = self.store.get_student(db, item.student_id)
                    except NotFoundError:
                        student = None
                if student is None and item.student_email:
                    student = self.store.find_student_by_email(db, item.student_email)
                if student is None:
                    raise ValueError(f"student not found: {item.student_email or item.student_id}")
                question = self.store.get_question_by_number(db, contest_id, item.question_number)
                if question is None:
                    raise ValueError(f"question {item.question_number} not found in contest")
                if not item.code.strip():
                    raise ValueError(f"no code provided for question {item.question_number}")
                submission = self.create_submission(db, contest_id, question.id, student.id, item.code)
            except (LookupError, ValueError) as exc:
                db.rollback()
                result.errors.append(f"{label}: {exc}")
                continue
            result.accepted.append(submission.id)
        logger.info(
            "Bulk upload for contest %s: %d accepted, %d rejected",
            contest_id,
            len(result.accepted),
            len(result.errors),
        )
        return result

    def retry(self, db: Session, submission_id: int) -> Submission:
        """为已结束的提交创建一份相同代码的新提交，原提交保持终态。"""

        original = self.store.get_submission(db, submission_id)
        if original.status not in TERMINAL_STATES:
            raise ValueError(
                f"submission {submission_id} is {original.status.value}; only finished submissions can be retried"
            )
        return self.create_submission(
            db,
            original.contest_id,
            original.question_id,
            original.student_id,
            original.code,
            original.language,
            retry_of_id=original.id,
        )

    def reconcile(self, db: Session) -> List[int]:
        threshold = timedelta(minutes=self.settings.stale_evaluation_minutes)
        return self.lifecycle.reconcile_stale(db, threshold)

    # ------------------------------------------------------------------
    # 评测
    # ------------------------------------------------------------------
    def evaluate_submission(self, db: Session, submission_id: int) -> Evaluation:
        submission = self.store.get_submission(db, submission_id)
        self.lifecycle.transition(db, submission, SubmissionStatus.EVALUATING)

        report = None
        try:
            question = self.store.get_question(db, submission.question_id)
            contest = self.store.get_contest(db, submission.contest_id)
            subject_id = contest.subject_id

            analytics = self.store.get_topic_analytics(db, submission.student_id, subject_id)
            past_scores = [
                evaluation.overall_score
                for _, evaluation in self.store.evaluation_history(db, submission.student_id, subject_id)
            ]
            history = build_student_history(analytics.topics_json if analytics else {}, past_scores)

            report = self.orchestrator.evaluate(
                student_code=submission.code,
                reference_solution=question.reference_solution or "",
                problem_statement=question.description or question.title,
                test_cases=question.test_cases_json or [],
                student_history=history,
            )

            evaluation = self.store.add_evaluation(db, submission, report)
            self.store.upsert_topic_analytics(
                db,
                submission.student_id,
                subject_id,
                self.orchestrator.topic_updates(report),
            )
            questions = report.practice_questions[:MAX_PRACTICE_QUESTIONS]
            if questions:
                self.store.add_practice_tasks(
                    db,
                    submission.student_id,
                    subject_id,
                    questions,
                    PracticeQuestionType.CURRENT,
                    contest_id=contest.id,
                )
            # 报告与画像随 evaluated 状态一起提交
            self.lifecycle.transition(db, submission, SubmissionStatus.EVALUATED)
        except Exception as exc:
            db.rollback()
            detail = f"{exc.__class__.__name__}: {exc}"
            logger.error("Evaluation of submission %s failed: %s", submission_id, detail)
            raw_response = report.raw_text if report is not None else None
            self.lifecycle.fail(db, submission, detail, raw_response=raw_response)
            raise

        db.refresh(evaluation)
        logger.info(
            "Submission %s evaluated: overall=%.1f topics=%d practice=%d",
            submission_id,
            evaluation.overall_score,
            len(report.topic_scores),
            len(questions),
        )
        return evaluation

    def run_in_background(self, session_factory: sessionmaker, submission_id: int) -> None:
        """后台任务入口：使用独立 Session，异常只记录日志。"""

        db = session_factory()
        try:
            self.evaluate_submission(db, submission_id)
        except Exception:
            logger.exception("Background evaluation of submission %s failed", submission_id)
        finally:
            db.close()

    def evaluate_many(self, session_factory: sessionmaker, submission_ids: Sequence[int]) -> None:
        """批量提交严格逐个评测。"""

        for submission_id in submission_ids:
            self.run_in_background(session_factory, submission_id)

    # ------------------------------------------------------------------
    # 比赛题目知识点
    # ------------------------------------------------------------------
    def analyze_contest_topics(self, session_factory: sessionmaker, contest_id: int) -> Dict[int, List[str]]:
        """逐题分析知识点，写入题目并累加全局知识点频次。"""

        analyzed: Dict[int, List[str]] = {}
        db = session_factory()
        try:
            contest = self.store.get_contest(db, contest_id)
            for question in list(contest.questions):
                topics = self.orchestrator.analyze_topics(
                    question.title,
                    question.description or "",
                    question.reference_solution or "",
                    question.test_cases_json or [],
                )
                if not topics:
                    continue
                try:
                    merged = list(question.topics_json or [])
                    merged.extend(topic for topic in topics if topic not in merged)
                    self.store.set_question_topics(db, question.id, merged)
                    self.store.increment_important_topics(db, topics)
                    db.commit()
                except Exception:
                    db.rollback()
                    logger.exception("Failed to store topics for question %s", question.id)
                    continue
                analyzed[question.id] = topics
        except Exception:
            logger.exception("Topic analysis for contest %s failed", contest_id)
        finally:
            db.close()
        return analyzed

    # ------------------------------------------------------------------
    # 历史画像
    # ------------------------------------------------------------------
    def _merged_topics(self, db: Session, student_id: int, subject_id: Optional[int]) -> Dict[str, Any]:
        if subject_id is not None:
            record = self.store.get_topic_analytics(db, student_id, subject_id)
            return dict(record.topics_json or {}) if record else {}
        topics: Dict[str, Any] = {}
        for record in self.store.list_topic_analytics(db, student_id):
            for name, entry in (record.topics_json or {}).items():
                topics.setdefault(normalize_topic_name(name), entry)
        return topics

    def generate_historical_practice(
        self,
        db: Session,
        student_id: int,
        subject_id: int,
        count: int = 5,
    ) -> List[PracticeTask]:
        self.store.get_student(db, student_id)
        self.store.get_subject(db, subject_id)
        topics = self._merged_topics(db, student_id, subject_id)
        past_scores = [
            evaluation.overall_score
            for _, evaluation in self.store.evaluation_history(db, student_id, subject_id)
        ]
        questions = self.orchestrator.generate_historical_practice_questions(topics, past_scores, count)
        tasks = self.store.add_practice_tasks(
            db, student_id, subject_id, questions, PracticeQuestionType.HISTORICAL
        )
        db.commit()
        return tasks

    def historical_report(
        self,
        db: Session,
        student_id: int,
        subject_id: Optional[int] = None,
    ) -> HistoricalReport:
        self.store.get_student(db, student_id)
        evaluations: List[Mapping[str, Any]] = [
            {
                "contest_title": submission.contest.title,
                "overall_score": evaluation.overall_score,
                "strengths": evaluation.strengths_json,
                "weaknesses": evaluation.weaknesses_json,
                "topic_scores": evaluation.topic_scores_json,
            }
            for submission, evaluation in self.store.evaluation_history(db, student_id, subject_id)
        ]
        topics = self._merged_topics(db, student_id, subject_id)
        return self.orchestrator.generate_historical_report(evaluations, topics)
