"""持久化访问层。

评测流水线与 API 只通过 ``GradingStore`` 读写数据。约定：
- ``create_*`` / ``delete_*`` / ``publish_*`` / ``update_*`` 方法自行提交事务；
- ``add_*`` / ``upsert_*`` / ``increment_*`` 只 flush，由调用方决定何时提交，
  以便评测报告、知识点画像与练习题在同一事务中落库。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from codegrader.models import (
    Contest,
    Evaluation,
    ImportantTopic,
    PracticeQuestionType,
    PracticeTask,
    PracticeTaskStatus,
    Question,
    Student,
    Subject,
    SubjectScore,
    Submission,
    SubmissionStatus,
    TopicAnalytics,
    composite_key,
)
from codegrader.schemas.evaluation import EvaluationReport, PracticeQuestion
from codegrader.services.scoring import merge_topic_analytics, normalize_subject_score, normalize_topic_name
from codegrader.utils.uploads import parse_test_cases

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """请求的记录不存在。"""


def _require(record, label: str, key: Any):
    if record is None:
        raise NotFoundError(f"{label} {key} not found")
    return record


class GradingStore:
    """学科、比赛、提交、评测与画像数据的读写。"""

    # ------------------------------------------------------------------
    # 学科与比赛
    # ------------------------------------------------------------------
    def create_subject(self, db: Session, code: str, name: str) -> Subject:
        subject = Subject(code=code.strip().lower(), name=name.strip())
        db.add(subject)
        db.commit()
        db.refresh(subject)
        return subject

    def list_subjects(self, db: Session) -> List[Subject]:
        return db.query(Subject).order_by(Subject.id).all()

    def get_subject(self, db: Session, subject_id: int) -> Subject:
        return _require(db.get(Subject, subject_id), "subject", subject_id)

    def create_contest(
        self,
        db: Session,
        subject_id: int,
        title: str,
        description: Optional[str],
        questions: Sequence[Mapping[str, Any]],
    ) -> Contest:
        """创建比赛及其题目；题号缺失时按顺序补齐。"""

        self.get_subject(db, subject_id)
        contest = Contest(subject_id=subject_id, title=title.strip(), description=description)
        seen_numbers = set()
        for index, item in enumerate(questions, start=1):
            number = int(item.get("question_number") or index)
            if number in seen_numbers:
                raise ValueError(f"duplicate question number {number}")
            seen_numbers.add(number)
            contest.questions.append(
                Question(
                    question_number=number,
                    title=str(item.get("title") or "").strip(),
                    description=item.get("description"),
                    reference_solution=item.get("reference_solution"),
                    test_cases_json=parse_test_cases(item.get("test_cases")),
                    topics_json=[
                        normalize_topic_name(topic)
                        for topic in item.get("topics") or []
                        if normalize_topic_name(topic)
                    ],
                )
            )
        db.add(contest)
        db.commit()
        db.refresh(contest)
        return contest

    def list_contests(self, db: Session, subject_id: Optional[int] = None) -> List[Contest]:
        query = db.query(Contest)
        if subject_id is not None:
            query = query.filter(Contest.subject_id == subject_id)
        return query.order_by(Contest.id).all()

    def get_contest(self, db: Session, contest_id: int) -> Contest:
        return _require(db.get(Contest, contest_id), "contest", contest_id)

    def delete_contest(self, db: Session, contest_id: int) -> Dict[str, int]:
        """删除比赛，题目、提交与评测报告随之级联删除。"""

        contest = self.get_contest(db, contest_id)
        submissions = db.query(Submission).filter(Submission.contest_id == contest_id).all()
        counts = {
            "questions": len(contest.questions),
            "submissions": len(submissions),
            "evaluations": sum(len(item.evaluations) for item in submissions),
        }
        # 历史练习任务保留，只解除与比赛的关联
        db.query(PracticeTask).filter(PracticeTask.contest_id == contest_id).update(
            {PracticeTask.contest_id: None}, synchronize_session=False
        )
        db.delete(contest)
        db.commit()
        logger.info("Deleted contest %s: %s", contest_id, counts)
        return counts

    def get_question(self, db: Session, question_id: int) -> Question:
        return _require(db.get(Question, question_id), "question", question_id)

    def get_question_by_number(self, db: Session, contest_id: int, number: int) -> Optional[Question]:
        return (
            db.query(Question)
            .filter(Question.contest_id == contest_id, Question.question_number == number)
            .first()
        )

    def set_question_topics(self, db: Session, question_id: int, topics: Sequence[str]) -> Question:
        question = self.get_question(db, question_id)
        question.topics_json = list(topics)
        db.flush()
        return question

    # ------------------------------------------------------------------
    # 学生
    # ------------------------------------------------------------------
    def create_student(self, db: Session, name: str, email: str) -> Student:
        email = email.strip().lower()
        if self.find_student_by_email(db, email) is not None:
            raise ValueError(f"student with email {email} already exists")
        student = Student(name=name.strip(), email=email)
        db.add(student)
        db.commit()
        db.refresh(student)
        return student

    def list_students(self, db: Session) -> List[Student]:
        return db.query(Student).order_by(Student.id).all()

    def get_student(self, db: Session, student_id: int) -> Student:
        return _require(db.get(Student, student_id), "student", student_id)

    def find_student_by_email(self, db: Session, email: str) -> Optional[Student]:
        return db.query(Student).filter(Student.email == email.strip().lower()).first()

    # ------------------------------------------------------------------
    # 提交与评测报告
    # ------------------------------------------------------------------
    def add_submission(
        self,
        db: Session,
        contest_id: int,
        question_id: int,
        student_id: int,
        code: str,
        language: str = "java",
        retry_of_id: Optional[int] = None,
    ) -> Submission:
        submission = Submission(
            contest_id=contest_id,
            question_id=question_id,
            student_id=student_id,
            code=code,
            language=language,
            status=SubmissionStatus.PENDING,
            retry_of_id=retry_of_id,
        )
        db.add(submission)
        db.flush()
        return submission

    def get_submission(self, db: Session, submission_id: int) -> Submission:
        return _require(db.get(Submission, submission_id), "submission", submission_id)

    def list_submissions(
        self,
        db: Session,
        contest_id: Optional[int] = None,
        student_id: Optional[int] = None,
        status: Optional[SubmissionStatus] = None,
    ) -> List[Submission]:
        query = db.query(Submission)
        if contest_id is not None:
            query = query.filter(Submission.contest_id == contest_id)
        if student_id is not None:
            query = query.filter(Submission.student_id == student_id)
        if status is not None:
            query = query.filter(Submission.status == status)
        return query.order_by(Submission.id).all()

    def add_evaluation(self, db: Session, submission: Submission, report: EvaluationReport) -> Evaluation:
        evaluation = Evaluation(
            submission_id=submission.id,
            strengths_json=list(report.strengths),
            weaknesses_json=list(report.weaknesses),
            suggestions_json=list(report.suggestions),
            topic_scores_json=dict(report.topic_scores),
            overall_score=report.overall_score,
            detailed_analysis=report.detailed_analysis,
            practice_questions_json=[item.model_dump() for item in report.practice_questions],
            raw_response=report.raw_text or None,
        )
        db.add(evaluation)
        db.flush()
        return evaluation

    def latest_evaluation(self, db: Session, submission_id: int) -> Optional[Evaluation]:
        return (
            db.query(Evaluation)
            .filter(Evaluation.submission_id == submission_id)
            .order_by(Evaluation.id.desc())
            .first()
        )

    def evaluation_history(
        self,
        db: Session,
        student_id: int,
        subject_id: Optional[int] = None,
    ) -> List[Tuple[Submission, Evaluation]]:
        """学生已评测提交及其最新报告，按提交时间排序。"""

        query = (
            db.query(Submission)
            .join(Contest, Submission.contest_id == Contest.id)
            .filter(
                Submission.student_id == student_id,
                Submission.status == SubmissionStatus.EVALUATED,
            )
        )
        if subject_id is not None:
            query = query.filter(Contest.subject_id == subject_id)

        history: List[Tuple[Submission, Evaluation]] = []
        for submission in query.order_by(Submission.submitted_at, Submission.id).all():
            evaluation = self.latest_evaluation(db, submission.id)
            if evaluation is not None:
                history.append((submission, evaluation))
        return history

    # ------------------------------------------------------------------
    # 知识点画像
    # ------------------------------------------------------------------
    def get_topic_analytics(self, db: Session, student_id: int, subject_id: int) -> Optional[TopicAnalytics]:
        return db.get(TopicAnalytics, composite_key(student_id, subject_id))

    def list_topic_analytics(self, db: Session, student_id: int) -> List[TopicAnalytics]:
        return db.query(TopicAnalytics).filter(TopicAnalytics.student_id == student_id).all()

    def upsert_topic_analytics(
        self,
        db: Session,
        student_id: int,
        subject_id: int,
        updates: Mapping[str, Any],
    ) -> TopicAnalytics:
        record = self.get_topic_analytics(db, student_id, subject_id)
        if record is None:
            record = TopicAnalytics(
                id=composite_key(student_id, subject_id),
                student_id=student_id,
                subject_id=subject_id,
                topics_json={},
            )
            db.add(record)
        # JSON 列需要整体赋值才会被识别为变更
        record.topics_json = merge_topic_analytics(record.topics_json, updates)
        db.flush()
        return record

    # ------------------------------------------------------------------
    # 学科综合分
    # ------------------------------------------------------------------
    def publish_subject_score(
        self,
        db: Session,
        student_id: int,
        subject_id: int,
        contest_entries: Iterable[Mapping[str, Any]],
        mock_score: Any,
    ) -> SubjectScore:
        """整体重算并覆盖学科综合分，重复发布结果一致。"""

        self.get_student(db, student_id)
        self.get_subject(db, subject_id)
        entries = []
        for entry in contest_entries:
            item = dict(entry)
            if not item.get("contest_title") and item.get("contest_id") is not None:
                contest = db.get(Contest, item["contest_id"])
                item["contest_title"] = contest.title if contest is not None else ""
            entries.append(item)

        result = normalize_subject_score(entries, mock_score)
        key = composite_key(student_id, subject_id)
        record = db.get(SubjectScore, key)
        if record is None:
            record = SubjectScore(id=key, student_id=student_id, subject_id=subject_id)
            db.add(record)
        record.contests_json = [item.model_dump() for item in result.entries]
        record.contest_normalized_total = result.contest_normalized_total
        record.contest_max_possible = result.contest_max_possible
        record.contest_scaled_40 = result.contest_scaled_40
        record.mock_score = result.mock_score
        record.total = result.total
        db.commit()
        db.refresh(record)
        return record

    def list_subject_scores(self, db: Session, student_id: int) -> List[SubjectScore]:
        return db.query(SubjectScore).filter(SubjectScore.student_id == student_id).all()

    # ------------------------------------------------------------------
    # 练习任务
    # ------------------------------------------------------------------
    def add_practice_tasks(
        self,
        db: Session,
        student_id: int,
        subject_id: int,
        questions: Sequence[PracticeQuestion],
        question_type: PracticeQuestionType = PracticeQuestionType.CURRENT,
        contest_id: Optional[int] = None,
    ) -> List[PracticeTask]:
        tasks = []
        for question in questions:
            task = PracticeTask(
                student_id=student_id,
                subject_id=subject_id,
                contest_id=contest_id,
                question_type=question_type,
                title=question.title,
                description=question.description,
                code_template=question.code_template,
                test_cases_json=[case.model_dump() for case in question.test_cases],
                topics_json=list(question.topics),
                difficulty=question.difficulty,
                status=PracticeTaskStatus.PENDING,
            )
            db.add(task)
            tasks.append(task)
        db.flush()
        return tasks

    def list_practice_tasks(
        self,
        db: Session,
        student_id: int,
        subject_id: Optional[int] = None,
        status: Optional[PracticeTaskStatus] = None,
    ) -> List[PracticeTask]:
        query = db.query(PracticeTask).filter(PracticeTask.student_id == student_id)
        if subject_id is not None:
            query = query.filter(PracticeTask.subject_id == subject_id)
        if status is not None:
            query = query.filter(PracticeTask.status == status)
        return query.order_by(PracticeTask.id).all()

    def update_practice_task_status(
        self,
        db: Session,
        task_id: int,
        status: PracticeTaskStatus,
        submission_code: Optional[str] = None,
    ) -> PracticeTask:
        task = _require(db.get(PracticeTask, task_id), "practice task", task_id)
        if task.status == PracticeTaskStatus.COMPLETED and status != PracticeTaskStatus.COMPLETED:
            raise ValueError("completed practice tasks cannot be reopened")
        task.status = status
        if submission_code is not None:
            task.submission_code = submission_code
        if status == PracticeTaskStatus.COMPLETED and task.completed_at is None:
            task.completed_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(task)
        return task

    # ------------------------------------------------------------------
    # 全局高频知识点
    # ------------------------------------------------------------------
    def increment_important_topics(self, db: Session, topics: Iterable[str]) -> None:
        for name in {normalize_topic_name(topic) for topic in topics}:
            if not name:
                continue
            record = db.get(ImportantTopic, name)
            if record is None:
                record = ImportantTopic(topic=name, count=0)
                db.add(record)
            record.count += 1
        db.flush()

    def list_important_topics(self, db: Session, limit: Optional[int] = None) -> List[ImportantTopic]:
        query = db.query(ImportantTopic).order_by(ImportantTopic.count.desc(), ImportantTopic.topic)
        if limit:
            query = query.limit(limit)
        return query.all()
