import pytest

from codegrader.dependencies import build_pipeline
from codegrader.models import (
    Evaluation,
    ImportantTopic,
    PracticeQuestionType,
    PracticeTask,
    Question,
    Submission,
    SubmissionStatus,
)
from codegrader.services.ai import ModelUnavailableError
from codegrader.services.evaluator import EvaluationFailedError
from codegrader.services.pipeline import BulkSubmissionItem
from codegrader.services.store import NotFoundError

from conftest import EVALUATION_TEXT, FakeBackend, TestingSessionLocal


def _submit(pipeline, session, seeded, code="public class Main { }", question_index=0):
    return pipeline.create_submission(
        session,
        seeded["contest_id"],
        seeded["question_ids"][question_index],
        seeded["student_id"],
        code,
    )


def test_create_submission_starts_submitted(pipeline, session, seeded):
    submission = _submit(pipeline, session, seeded, code="  class A {}  ")
    assert submission.status == SubmissionStatus.SUBMITTED
    assert submission.code == "class A {}"


def test_create_submission_validates_inputs(pipeline, session, seeded):
    with pytest.raises(ValueError):
        _submit(pipeline, session, seeded, code="   ")
    with pytest.raises(NotFoundError):
        pipeline.create_submission(session, seeded["contest_id"], 999, seeded["student_id"], "class A {}")
    with pytest.raises(NotFoundError):
        pipeline.create_submission(
            session, seeded["contest_id"], seeded["question_ids"][0], 999, "class A {}"
        )


def test_question_must_belong_to_contest(pipeline, session, store, seeded):
    other = store.create_contest(session, seeded["subject_id"], "Contest 2", None, [{"title": "Other"}])
    with pytest.raises(ValueError):
        pipeline.create_submission(
            session, seeded["contest_id"], other.questions[0].id, seeded["student_id"], "class A {}"
        )


def test_successful_evaluation_writes_report_analytics_and_tasks(pipeline, session, store, seeded):
    submission = _submit(pipeline, session, seeded)

    evaluation = pipeline.evaluate_submission(session, submission.id)

    assert evaluation.overall_score == 72
    assert evaluation.topic_scores_json == {"arrays": 80.0, "recursion": 40.0}
    session.refresh(submission)
    assert submission.status == SubmissionStatus.EVALUATED
    assert submission.evaluated_at is not None

    analytics = store.get_topic_analytics(session, seeded["student_id"], seeded["subject_id"])
    assert analytics.id == f"{seeded['student_id']}_{seeded['subject_id']}"
    assert analytics.topics_json["arrays"] == {"score": 80.0, "strength": "strong", "contest_count": 1}
    assert analytics.topics_json["recursion"]["strength"] == "weak"

    tasks = store.list_practice_tasks(session, seeded["student_id"])
    assert [task.title for task in tasks] == ["Sum of array", "Factorial"]
    assert all(task.question_type == PracticeQuestionType.CURRENT for task in tasks)
    assert all(task.contest_id == seeded["contest_id"] for task in tasks)


def test_second_evaluation_increments_topic_counts(pipeline, session, store, seeded):
    first = _submit(pipeline, session, seeded)
    pipeline.evaluate_submission(session, first.id)
    second = _submit(pipeline, session, seeded, question_index=1)
    pipeline.evaluate_submission(session, second.id)

    analytics = store.get_topic_analytics(session, seeded["student_id"], seeded["subject_id"])
    assert analytics.topics_json["arrays"]["contest_count"] == 2
    assert len(store.evaluation_history(session, seeded["student_id"])) == 2


def test_failed_evaluation_marks_error_and_keeps_code(settings, session, store, seeded):
    pipeline = build_pipeline(settings, FakeBackend(default=ModelUnavailableError("not found", 404)))
    submission = _submit(pipeline, session, seeded, code="class Keep {}")

    with pytest.raises(EvaluationFailedError):
        pipeline.evaluate_submission(session, submission.id)

    session.expire_all()
    stored = session.get(Submission, submission.id)
    assert stored.status == SubmissionStatus.ERROR
    assert stored.code == "class Keep {}"
    assert stored.error_detail.startswith("EvaluationFailedError: all_models_exhausted")
    assert stored.raw_response is None
    assert session.query(Evaluation).count() == 0
    assert store.get_topic_analytics(session, seeded["student_id"], seeded["subject_id"]) is None


def test_failure_while_persisting_rolls_back_and_keeps_raw_response(pipeline, session, store, seeded, monkeypatch):
    submission = _submit(pipeline, session, seeded)

    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(pipeline.store, "add_practice_tasks", explode)
    with pytest.raises(RuntimeError):
        pipeline.evaluate_submission(session, submission.id)

    session.expire_all()
    stored = session.get(Submission, submission.id)
    assert stored.status == SubmissionStatus.ERROR
    assert stored.error_detail == "RuntimeError: disk full"
    assert stored.raw_response == EVALUATION_TEXT
    assert session.query(Evaluation).count() == 0
    assert session.query(PracticeTask).count() == 0
    assert store.get_topic_analytics(session, seeded["student_id"], seeded["subject_id"]) is None


def test_evaluating_twice_is_rejected(pipeline, session, seeded):
    submission = _submit(pipeline, session, seeded)
    pipeline.evaluate_submission(session, submission.id)

    from codegrader.services.lifecycle import InvalidTransitionError

    with pytest.raises(InvalidTransitionError):
        pipeline.evaluate_submission(session, submission.id)


def test_retry_creates_linked_submission(settings, session, seeded):
    failing = build_pipeline(settings, FakeBackend(default=ModelUnavailableError("gone", 404)))
    original = _submit(failing, session, seeded, code="class Retry {}")
    with pytest.raises(EvaluationFailedError):
        failing.evaluate_submission(session, original.id)

    pipeline = build_pipeline(settings, FakeBackend())
    retried = pipeline.retry(session, original.id)

    assert retried.id != original.id
    assert retried.retry_of_id == original.id
    assert retried.code == "class Retry {}"
    assert retried.status == SubmissionStatus.SUBMITTED
    session.refresh(original)
    assert original.status == SubmissionStatus.ERROR


def test_retry_requires_finished_submission(pipeline, session, seeded):
    submission = _submit(pipeline, session, seeded)
    with pytest.raises(ValueError):
        pipeline.retry(session, submission.id)


def test_bulk_submission_collects_errors(pipeline, session, seeded):
    result = pipeline.submit_bulk(
        session,
        seeded["contest_id"],
        [
            BulkSubmissionItem(student_email="ADA@example.com", question_number=1, code="class A {}"),
            BulkSubmissionItem(student_id=seeded["student_id"], question_number=2, code="class B {}"),
            BulkSubmissionItem(student_email="nobody@example.com", question_number=1, code="class C {}"),
            BulkSubmissionItem(student_id=seeded["student_id"], question_number=9, code="class D {}"),
            BulkSubmissionItem(student_id=seeded["student_id"], question_number=1, code="  "),
        ],
    )

    assert len(result.accepted) == 2
    assert len(result.errors) == 3
    assert "nobody@example.com - Q1" in result.errors[0]
    assert "question 9 not found" in result.errors[1]
    assert session.query(Submission).count() == 2


def test_background_evaluation_uses_own_session(pipeline, session, seeded):
    submission = _submit(pipeline, session, seeded)
    pipeline.run_in_background(TestingSessionLocal, submission.id)

    session.expire_all()
    assert session.get(Submission, submission.id).status == SubmissionStatus.EVALUATED


def test_background_failure_is_logged_not_raised(settings, session, seeded, caplog):
    pipeline = build_pipeline(settings, FakeBackend(default=ModelUnavailableError("gone", 404)))
    submission = _submit(pipeline, session, seeded)

    pipeline.run_in_background(TestingSessionLocal, submission.id)

    session.expire_all()
    assert session.get(Submission, submission.id).status == SubmissionStatus.ERROR
    assert "Background evaluation" in caplog.text


def test_reconcile_uses_configured_threshold(pipeline, session, seeded):
    submission = _submit(pipeline, session, seeded)
    assert pipeline.reconcile(session) == []
    assert submission.status == SubmissionStatus.SUBMITTED


def test_contest_topic_analysis_updates_questions_and_counts(pipeline, session, seeded):
    analyzed = pipeline.analyze_contest_topics(TestingSessionLocal, seeded["contest_id"])

    assert set(analyzed) == set(seeded["question_ids"])
    session.expire_all()
    question = session.get(Question, seeded["question_ids"][0])
    assert question.topics_json == ["arrays", "loops"]
    counts = {item.topic: item.count for item in session.query(ImportantTopic).all()}
    assert counts == {"arrays": 2, "loops": 2}


def test_contest_topic_analysis_failure_leaves_questions(settings, session, seeded):
    pipeline = build_pipeline(settings, FakeBackend(default=ModelUnavailableError("gone", 404)))
    assert pipeline.analyze_contest_topics(TestingSessionLocal, seeded["contest_id"]) == {}
    session.expire_all()
    assert session.get(Question, seeded["question_ids"][0]).topics_json == []
    assert session.query(ImportantTopic).count() == 0


def test_historical_practice_creates_historical_tasks(pipeline, session, store, seeded):
    submission = _submit(pipeline, session, seeded)
    pipeline.evaluate_submission(session, submission.id)

    tasks = pipeline.generate_historical_practice(session, seeded["student_id"], seeded["subject_id"], count=1)

    assert len(tasks) == 1
    assert tasks[0].question_type == PracticeQuestionType.HISTORICAL
    assert tasks[0].contest_id is None
    assert len(store.list_practice_tasks(session, seeded["student_id"])) == 3


def test_historical_report_uses_evaluation_history(pipeline, session, seeded, fake_backend):
    submission = _submit(pipeline, session, seeded)
    pipeline.evaluate_submission(session, submission.id)

    report = pipeline.historical_report(session, seeded["student_id"], seeded["subject_id"])

    _, request = fake_backend.calls[-1]
    assert "Contest 1" in request.user_content
    assert report.summary
