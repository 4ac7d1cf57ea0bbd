"""核心 SQLAlchemy 模型定义。"""

from codegrader.models.analytics import (
    ImportantTopic,
    PracticeTask,
    SubjectScore,
    TopicAnalytics,
    composite_key,
)
from codegrader.models.enums import (
    Difficulty,
    PracticeQuestionType,
    PracticeTaskStatus,
    SubmissionStatus,
    TopicStrength,
)
from codegrader.models.student import Student
from codegrader.models.subject import Contest, Question, Subject
from codegrader.models.submission import Evaluation, Submission

__all__ = [
    "Contest",
    "Difficulty",
    "Evaluation",
    "ImportantTopic",
    "PracticeQuestionType",
    "PracticeTask",
    "PracticeTaskStatus",
    "Question",
    "Student",
    "Subject",
    "SubjectScore",
    "Submission",
    "SubmissionStatus",
    "TopicAnalytics",
    "TopicStrength",
    "composite_key",
]
