"""学生画像相关模型：知识点分析、学科综合分、练习任务与全局高频知识点。"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from codegrader.db import Base
from codegrader.models.enums import PracticeQuestionType, PracticeTaskStatus


def composite_key(student_id: int, subject_id: int) -> str:
    """学生-学科文档主键：``{student_id}_{subject_id}``。"""

    return f"{student_id}_{subject_id}"


class TopicAnalytics(Base):
    """学生在某学科下的知识点画像。

    ``topics_json`` 格式:
    {"arrays": {"score": 80, "strength": "strong", "contest_count": 2}}
    """

    __tablename__ = "topic_analytics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    subject_id: Mapped[int] = mapped_column(
        ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    topics_json: Mapped[Dict[str, Dict[str, Any]]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class SubjectScore(Base):
    """学科综合分（比赛 40 + 模拟面试 60），每次发布整体重算。"""

    __tablename__ = "subject_scores"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    subject_id: Mapped[int] = mapped_column(
        ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    # 格式: [{"contest_id": 1, "contest_title": "", "raw_score": 18, "max_score": 20, "normalized_score": 45}]
    contests_json: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    contest_normalized_total: Mapped[float] = mapped_column(Float, default=0.0)
    contest_max_possible: Mapped[float] = mapped_column(Float, default=1.0)
    contest_scaled_40: Mapped[float] = mapped_column(Float, default=0.0)
    mock_score: Mapped[float] = mapped_column(Float, default=0.0)
    total: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class PracticeTask(Base):
    """推送给学生的练习题。"""

    __tablename__ = "practice_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    subject_id: Mapped[int] = mapped_column(
        ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    # 历史汇总练习没有对应比赛
    contest_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contests.id", ondelete="SET NULL")
    )
    question_type: Mapped[PracticeQuestionType] = mapped_column(
        Enum(PracticeQuestionType), default=PracticeQuestionType.CURRENT, nullable=False
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    code_template: Mapped[str] = mapped_column(Text, default="")
    test_cases_json: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    topics_json: Mapped[List[str]] = mapped_column(JSON, default=list)
    difficulty: Mapped[str] = mapped_column(String(20), default="medium")

    status: Mapped[PracticeTaskStatus] = mapped_column(
        Enum(PracticeTaskStatus), default=PracticeTaskStatus.PENDING, nullable=False
    )
    submission_code: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class ImportantTopic(Base):
    """全局知识点出现频次，题目知识点分析后累加。"""

    __tablename__ = "important_topics"

    topic: Mapped[str] = mapped_column(String(100), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
