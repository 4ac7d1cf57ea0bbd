"""提交与 AI 评测报告模型定义。"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from codegrader.db import Base
from codegrader.models.enums import SubmissionStatus


class Submission(Base):
    """学生代码提交。

    状态只能通过 ``SubmissionLifecycle`` 推进；提交的代码在任何失败情况下
    都会保留，便于人工重新评测。
    """

    __tablename__ = "submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # 关联
    contest_id: Mapped[int] = mapped_column(
        ForeignKey("contests.id", ondelete="CASCADE"), nullable=False
    )
    question_id: Mapped[int] = mapped_column(
        ForeignKey("questions.id", ondelete="CASCADE"), nullable=False
    )
    student_id: Mapped[int] = mapped_column(
        ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    # 重新评测时新建提交，指向被重试的原提交
    retry_of_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("submissions.id", ondelete="SET NULL")
    )

    code: Mapped[str] = mapped_column(Text, nullable=False)
    language: Mapped[str] = mapped_column(String(30), default="java")

    # 状态
    status: Mapped[SubmissionStatus] = mapped_column(
        Enum(SubmissionStatus), default=SubmissionStatus.PENDING, nullable=False
    )
    error_detail: Mapped[Optional[str]] = mapped_column(Text)
    # 生成成功但保存失败时保留模型原文，供人工重新评测
    raw_response: Mapped[Optional[str]] = mapped_column(Text)

    # 时间戳
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    evaluating_since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    evaluated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # 关系
    contest = relationship("Contest", back_populates="submissions")
    question = relationship("Question")
    student = relationship("Student")
    evaluations = relationship(
        "Evaluation",
        back_populates="submission",
        cascade="all, delete-orphan",
        order_by="Evaluation.id",
    )

    def __repr__(self) -> str:
        return f"<Submission(id={self.id}, status={self.status.value})>"


class Evaluation(Base):
    """一次 AI 评测报告。每次评测尝试都生成新记录，不覆盖旧报告。"""

    __tablename__ = "evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(
        ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False
    )

    strengths_json: Mapped[List[str]] = mapped_column(JSON, default=list)
    weaknesses_json: Mapped[List[str]] = mapped_column(JSON, default=list)
    suggestions_json: Mapped[List[str]] = mapped_column(JSON, default=list)
    # 格式: {"arrays": 80, "recursion": 45}
    topic_scores_json: Mapped[Dict[str, float]] = mapped_column(JSON, default=dict)
    overall_score: Mapped[float] = mapped_column(Float, default=50.0)
    detailed_analysis: Mapped[str] = mapped_column(Text, default="")
    practice_questions_json: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    # 原始生成文本，供人工复核
    raw_response: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    submission = relationship("Submission", back_populates="evaluations")

    def __repr__(self) -> str:
        return f"<Evaluation(id={self.id}, submission_id={self.submission_id}, overall={self.overall_score})>"
