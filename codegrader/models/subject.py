"""学科、比赛与题目模型定义。"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from codegrader.db import Base


class Subject(Base):
    """学科模型，比赛挂在学科之下。"""

    __tablename__ = "subjects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)  # "java"
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    contests: Mapped[List["Contest"]] = relationship(
        back_populates="subject", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Subject(id={self.id}, code={self.code})>"


class Contest(Base):
    """比赛：一组按序号排列的编程题。删除比赛会级联删除题目与提交。"""

    __tablename__ = "contests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(
        ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    subject: Mapped[Subject] = relationship(back_populates="contests")
    questions: Mapped[List["Question"]] = relationship(
        back_populates="contest",
        cascade="all, delete-orphan",
        order_by="Question.question_number",
    )
    submissions = relationship(
        "Submission", back_populates="contest", cascade="all, delete-orphan"
    )


class Question(Base):
    """比赛题目。

    ``test_cases_json`` 格式: [{"input": "3\\n1 2 3", "expected_output": "6"}]
    ``topics_json`` 由 AI 知识点分析异步写入，已归一化为小写。
    """

    __tablename__ = "questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contest_id: Mapped[int] = mapped_column(
        ForeignKey("contests.id", ondelete="CASCADE"), nullable=False
    )
    question_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    reference_solution: Mapped[Optional[str]] = mapped_column(Text)
    test_cases_json: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    topics_json: Mapped[List[str]] = mapped_column(JSON, default=list)

    contest: Mapped[Contest] = relationship(back_populates="questions")

    def __repr__(self) -> str:
        return f"<Question(id={self.id}, contest_id={self.contest_id}, number={self.question_number})>"
