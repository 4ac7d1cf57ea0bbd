"""提交状态机。

状态只能单向前进::

    pending → submitted → evaluating → evaluated
                  │            │
                  └────────────┴──────→ error

``evaluated`` 与 ``error`` 为终态。每次迁移都使用带旧状态条件的 UPDATE，
同一提交的并发迁移只有一个能成功。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from codegrader.models import Submission, SubmissionStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[SubmissionStatus, FrozenSet[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.SUBMITTED, SubmissionStatus.ERROR}),
    SubmissionStatus.SUBMITTED: frozenset({SubmissionStatus.EVALUATING, SubmissionStatus.ERROR}),
    SubmissionStatus.EVALUATING: frozenset({SubmissionStatus.EVALUATED, SubmissionStatus.ERROR}),
    SubmissionStatus.EVALUATED: frozenset(),
    SubmissionStatus.ERROR: frozenset(),
}
TERMINAL_STATES = frozenset({SubmissionStatus.EVALUATED, SubmissionStatus.ERROR})


class InvalidTransitionError(ValueError):
    """非法或与并发修改冲突的状态迁移。"""

    def __init__(self, submission_id: int, current: SubmissionStatus, target: SubmissionStatus) -> None:
        super().__init__(
            f"submission {submission_id}: cannot move from {current.value} to {target.value}"
        )
        self.submission_id = submission_id
        self.current = current
        self.target = target


def can_transition(current: SubmissionStatus, target: SubmissionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class SubmissionLifecycle:
    """提交状态迁移的唯一入口。"""

    def transition(
        self,
        db: Session,
        submission: Submission,
        target: SubmissionStatus,
        detail: Optional[str] = None,
        commit: bool = True,
        raw_response: Optional[str] = None,
    ) -> Submission:
        current = submission.status
        if not can_transition(current, target):
            raise InvalidTransitionError(submission.id, current, target)

        now = datetime.now(timezone.utc)
        values = {"status": target, "updated_at": now}
        if target == SubmissionStatus.EVALUATING:
            values["evaluating_since"] = now
        elif target == SubmissionStatus.EVALUATED:
            values["evaluated_at"] = now
        elif target == SubmissionStatus.ERROR:
            values["error_detail"] = detail or "evaluation failed"
            if raw_response:
                values["raw_response"] = raw_response

        result = db.execute(
            update(Submission)
            .where(Submission.id == submission.id, Submission.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(submission)
            raise InvalidTransitionError(submission.id, submission.status, target)

        if commit:
            db.commit()
        else:
            db.flush()
        db.refresh(submission)
        logger.info("Submission %s: %s -> %s", submission.id, current.value, target.value)
        return submission

    def fail(
        self,
        db: Session,
        submission: Submission,
        detail: str,
        raw_response: Optional[str] = None,
    ) -> Submission:
        """将非终态提交标记为 error；已是终态时保持不变。

        ``raw_response`` 为已经拿到的模型原文，随 error 状态一起保存。
        """

        db.refresh(submission)
        if submission.status in TERMINAL_STATES:
            logger.warning(
                "Submission %s already %s, not marking error: %s",
                submission.id,
                submission.status.value,
                detail,
            )
            return submission
        return self.transition(
            db, submission, SubmissionStatus.ERROR, detail=detail, raw_response=raw_response
        )

    def find_stale(
        self,
        db: Session,
        threshold: timedelta,
        now: Optional[datetime] = None,
    ) -> List[Submission]:
        cutoff = (now or datetime.now(timezone.utc)) - threshold
        stmt = (
            select(Submission)
            .where(
                Submission.status == SubmissionStatus.EVALUATING,
                Submission.evaluating_since < cutoff,
            )
            .order_by(Submission.id)
        )
        return list(db.scalars(stmt))

    def reconcile_stale(
        self,
        db: Session,
        threshold: timedelta,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """把长时间停留在 evaluating 的提交标记为 error，返回被处理的提交 id。"""

        minutes = int(threshold.total_seconds() // 60)
        moved: List[int] = []
        for submission in self.find_stale(db, threshold, now):
            try:
                self.transition(
                    db,
                    submission,
                    SubmissionStatus.ERROR,
                    detail=f"evaluation interrupted: still evaluating after {minutes} minutes",
                )
            except InvalidTransitionError:
                # 扫描期间已被评测流程推进
                continue
            moved.append(submission.id)
        if moved:
            logger.warning("Reconciled %d stale evaluating submissions: %s", len(moved), moved)
        return moved
