"""评测相关枚举定义 - 提交状态、知识点强弱、练习任务等。"""

import enum


class SubmissionStatus(str, enum.Enum):
    """提交状态机。

    状态只能单向前进：pending → submitted → evaluating → evaluated / error。
    """
    PENDING = "pending"          # 已创建，尚未记录任何状态更新
    SUBMITTED = "submitted"      # 已提交
    EVALUATING = "evaluating"    # AI 评测中
    EVALUATED = "evaluated"      # 评测完成（终态）
    ERROR = "error"              # 评测失败（终态）


class TopicStrength(str, enum.Enum):
    """知识点掌握程度，由 0-100 分数确定性推导。"""
    WEAK = "weak"                # < 50
    MEDIUM = "medium"            # 50-74
    STRONG = "strong"            # >= 75


class PracticeTaskStatus(str, enum.Enum):
    """练习任务状态。"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PracticeQuestionType(str, enum.Enum):
    """练习题来源。"""
    CURRENT = "current"          # 来自本次比赛评测
    HISTORICAL = "historical"    # 来自历史画像汇总


class Difficulty(str, enum.Enum):
    """题目难度。"""
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
