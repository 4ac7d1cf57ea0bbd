"""API v2 路由包入口。"""

from fastapi import APIRouter

from codegrader.api.v2 import analytics, practice, students, subjects, submissions

router = APIRouter(prefix="/api/v2")

# 注册子路由
router.include_router(subjects.router, prefix="/subjects", tags=["学科与比赛"])
router.include_router(students.router, prefix="/students", tags=["学生"])
router.include_router(submissions.router, prefix="/submissions", tags=["提交"])
router.include_router(analytics.router, prefix="/analytics", tags=["画像"])
router.include_router(practice.router, prefix="/practice", tags=["练习"])
