"""Piston 代码执行沙箱客户端。"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, Field

from codegrader.config import Settings

logger = logging.getLogger(__name__)


class ExecutionResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = -1
    compile_output: Optional[str] = None
    compile_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class TestCaseResult(BaseModel):
    __test__ = False

    test_case_number: int
    input: str = ""
    expected_output: str = ""
    actual_output: str = ""
    passed: bool = False
    stderr: str = ""
    exit_code: int = -1


class TestRunSummary(BaseModel):
    __test__ = False

    total: int = 0
    passed: int = 0
    failed: int = 0
    results: List[TestCaseResult] = Field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return self.failed == 0


class PistonSandbox:
    """通过 Piston API 编译并运行 Java 代码。

    传输或服务端错误不会抛出，而是返回 ``exit_code = -1`` 且 stderr 为错误信息的结果。
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.Client] = None) -> None:
        self.settings = settings
        self._http_client = http_client

    def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self._http_client is not None:
            return self._http_client.post(
                self.settings.piston_url, json=payload, timeout=self.settings.piston_timeout_seconds
            )
        with httpx.Client(timeout=self.settings.piston_timeout_seconds) as client:
            return client.post(self.settings.piston_url, json=payload)

    def run(self, source_code: str, stdin: str = "") -> ExecutionResult:
        payload = {
            "language": self.settings.piston_language,
            "version": self.settings.piston_version,
            "files": [{"name": "Main.java", "content": source_code}],
            "stdin": stdin or "",
            "args": [],
        }
        try:
            response = self._post(payload)
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"Piston API error: {response.status_code} - {response.text}",
                    request=response.request,
                    response=response,
                )
            data = response.json() or {}
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Piston execution failed: %s", exc)
            return ExecutionResult(stderr=str(exc) or "Failed to execute code", exit_code=-1)

        run = data.get("run") or {}
        compile_stage = data.get("compile") or {}
        exit_code = run.get("code", run.get("exitCode"))
        return ExecutionResult(
            stdout=run.get("stdout") or "",
            stderr=run.get("stderr") or "",
            exit_code=exit_code if isinstance(exit_code, int) else -1,
            compile_output=compile_stage.get("output") or None,
            compile_error=compile_stage.get("stderr") or None,
        )

    def run_test_cases(self, source_code: str, test_cases: Sequence[Dict[str, Any]]) -> TestRunSummary:
        """逐个运行测试用例；通过条件为去除首尾空白后的 stdout 与期望输出一致。"""

        if not source_code or not source_code.strip():
            raise ValueError("source code is required")

        summary = TestRunSummary(total=len(test_cases))
        for number, case in enumerate(test_cases, start=1):
            if not isinstance(case, dict):
                summary.results.append(
                    TestCaseResult(test_case_number=number, stderr="Invalid test case structure")
                )
                summary.failed += 1
                continue

            value_in = str(case.get("input") or "")
            expected = str(case.get("expected_output") or "")
            result = self.run(source_code, value_in)
            actual = result.stdout.strip()
            passed = actual == expected.strip()
            summary.results.append(
                TestCaseResult(
                    test_case_number=number,
                    input=value_in,
                    expected_output=expected,
                    actual_output=actual,
                    passed=passed,
                    stderr=result.stderr or (result.compile_error or ""),
                    exit_code=result.exit_code,
                )
            )
            if passed:
                summary.passed += 1
            else:
                summary.failed += 1
        return summary
