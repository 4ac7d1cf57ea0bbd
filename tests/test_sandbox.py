import json

import httpx
import pytest

from codegrader.services.sandbox import PistonSandbox


def _sandbox(settings, handler) -> PistonSandbox:
    return PistonSandbox(settings, http_client=httpx.Client(transport=httpx.MockTransport(handler)))


def _echo_handler(request: httpx.Request) -> httpx.Response:
    """把 stdin 中的数字求和后输出，模拟一次 Java 运行。"""

    payload = json.loads(request.content)
    numbers = [int(value) for value in payload["stdin"].split()]
    return httpx.Response(
        200,
        json={
            "language": payload["language"],
            "run": {"stdout": f"{sum(numbers)}\n", "stderr": "", "code": 0},
        },
    )


def test_run_posts_java_payload(settings):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"run": {"stdout": "hi\n", "stderr": "", "code": 0}})

    result = _sandbox(settings, handler).run("public class Main {}", "input")

    assert captured["language"] == settings.piston_language
    assert captured["version"] == settings.piston_version
    assert captured["files"] == [{"name": "Main.java", "content": "public class Main {}"}]
    assert captured["stdin"] == "input"
    assert result.stdout == "hi\n"
    assert result.success


def test_compile_error_is_reported(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "compile": {"stdout": "", "stderr": "Main.java:1: error", "output": "Main.java:1: error"},
                "run": {"stdout": "", "stderr": "", "code": 1},
            },
        )

    result = _sandbox(settings, handler).run("broken")
    assert result.exit_code == 1
    assert result.compile_error == "Main.java:1: error"
    assert not result.success


def test_server_error_becomes_failed_result(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    result = _sandbox(settings, handler).run("class Main {}")
    assert result.exit_code == -1
    assert "503" in result.stderr


def test_transport_error_becomes_failed_result(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = _sandbox(settings, handler).run("class Main {}")
    assert result.exit_code == -1
    assert "connection refused" in result.stderr


def test_run_test_cases_compares_trimmed_output(settings):
    summary = _sandbox(settings, _echo_handler).run_test_cases(
        "class Main {}",
        [
            {"input": "1 2 3", "expected_output": " 6 "},
            {"input": "4 5", "expected_output": "10"},
            "not a case",
        ],
    )

    assert summary.total == 3
    assert summary.passed == 1
    assert summary.failed == 2
    assert not summary.all_passed
    assert summary.results[0].passed
    assert summary.results[1].actual_output == "9"
    assert summary.results[2].stderr == "Invalid test case structure"


def test_run_test_cases_requires_code(settings):
    with pytest.raises(ValueError):
        _sandbox(settings, _echo_handler).run_test_cases("  ", [])
