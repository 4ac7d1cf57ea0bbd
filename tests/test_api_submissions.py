import json

import httpx

from codegrader.dependencies import get_sandbox
from codegrader.main import app
from codegrader.services.ai import ModelUnavailableError
from codegrader.services.sandbox import PistonSandbox

from conftest import route_by_prompt

BASE = "/api/v2/submissions"


def _payload(seeded, code="public class Main { }", question_index=0):
    return {
        "contest_id": seeded["contest_id"],
        "question_id": seeded["question_ids"][question_index],
        "student_id": seeded["student_id"],
        "code": code,
    }


def _submitted(pipeline, session, seeded, code="public class Main { }"):
    return pipeline.create_submission(
        session, seeded["contest_id"], seeded["question_ids"][0], seeded["student_id"], code
    )


def test_submission_is_evaluated_in_background(client, seeded):
    response = client.post(f"{BASE}/", json=_payload(seeded))
    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "submitted"

    # TestClient 在返回响应前执行后台任务
    detail = client.get(f"{BASE}/{data['id']}").json()
    assert detail["status"] == "evaluated"
    assert detail["evaluated_at"] is not None

    evaluation = client.get(f"{BASE}/{data['id']}/evaluation")
    assert evaluation.status_code == 200
    body = evaluation.json()
    assert body["overall_score"] == 72
    assert body["topic_scores"] == {"arrays": 80.0, "recursion": 40.0}
    assert len(body["practice_questions"]) == 2


def test_background_failure_marks_error(client, seeded, fake_backend):
    fake_backend.default = ModelUnavailableError("not found", 404)
    data = client.post(f"{BASE}/", json=_payload(seeded, code="class Keep {}")).json()

    detail = client.get(f"{BASE}/{data['id']}").json()
    assert detail["status"] == "error"
    assert detail["code"] == "class Keep {}"
    assert "all_models_exhausted" in detail["error_detail"]
    assert client.get(f"{BASE}/{data['id']}/evaluation").status_code == 404


def test_create_submission_validation(client, seeded):
    missing = dict(_payload(seeded), question_id=999)
    assert client.post(f"{BASE}/", json=missing).status_code == 404

    assert client.post(f"{BASE}/", json=_payload(seeded, code="")).status_code == 422
    assert client.post(f"{BASE}/", json=_payload(seeded, code="   ")).status_code == 400


def test_list_submissions_filters_by_status(client, seeded, fake_backend):
    client.post(f"{BASE}/", json=_payload(seeded))
    fake_backend.default = ModelUnavailableError("not found", 404)
    client.post(f"{BASE}/", json=_payload(seeded, question_index=1))

    everything = client.get(f"{BASE}/", params={"contest_id": seeded["contest_id"]}).json()
    assert everything["total"] == 2

    errored = client.get(f"{BASE}/", params={"status": "error"}).json()
    assert errored["total"] == 1
    assert errored["submissions"][0]["question_id"] == seeded["question_ids"][1]


def test_synchronous_evaluate_endpoint(client, pipeline, session, seeded):
    submission = _submitted(pipeline, session, seeded)

    response = client.post(f"{BASE}/{submission.id}/evaluate")
    assert response.status_code == 200
    assert response.json()["submission_id"] == submission.id

    again = client.post(f"{BASE}/{submission.id}/evaluate")
    assert again.status_code == 409


def test_evaluate_endpoint_reports_generation_failure(client, pipeline, session, seeded, fake_backend):
    submission = _submitted(pipeline, session, seeded)
    fake_backend.default = ModelUnavailableError("not found", 404)

    response = client.post(f"{BASE}/{submission.id}/evaluate")
    assert response.status_code == 502
    assert response.json()["detail"]["error"] == "all_models_exhausted"
    assert client.get(f"{BASE}/{submission.id}").json()["status"] == "error"


def test_evaluate_unknown_submission(client, session):
    assert client.post(f"{BASE}/12345/evaluate").status_code == 404
    assert client.get(f"{BASE}/12345").status_code == 404


def test_retry_flow(client, pipeline, session, seeded, fake_backend):
    submission = _submitted(pipeline, session, seeded, code="class Retry {}")
    assert client.post(f"{BASE}/{submission.id}/retry").status_code == 409

    fake_backend.default = ModelUnavailableError("not found", 404)
    client.post(f"{BASE}/{submission.id}/evaluate")

    fake_backend.default = route_by_prompt
    response = client.post(f"{BASE}/{submission.id}/retry")
    assert response.status_code == 202
    retried = response.json()
    assert retried["retry_of_id"] == submission.id
    assert retried["code"] == "class Retry {}"

    assert client.get(f"{BASE}/{retried['id']}").json()["status"] == "evaluated"
    assert client.get(f"{BASE}/{submission.id}").json()["status"] == "error"


def test_bulk_submissions(client, seeded):
    response = client.post(
        f"{BASE}/bulk",
        json={
            "contest_id": seeded["contest_id"],
            "submissions": [
                {"student_email": "ada@example.com", "question_number": 1, "code": "class A {}"},
                {"student_email": "ghost@example.com", "question_number": 1, "code": "class B {}"},
            ],
        },
    )
    assert response.status_code == 202
    result = response.json()
    assert len(result["accepted"]) == 1
    assert len(result["errors"]) == 1

    detail = client.get(f"{BASE}/{result['accepted'][0]}").json()
    assert detail["status"] == "evaluated"


def test_bulk_upload_from_json_file(client, seeded):
    content = json.dumps(
        {
            "submissions": [
                {"studentEmail": "ada@example.com", "questionNumber": 1, "code": "class A {}"},
                {"studentId": seeded["student_id"], "questionNumber": 2, "code": "class B {}"},
                {"studentEmail": "ada@example.com", "code": "class C {}"},
            ]
        }
    )
    response = client.post(
        f"{BASE}/bulk/upload",
        params={"contest_id": seeded["contest_id"]},
        files={"file": ("submissions.json", content, "application/json")},
    )
    assert response.status_code == 202
    result = response.json()
    assert len(result["accepted"]) == 2
    assert result["errors"][0].startswith("item 3")


def test_bulk_upload_rejects_non_json(client, seeded):
    response = client.post(
        f"{BASE}/bulk/upload",
        params={"contest_id": seeded["contest_id"]},
        files={"file": ("submissions.txt", "hello", "text/plain")},
    )
    assert response.status_code == 400


def test_bulk_upload_unknown_contest(client, seeded):
    content = json.dumps({"submissions": [{"studentEmail": "ada@example.com", "questionNumber": 1, "code": "x"}]})
    response = client.post(
        f"{BASE}/bulk/upload",
        params={"contest_id": 999},
        files={"file": ("submissions.json", content, "application/json")},
    )
    assert response.status_code == 404


def test_reconcile_endpoint(client, session):
    response = client.post(f"{BASE}/reconcile")
    assert response.status_code == 200
    assert response.json() == {"moved_to_error": [], "total": 0}


def _install_sandbox(settings, stdout="6\n"):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"run": {"stdout": stdout, "stderr": "", "code": 0}})

    sandbox = PistonSandbox(settings, http_client=httpx.Client(transport=httpx.MockTransport(handler)))
    app.dependency_overrides[get_sandbox] = lambda: sandbox


def test_run_code_without_tests(client, settings):
    _install_sandbox(settings, stdout="hello\n")
    response = client.post(f"{BASE}/run", json={"code": "class Main {}", "stdin": ""})
    assert response.status_code == 200
    body = response.json()
    assert body["stdout"] == "hello\n"
    assert body["success"] is True


def test_run_code_with_inline_test_cases(client, settings):
    _install_sandbox(settings, stdout="6\n")
    response = client.post(
        f"{BASE}/run",
        json={"code": "class Main {}", "test_cases": "1 2 3:6, 4:5"},
    )
    body = response.json()
    assert body["total"] == 2
    assert body["passed"] == 1
    assert body["all_passed"] is False


def test_run_submission_against_question_tests(client, settings, pipeline, session, seeded):
    _install_sandbox(settings, stdout="6\n")
    submission = _submitted(pipeline, session, seeded)

    response = client.post(f"{BASE}/{submission.id}/run-tests")
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["all_passed"] is True
