import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from codegrader.schemas.completion import (
    CompletionFailure,
    CompletionPartial,
    CompletionRequest,
    CompletionSuccess,
    ErrorKind,
    GenerationResponse,
)
from codegrader.services.ai import GenerationBackendError, ModelUnavailableError, SafetyRejectionError
from codegrader.services.catalog import ModelCatalog
from codegrader.services.completion import TRUNCATION_NOTE, ResilientCompletionClient

from conftest import FakeBackend

FLASH = "gemini-2.5-flash"
PRO = "gemini-2.5-pro"


def _client(backend: FakeBackend) -> ResilientCompletionClient:
    catalog = ModelCatalog(backend, [FLASH, PRO], [FLASH])
    return ResilientCompletionClient(backend, catalog)


def _request(**overrides) -> CompletionRequest:
    params = {
        "system_instruction": "You are a grader.",
        "user_content": "Grade this code.",
        "timeout_ms": 2000,
    }
    params.update(overrides)
    return CompletionRequest(**params)


def test_missing_api_key_is_configuration_failure():
    backend = FakeBackend(configured=False)
    result = _client(backend).complete(_request())
    assert isinstance(result, CompletionFailure)
    assert result.error == ErrorKind.CONFIGURATION
    assert backend.calls == []


def test_empty_content_is_configuration_failure():
    backend = FakeBackend()
    result = _client(backend).complete(_request(user_content="   "))
    assert result.kind == "failure"
    assert result.error == ErrorKind.CONFIGURATION
    assert backend.calls == []


def test_request_is_immutable():
    request = _request()
    with pytest.raises(Exception):
        request.temperature = 0.9


def test_first_model_success():
    backend = FakeBackend(responses={FLASH: "hello"})
    result = _client(backend).complete(_request())
    assert result == CompletionSuccess(text="hello", model=FLASH)
    assert [model for model, _ in backend.calls] == [FLASH]


def test_unavailable_models_fall_back_in_order():
    backend = FakeBackend(
        models=[],
        responses={
            "a": ModelUnavailableError("model a not found", 404),
            "b": ModelUnavailableError("model b not found", 404),
            "c": "third time lucky",
        },
    )
    catalog = ModelCatalog(backend, [], ["a", "b", "c"])
    result = ResilientCompletionClient(backend, catalog).complete(_request())

    assert isinstance(result, CompletionSuccess)
    assert result.text == "third time lucky"
    assert result.model == "c"
    assert [model for model, _ in backend.calls] == ["a", "b", "c"]


def test_slow_model_times_out_and_next_model_answers():
    release = threading.Event()

    def slow(request):
        release.wait(2)
        return "too late"

    backend = FakeBackend(responses={FLASH: slow, PRO: "fast answer"})
    try:
        result = _client(backend).complete(_request(timeout_ms=50))
    finally:
        release.set()

    assert isinstance(result, CompletionSuccess)
    assert result.model == PRO
    assert result.text == "fast answer"


def test_clients_share_one_executor():
    first = _client(FakeBackend())
    second = _client(FakeBackend())
    assert first.executor is second.executor


def test_deadline_includes_waiting_for_a_free_worker():
    release = threading.Event()

    def slow(request):
        release.wait(2)
        return "too late"

    executor = ThreadPoolExecutor(max_workers=1)
    backend = FakeBackend(responses={FLASH: slow, PRO: "never scheduled"})
    catalog = ModelCatalog(backend, [FLASH, PRO], [FLASH])
    client = ResilientCompletionClient(backend, catalog, executor=executor)
    try:
        result = client.complete(_request(timeout_ms=50))
    finally:
        release.set()
        executor.shutdown(wait=True)

    assert isinstance(result, CompletionFailure)
    assert result.error == ErrorKind.ALL_MODELS_EXHAUSTED
    assert result.detail.count(ErrorKind.TIMEOUT.value) == 2
    # 排队中的调用被取消，从未到达后端
    assert [model for model, _ in backend.calls] == [FLASH]


def test_safety_rejection_stops_fallback():
    backend = FakeBackend(responses={FLASH: SafetyRejectionError("blocked"), PRO: "should not be used"})
    result = _client(backend).complete(_request())

    assert isinstance(result, CompletionFailure)
    assert result.error == ErrorKind.SAFETY_REJECTION
    assert result.model == FLASH
    assert len(backend.calls) == 1


def test_empty_text_with_safety_finish_is_rejection():
    backend = FakeBackend(responses={FLASH: GenerationResponse(text=None, finish_reason="SAFETY")})
    result = _client(backend).complete(_request())
    assert result.kind == "failure"
    assert result.error == ErrorKind.SAFETY_REJECTION


def test_safety_finish_with_text_is_success():
    backend = FakeBackend(responses={FLASH: GenerationResponse(text="partial but usable", finish_reason="SAFETY")})
    result = _client(backend).complete(_request())
    assert result == CompletionSuccess(text="partial but usable", model=FLASH)


def test_empty_text_with_normal_finish_falls_back():
    backend = FakeBackend(
        responses={
            FLASH: GenerationResponse(text="", finish_reason="STOP"),
            PRO: "answer from pro",
        }
    )
    result = _client(backend).complete(_request())
    assert result == CompletionSuccess(text="answer from pro", model=PRO)


def test_token_limit_without_text_is_failure():
    backend = FakeBackend(responses={FLASH: GenerationResponse(text=None, finish_reason="MAX_TOKENS")})
    result = _client(backend).complete(_request())
    assert isinstance(result, CompletionFailure)
    assert result.error == ErrorKind.TOKEN_LIMIT


def test_token_limit_with_complete_json_is_success():
    backend = FakeBackend(responses={FLASH: GenerationResponse(text='{"a": 1}', finish_reason="MAX_TOKENS")})
    result = _client(backend).complete(_request())
    assert result == CompletionSuccess(text='{"a": 1}', model=FLASH)


def test_token_limit_with_truncated_json_is_repaired():
    backend = FakeBackend(
        responses={FLASH: GenerationResponse(text='{"items": [1, 2, 3', finish_reason="MAX_TOKENS")}
    )
    result = _client(backend).complete(_request())

    assert isinstance(result, CompletionPartial)
    assert result.reason == "token-limit"
    assert json.loads(result.text) == {"items": [1, 2, 3]}


def test_token_limit_with_prose_gets_truncation_note():
    text = "The submission handles the main case but"
    backend = FakeBackend(responses={FLASH: GenerationResponse(text=text, finish_reason="LENGTH")})
    result = _client(backend).complete(_request())

    assert isinstance(result, CompletionPartial)
    assert result.text == text + TRUNCATION_NOTE


def test_all_models_exhausted_collects_reasons():
    backend = FakeBackend(
        responses={
            FLASH: ModelUnavailableError("not found", 404),
            PRO: GenerationBackendError("quota exceeded", 429),
        }
    )
    result = _client(backend).complete(_request())

    assert isinstance(result, CompletionFailure)
    assert result.error == ErrorKind.ALL_MODELS_EXHAUSTED
    assert "gemini-2.5-flash: model_unavailable (not found)" in result.detail
    assert "gemini-2.5-pro: backend_error (quota exceeded)" in result.detail


def test_unexpected_exception_propagates():
    backend = FakeBackend(responses={FLASH: KeyError("bug in adapter")})
    with pytest.raises(KeyError):
        _client(backend).complete(_request())


def test_max_candidates_limits_attempts():
    backend = FakeBackend(
        responses={FLASH: ModelUnavailableError("gone", 404), PRO: "never reached"}
    )
    catalog = ModelCatalog(backend, [FLASH, PRO], [FLASH])
    result = ResilientCompletionClient(backend, catalog, max_candidates=1).complete(_request())

    assert result.kind == "failure"
    assert result.error == ErrorKind.ALL_MODELS_EXHAUSTED
    assert [model for model, _ in backend.calls] == [FLASH]
