import pytest

from extraction.llm_client import ChatLlmClient, MaxRetryErrorsException, call_with_retries_sync
from extraction.model_props import is_openai_model, parse_model_name


def test_retries_until_success():
    calls = []
    logged = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("connection reset")
        return "ok"

    assert call_with_retries_sync(flaky, retries=3, log=logged.append) == "ok"
    assert len(calls) == 3
    assert len(logged) == 2
    assert "Attempt 1 failed." in logged[0]


def test_gives_up_after_retries():
    def broken():
        raise ValueError("bad request")

    with pytest.raises(MaxRetryErrorsException) as info:
        call_with_retries_sync(broken, retries=2)
    assert isinstance(info.value.__cause__, ValueError)


def test_model_name_parsing():
    assert is_openai_model("gpt-5.1_fast")
    assert not is_openai_model("gemini-2.5-flash-lite")

    assert parse_model_name("gpt-5.1") == ("gpt-5.1", {})
    base, params = parse_model_name("gpt-5.1_fast-flex")
    assert base == "gpt-5.1"
    assert params == {"text": {"verbosity": "low"}, "reasoning": {"effort": "none"}, "service_tier": "flex"}

    with pytest.raises(ValueError):
        parse_model_name("gpt-5.1_turbo")


def _offline_client(retries):
    client = ChatLlmClient.__new__(ChatLlmClient)
    client.model_name = "gemini-2.5-flash-lite"
    client.last_usage = {"total_token_count": 999}
    client._retries = retries
    return client


def test_generate_uses_configured_retries():
    client = _offline_client(retries=2)
    calls = []

    def down(messages):
        calls.append(messages)
        raise RuntimeError("connection reset")

    client._invoke_once = down
    with pytest.raises(MaxRetryErrorsException):
        client.generate("system prompt", "user text")
    assert len(calls) == 2


def test_generate_reports_usage_of_its_own_call():
    client = _offline_client(retries=1)

    def answer(messages):
        assert [m.content for m in messages] == ["system prompt", "user text"]
        client._accumulate({"prompt_token_count": 12, "total_token_count": 20})
        return "{}"

    client._invoke_once = answer
    assert client.generate("system prompt", "user text") == "{}"
    assert client.last_usage == {"prompt_token_count": 12, "total_token_count": 20}
