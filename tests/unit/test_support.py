from types import SimpleNamespace
from typing import Any

import pytest

from run_orchestrator.config.cache import TTLCache, cache_key
from run_orchestrator.errors import RetryableError
from run_orchestrator.models.mock import MockModel
from run_orchestrator.runs.messages import (
    AgentMessage,
    AgentMessageData,
    InvocationResultData,
    InvocationResultMessage,
    Invocation,
    human,
    parse_message,
    supervisor,
    to_anthropic_messages,
)
from run_orchestrator.runs.titles import generate_title
from run_orchestrator.tools.summarizer import needs_summarizing, summarize_job_result_if_necessary
from run_orchestrator.validation import JsonSchemaValidator


def test_ttl_cache_expires_entries() -> None:
    now = [0.0]
    cache: TTLCache[str] = TTLCache(clock=lambda: now[0])
    cache.set("key", "value", 10.0)

    assert cache.get("key") == "value"
    now[0] = 10.0
    assert cache.get("key") is None
    assert len(cache) == 0


def test_ttl_cache_get_or_set_calls_the_factory_once() -> None:
    cache: TTLCache[int] = TTLCache()
    calls: list[int] = []

    def factory() -> int:
        calls.append(1)
        return 7

    assert cache.get_or_set(cache_key("cluster", "c1"), factory, 60.0) == 7
    assert cache.get_or_set(cache_key("cluster", "c1"), factory, 60.0) == 7
    assert calls == [1]
    assert cache_key("cluster", "c1") == "cluster:c1"


def test_small_results_are_not_summarized() -> None:
    model = SimpleNamespace(call=lambda **kwargs: pytest.fail("model must not be called"))

    assert not needs_summarizing("short", threshold=10)
    assert not needs_summarizing(None, threshold=10)
    assert summarize_job_result_if_necessary(
        {"ok": 1}, model=model, target_fn="echo", threshold=100
    ) == {"ok": 1}


def test_large_results_are_summarized() -> None:
    prompts: list[Any] = []

    def call(**kwargs: Any) -> dict[str, Any]:
        prompts.append(kwargs["messages"][0]["content"])
        return {"content": [{"type": "text", "text": "short summary"}], "usage": {}, "raw": {}}

    result = summarize_job_result_if_necessary(
        {"rows": "x" * 50},
        model=SimpleNamespace(call=call),
        target_fn="listOrders",
        invocation_purpose="finding late orders",
        threshold=10,
    )

    assert result == {"summary": "short summary", "originalResultSize": 16, "summarySize": 4}
    assert "<JOB_RESULT>" in prompts[0]
    assert "for the purpose of finding late orders." in prompts[0]


def test_summarizer_rejects_unexpected_content() -> None:
    def call(**kwargs: Any) -> dict[str, Any]:
        return {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}

    with pytest.raises(ValueError, match="Unexpected content blocks"):
        summarize_job_result_if_necessary(
            "x" * 20, model=SimpleNamespace(call=call), target_fn="echo", threshold=10
        )


def test_generate_title() -> None:
    model = MockModel([{"summary": "Refund request for Alice"}])

    title = generate_title("Alice wants her money back", model=model, words=8)

    assert title.summary == "Refund request for Alice"
    assert "no more than 8 words" in model.calls[0]["system"]


def test_invalid_title_output_is_retryable() -> None:
    with pytest.raises(RetryableError, match="Invalid title output from model"):
        generate_title("hello", model=MockModel([{"title": "wrong key"}]))


def test_messages_parse_by_type() -> None:
    message = parse_message(
        {
            "id": "m1",
            "type": "agent",
            "data": {"done": False, "invocations": [{"id": "c1", "toolName": "echo"}]},
        }
    )

    assert isinstance(message, AgentMessage)
    assert message.data.invocations[0].tool_name == "echo"


def test_provider_rendering_merges_consecutive_turns() -> None:
    agent = AgentMessage(
        data=AgentMessageData(
            done=False, invocations=[Invocation(id="c1", tool_name="echo", input={"text": "x"})]
        )
    )
    result = InvocationResultMessage(
        data=InvocationResultData(id="c1", result={"c1": {"result": "x"}}, result_type="resolution")
    )

    rendered = to_anthropic_messages([human("hi"), agent, result, supervisor("continue")])

    assert [turn["role"] for turn in rendered] == ["user", "assistant", "user"]
    assert rendered[1]["content"][1] == {
        "type": "tool_use",
        "id": "c1",
        "name": "echo",
        "input": {"text": "x"},
    }
    assert [block["type"] for block in rendered[2]["content"]] == ["tool_result", "text"]


def test_validator_reports_paths_and_bad_schemas() -> None:
    validator = JsonSchemaValidator()
    schema = {"type": "object", "properties": {"n": {"type": "integer"}}, "required": ["n"]}

    errors = validator.validate({"n": "one"}, schema)

    assert errors[0]["path"] == "/n"
    assert validator.validate({"n": 1}, schema) == []
    assert validator.check_schema({"type": "not-a-type"})
