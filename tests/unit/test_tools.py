import json
from datetime import datetime, timezone
from typing import Any
from urllib import error

import pytest

from run_orchestrator.config.cache import TTLCache
from run_orchestrator.errors import AgentError, AgentToolInputError, NotFoundError
from run_orchestrator.graph.state import initial_state
from run_orchestrator.runs.messages import human
from run_orchestrator.storage.memory import InMemoryRunStore
from run_orchestrator.storage.models import ClusterSettings, RunRecord, ServiceFunctionRecord
from run_orchestrator.tools import stdlib
from run_orchestrator.tools.agent_tool import parse_function_response
from run_orchestrator.tools.resolvers import (
    InternalToolResolver,
    MockToolResolver,
    ServiceFunctionResolver,
    ToolResolverChain,
)
from run_orchestrator.tools.search import KeywordToolSearch, find_relevant_tools
from run_orchestrator.tools.service_functions import build_service_function_tool


class FakeKnowledgeBase:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.queries: list[tuple[str, str, str | None]] = []

    def search(
        self, cluster_id: str, query: str, *, tag: str | None = None, limit: int = 5
    ) -> list[dict[str, Any]]:
        self.queries.append((cluster_id, query, tag))
        if self.fail:
            raise RuntimeError("collection unavailable")
        return [{"id": "doc-1", "title": "Refunds", "tag": tag, "data": "30 days", "similarity": 0.9}]

    def tags(self, cluster_id: str) -> list[str]:
        return ["faq", "policy"]


class FakeResponse:
    def __init__(self, body: str, content_type: str) -> None:
        self.body = body.encode("utf-8")
        self.headers = {"Content-Type": content_type}

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *args: Any) -> None:
        return None

    def read(self) -> bytes:
        return self.body


def _run(**overrides: Any) -> RunRecord:
    return RunRecord(id="run-1", cluster_id="cluster-1", status="running", **overrides)


def _execute(tool, tool_input: dict[str, Any]):
    return parse_function_response(tool.execute(tool_input))


def _echo_tool(store: InMemoryRunStore, run: RunRecord, **kwargs: Any):
    return build_service_function_tool(
        function=store.get_function("cluster-1", "echo"),
        run=run,
        tool_call_id="call-1",
        jobs=store,
        **kwargs,
    )


# Service functions


def test_pending_job_pauses_and_is_reused_on_retry(store: InMemoryRunStore) -> None:
    tool = _echo_tool(store, _run())

    first = _execute(tool, {"text": "hi"})
    second = _execute(tool, {"text": "hi"})

    assert first.result_type == "jobTimeout"
    assert first.result == second.result
    assert len(store.list_jobs("cluster-1", target_fn="echo")) == 1


def test_completed_job_returns_its_result(store: InMemoryRunStore) -> None:
    tool = _echo_tool(store, _run())
    job_id = _execute(tool, {"text": "hi"}).result[0]
    store.complete_job(
        "cluster-1", job_id, status="success", result={"text": "hi"}, result_type="resolution"
    )

    response = _execute(tool, {"text": "hi"})

    assert response.result_type == "resolution"
    assert response.status == "success"
    assert response.result == {"text": "hi"}


def test_job_without_result_is_rejected(store: InMemoryRunStore) -> None:
    tool = _echo_tool(store, _run())
    job_id = _execute(tool, {"text": "hi"}).result[0]
    store.complete_job("cluster-1", job_id, status="success", result=None, result_type=None)

    response = _execute(tool, {"text": "hi"})

    assert response.result_type == "rejection"
    assert response.result == {"message": "Job did not return a result."}


def test_job_is_polled_until_it_completes(store: InMemoryRunStore) -> None:
    now = [0.0]

    def sleep(seconds: float) -> None:
        now[0] += seconds
        job = store.list_jobs("cluster-1", target_fn="echo")[0]
        store.complete_job(
            "cluster-1", job.id, status="success", result="done", result_type="resolution"
        )

    tool = _echo_tool(store, _run(), poll_timeout_s=1.0, sleep=sleep, clock=lambda: now[0])

    response = _execute(tool, {"text": "hi"})

    assert response.result == "done"
    assert now[0] == pytest.approx(0.25)


def test_large_results_go_through_the_summarizer(store: InMemoryRunStore) -> None:
    calls: list[tuple[Any, str]] = []

    def summarize(result: Any, target_fn: str) -> Any:
        calls.append((result, target_fn))
        return {"summary": "short"}

    tool = _echo_tool(store, _run(enable_summarization=True), summarize=summarize)
    job_id = _execute(tool, {"text": "hi"}).result[0]
    store.complete_job(
        "cluster-1", job_id, status="success", result={"rows": [1, 2]}, result_type="resolution"
    )

    response = _execute(tool, {"text": "hi"})

    assert response.result == {"summary": "short"}
    assert calls == [({"rows": [1, 2]}, "echo")]


# Resolvers


def test_mock_resolver_only_applies_to_test_runs(store: InMemoryRunStore) -> None:
    resolver = MockToolResolver(store)
    mocks = {"echo": {"output": {"text": "mocked"}}}

    tool = resolver.resolve("echo", "call-1", _run(test=True, test_mocks=mocks))

    assert tool is not None
    assert _execute(tool, {"text": "real"}).result == {"text": "mocked"}
    assert resolver.resolve("echo", "call-1", _run(test=False, test_mocks=mocks)) is None
    assert resolver.resolve("other", "call-1", _run(test=True, test_mocks=mocks)) is None


def test_internal_tools_accept_prefixed_names(store: InMemoryRunStore) -> None:
    resolver = InternalToolResolver(store=store, cache=TTLCache())

    assert resolver.resolve("inferable_calculator", "call-1", _run()).name == "calculator"
    assert resolver.resolve("currentDateTime", "call-1", _run()).name == "currentDateTime"
    assert resolver.resolve("echo", "call-1", _run()) is None


def test_knowledge_tool_follows_cached_cluster_settings(store: InMemoryRunStore) -> None:
    now = [0.0]
    cache: TTLCache[Any] = TTLCache(clock=lambda: now[0])
    resolver = InternalToolResolver(
        store=store, cache=cache, knowledge_base=FakeKnowledgeBase(), settings_ttl_s=120.0
    )

    assert "accessKnowledgeArtifacts" not in resolver.available_tools("cluster-1")

    store.set_cluster_settings(ClusterSettings(cluster_id="cluster-1", enable_knowledgebase=True))
    assert "accessKnowledgeArtifacts" not in resolver.available_tools("cluster-1")

    now[0] = 121.0
    assert "accessKnowledgeArtifacts" in resolver.available_tools("cluster-1")


def test_resolver_chain_prefers_earlier_resolvers(store: InMemoryRunStore) -> None:
    chain = ToolResolverChain(
        [
            MockToolResolver(store),
            InternalToolResolver(store=store, cache=TTLCache()),
            ServiceFunctionResolver(registry=store, jobs=store),
        ]
    )
    run = _run(test=True, test_mocks={"echo": {"output": "mocked"}})

    assert _execute(chain.resolve("echo", "call-1", run), {"text": "x"}).result == "mocked"
    assert _execute(chain.resolve("echo", "call-1", _run()), {"text": "x"}).result_type == (
        "jobTimeout"
    )


def test_resolver_chain_errors(store: InMemoryRunStore) -> None:
    chain = ToolResolverChain([ServiceFunctionResolver(registry=store, jobs=store)])

    with pytest.raises(AgentError, match="Can not return tool without call ID"):
        chain.resolve("echo", "", _run())
    with pytest.raises(NotFoundError, match="Tool not found: ghost"):
        chain.resolve("ghost", "call-1", _run())


# Built-in tools


def test_calculator_evaluates_arithmetic() -> None:
    response = _execute(stdlib.build_calculator_tool(), {"expression": "(2 + 3) * 4"})

    assert response.result == {"expression": "(2 + 3) * 4", "value": 20}


@pytest.mark.parametrize(
    "expression", ["__import__('os')", "2 ** 10000", "1 / 0", "1 +", "(-8) ** 0.5"]
)
def test_calculator_rejects_unsafe_or_invalid_expressions(expression: str) -> None:
    response = _execute(stdlib.build_calculator_tool(), {"expression": expression})

    assert response.result_type == "rejection"
    assert response.result["message"].startswith("Could not evaluate expression")


def test_calculator_rejects_booleans() -> None:
    with pytest.raises(ValueError, match="Booleans are not supported"):
        stdlib.evaluate_expression("True + 1")


def test_calculator_explains_complex_results() -> None:
    response = _execute(stdlib.build_calculator_tool(), {"expression": "(-8) ** 0.5"})

    assert response.status == "failure"
    assert "Result is not a real number" in response.result["message"]


def test_function_response_keeps_non_json_string_results() -> None:
    response = parse_function_response(
        json.dumps({"result": "plain words", "resultType": "resolution", "status": "success"})
    )

    assert response.result == "plain words"


def test_function_response_must_be_json() -> None:
    with pytest.raises(AgentError, match="Failed to parse tool response"):
        parse_function_response("plain words")


def test_current_date_time_reports_utc() -> None:
    fixed = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    response = _execute(stdlib.build_current_date_time_tool(lambda: fixed), {})

    assert response.result == {
        "iso8601": "2024-01-02T03:04:05+00:00",
        "unixTimestamp": 1704164645,
        "timezone": "UTC",
    }


def test_get_url_strips_html(monkeypatch: pytest.MonkeyPatch) -> None:
    html = "<html><script>var x = 1;</script><p>Hello <b>world</b></p></html>"
    monkeypatch.setattr(
        stdlib.request, "urlopen", lambda req, timeout: FakeResponse(html, "text/html")
    )

    response = _execute(stdlib.build_get_url_tool(), {"url": "https://example.com"})

    assert response.result == {
        "url": "https://example.com",
        "content": "Hello world",
        "truncated": False,
    }


def test_get_url_failures_are_rejections(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail(req, timeout):
        raise error.URLError("name resolution failed")

    monkeypatch.setattr(stdlib.request, "urlopen", fail)

    response = _execute(stdlib.build_get_url_tool(), {"url": "https://example.com"})

    assert response.result_type == "rejection"
    assert "name resolution failed" in response.result["message"]


def test_get_url_requires_http_urls() -> None:
    with pytest.raises(AgentToolInputError):
        stdlib.build_get_url_tool().execute({"url": "file:///etc/passwd"})


def test_knowledge_artifacts_tool_exposes_tags_and_searches() -> None:
    knowledge_base = FakeKnowledgeBase()
    tool = stdlib.build_access_knowledge_artifacts_tool(_run(), knowledge_base)

    response = _execute(tool, {"query": "refund window", "tag": "policy"})

    assert tool.schema["properties"]["tag"]["enum"] == ["faq", "policy"]
    assert response.result[0]["title"] == "Refunds"
    assert knowledge_base.queries == [("cluster-1", "refund window", "policy")]


def test_knowledge_artifacts_errors_are_hidden_from_the_model() -> None:
    tool = stdlib.build_access_knowledge_artifacts_tool(_run(), FakeKnowledgeBase(fail=True))

    response = _execute(tool, {"query": "refund window"})

    assert response.result == "Internal error, please try again."
    assert response.status == "error"


# Tool search


def _registry_with_weather(store: InMemoryRunStore) -> InMemoryRunStore:
    store.upsert_function(
        ServiceFunctionRecord(
            cluster_id="cluster-1",
            name="getWeatherForecast",
            description="Weather forecast for a city",
        )
    )
    store.upsert_function(
        ServiceFunctionRecord(cluster_id="cluster-1", name="sendEmail", description="Send an email")
    )
    return store


def test_keyword_search_ranks_matching_functions(store: InMemoryRunStore) -> None:
    search = KeywordToolSearch(_registry_with_weather(store))

    found = search.search("cluster-1", "weather in paris please", limit=5)

    assert [function.name for function in found] == ["getWeatherForecast"]
    assert search.search("cluster-1", "", limit=5) == []


def test_attached_functions_are_used_verbatim(store: InMemoryRunStore) -> None:
    run = _run(attached_functions=["echo", "inferable_calculator"])
    state = initial_state(run, messages=[human("anything")])

    tools = find_relevant_tools(
        state,
        registry=store,
        internal_tools=InternalToolResolver(store=store, cache=TTLCache()),
        tool_search=KeywordToolSearch(store),
    )

    assert [tool.name for tool in tools] == ["echo", "calculator"]


def test_unknown_attached_function_fails_the_step(store: InMemoryRunStore) -> None:
    state = initial_state(_run(attached_functions=["ghost"]), messages=[human("hi")])

    with pytest.raises(AgentError, match="Tool ghost not found in cluster cluster-1"):
        find_relevant_tools(
            state,
            registry=store,
            internal_tools=InternalToolResolver(store=store, cache=TTLCache()),
            tool_search=KeywordToolSearch(store),
        )


def test_search_mode_adds_built_in_tools(store: InMemoryRunStore) -> None:
    registry = _registry_with_weather(store)
    state = initial_state(_run(), messages=[human("weather in paris please")])

    tools = find_relevant_tools(
        state,
        registry=registry,
        internal_tools=InternalToolResolver(store=registry, cache=TTLCache()),
        tool_search=KeywordToolSearch(registry),
    )

    assert [tool.name for tool in tools] == [
        "getWeatherForecast",
        "calculator",
        "currentDateTime",
        "getUrl",
    ]
    assert json.loads(tools[0].schema_json()) == {"type": "object", "properties": {}}
