import logging
from typing import Any

import pytest

from run_orchestrator.config.settings import Settings
from run_orchestrator.errors import ModelProviderError, RetryableError
from run_orchestrator.models.rate_limiter import ClusterRateLimiter, TokenBucket
from run_orchestrator.models.router import ModelFactory, RoutedModel
from run_orchestrator.models.routing import Route, RoutingTable, default_routing_table

EXTRACT_RESPONSE = {
    "content": [{"type": "tool_use", "id": "t1", "name": "extract", "input": {"done": True}}]
}


class SpyRouting:
    def __init__(self) -> None:
        self.indexes: list[int] = []

    def get_routing(self, identifier: str, index: int) -> Route:
        self.indexes.append(index)
        return Route(provider="bedrock", model_id=identifier, region=f"region-{index}")

    def context_window(self, identifier: str) -> int | None:
        return 1234


class ScriptedClient:
    """Raises queued exceptions, then returns ``response``."""

    def __init__(self, failures: list[Exception], response: dict[str, Any] | None = None) -> None:
        self.failures = list(failures)
        self.response = response or EXTRACT_RESPONSE
        self.routes: list[Route] = []
        self.bodies: list[dict[str, Any]] = []

    def send(self, route: Route, body: dict[str, Any]) -> dict[str, Any]:
        self.routes.append(route)
        self.bodies.append(body)
        if self.failures:
            raise self.failures.pop(0)
        return self.response

    def embed(self, route: Route, text: str) -> list[float]:
        self.routes.append(route)
        if self.failures:
            raise self.failures.pop(0)
        return [0.1, 0.2]


def _model(client: ScriptedClient, routing: SpyRouting, sleeps: list[float], **kwargs: Any):
    return RoutedModel(
        identifier="claude-3-5-sonnet",
        routing=routing,
        client=client,
        purpose="test",
        sleep=sleeps.append,
        **kwargs,
    )


def _structured(model: RoutedModel):
    return model.structured(
        messages=[{"role": "user", "content": [{"type": "text", "text": "hi"}]}],
        system="system",
        schema={"type": "object"},
    )


def test_retryable_failure_moves_to_the_next_route() -> None:
    routing = SpyRouting()
    sleeps: list[float] = []
    client = ScriptedClient([RetryableError("throttled")])

    response = _structured(_model(client, routing, sleeps))

    assert response["structured"] == {"done": True}
    assert routing.indexes == [0, 1]
    assert [route.region for route in client.routes] == ["region-0", "region-1"]
    assert sleeps == [0.5]


def test_structured_forces_the_extract_tool() -> None:
    client = ScriptedClient([])

    _structured(_model(client, SpyRouting(), []))
    body = client.bodies[0]

    assert body["tool_choice"] == {"type": "tool", "name": "extract"}
    assert body["tools"][-1]["input_schema"] == {"type": "object"}
    assert body["temperature"] == 0.5


def test_backoff_grows_with_each_attempt_and_last_error_is_raised() -> None:
    routing = SpyRouting()
    sleeps: list[float] = []
    client = ScriptedClient([RetryableError(f"attempt {n}") for n in range(1, 4)])

    with pytest.raises(RetryableError, match="attempt 3"):
        _structured(_model(client, routing, sleeps, max_attempts=3))

    assert routing.indexes == [0, 1, 2]
    assert sleeps == [0.5, 1.0]


def test_non_retryable_errors_are_raised_immediately() -> None:
    routing = SpyRouting()
    sleeps: list[float] = []
    client = ScriptedClient([ModelProviderError("bad request", status_code=400)])

    with pytest.raises(ModelProviderError):
        _structured(_model(client, routing, sleeps))

    assert routing.indexes == [0]
    assert sleeps == []


def test_known_transient_messages_are_retried() -> None:
    sleeps: list[float] = []
    client = ScriptedClient([RuntimeError("Connection terminated unexpectedly")])

    _structured(_model(client, SpyRouting(), sleeps))

    assert len(client.routes) == 2


def test_missing_structured_block_is_retried() -> None:
    client = ScriptedClient([], response={"content": [{"type": "text", "text": "hello"}]})

    with pytest.raises(RetryableError, match="Model did not return structured output"):
        _structured(_model(client, SpyRouting(), [], max_attempts=2))

    assert len(client.routes) == 2


def test_call_returns_content_and_usage() -> None:
    client = ScriptedClient(
        [],
        response={"content": [{"type": "text", "text": "hi"}], "usage": {"input_tokens": 3}},
    )

    response = _model(client, SpyRouting(), []).call(
        messages=[{"role": "user", "content": "hello"}], system="be brief"
    )

    assert response["content"] == [{"type": "text", "text": "hi"}]
    assert response["usage"] == {"input_tokens": 3}
    assert client.bodies[0]["system"] == "be brief"


def test_context_window_comes_from_routing() -> None:
    assert _model(ScriptedClient([]), SpyRouting(), []).context_window == 1234


def test_rate_limit_is_logged_but_not_enforced(caplog: pytest.LogCaptureFixture) -> None:
    limiter = ClusterRateLimiter(per_minute=1, per_hour=1, clock=lambda: 0.0)
    client = ScriptedClient([])
    model = _model(client, SpyRouting(), [], rate_limiter=limiter, cluster_id="cluster-1")

    with caplog.at_level(logging.WARNING, logger="run_orchestrator.models.router"):
        response = _structured(model)

    assert response["structured"] == {"done": True}
    assert "Rate limit exceeded. (Just logged, not preventing request)" in caplog.text


def test_routing_table_wraps_out_of_range_indexes() -> None:
    table = default_routing_table()
    routes = table.routes["claude-3-5-sonnet"]

    assert table.get_routing("claude-3-5-sonnet", 0) == routes[0]
    assert table.get_routing("claude-3-5-sonnet", len(routes)) == routes[0]
    assert table.context_window("claude-3-5-sonnet") == 200_000


def test_routing_table_rejects_unknown_identifiers() -> None:
    with pytest.raises(ValueError, match="No routes configured for model gpt-x"):
        default_routing_table().get_routing("gpt-x", 0)


def test_restricted_routing_keeps_configured_providers() -> None:
    table = default_routing_table().restricted_to({"anthropic"})

    assert [route.provider for route in table.routes["claude-3-haiku"]] == ["anthropic"]
    # Embeddings have no anthropic route and keep their bedrock routes.
    assert {route.provider for route in table.routes["embed-english-v3"]} == {"bedrock"}


def test_factory_from_settings_uses_only_configured_providers(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("AWS_BEARER_TOKEN_BEDROCK", raising=False)
    factory = ModelFactory.from_settings(
        Settings(anthropic_api_key="sk-test", bedrock_api_key="")
    )
    model = factory.build("claude-3-5-sonnet", purpose="test", cluster_id="cluster-1")

    assert isinstance(factory.routing, RoutingTable)
    assert model.routing.get_routing("claude-3-5-sonnet", 3).provider == "anthropic"
    assert model.cluster_id == "cluster-1"


def test_token_bucket_refills_over_time() -> None:
    now = [0.0]
    bucket = TokenBucket(ceiling=60, window_s=60.0, clock=lambda: now[0])

    bucket.consume("cluster-1", 60)
    assert not bucket.allowed("cluster-1", 1)

    now[0] = 30.0
    assert bucket.available("cluster-1") == pytest.approx(30.0)
    assert bucket.allowed("cluster-1", 30)
    assert not bucket.allowed("cluster-1", 31)


def test_token_bucket_records_debt_past_the_ceiling() -> None:
    now = [0.0]
    bucket = TokenBucket(ceiling=10, window_s=10.0, clock=lambda: now[0])

    bucket.consume("cluster-1", 15)
    now[0] = 4.0

    assert bucket.available("cluster-1") == pytest.approx(-1.0)


def test_cluster_limiter_checks_both_windows() -> None:
    limiter = ClusterRateLimiter(per_minute=100, per_hour=150, clock=lambda: 0.0)

    limiter.record("cluster-1", 100)

    assert not limiter.allowed("cluster-1", 60)
    assert limiter.allowed("cluster-2", 100)
