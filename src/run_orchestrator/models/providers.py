"""HTTP clients for the Anthropic Messages API, served directly or through Bedrock."""

from __future__ import annotations

import json
from typing import Any, Protocol
from urllib import error, parse, request

from run_orchestrator.errors import ModelProviderError, RetryableError
from run_orchestrator.models.routing import Route


ANTHROPIC_VERSION = "2023-06-01"
BEDROCK_ANTHROPIC_VERSION = "bedrock-2023-05-31"
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504, 529})


class ProviderClient(Protocol):
    def send(self, route: Route, body: dict[str, Any]) -> dict[str, Any]: ...

    def embed(self, route: Route, text: str) -> list[float]: ...


class HttpProviderClient:
    """Dispatch Anthropic-format requests to the route's provider."""

    def __init__(
        self,
        *,
        anthropic_api_key: str,
        anthropic_base_url: str = "https://api.anthropic.com/v1",
        bedrock_api_key: str = "",
        bedrock_base_url_template: str = "https://bedrock-runtime.{region}.amazonaws.com",
        timeout_s: float = 60.0,
    ) -> None:
        self.anthropic_api_key = anthropic_api_key
        self.anthropic_base_url = anthropic_base_url.rstrip("/")
        self.bedrock_api_key = bedrock_api_key
        self.bedrock_base_url_template = bedrock_base_url_template
        self.timeout_s = timeout_s

    def send(self, route: Route, body: dict[str, Any]) -> dict[str, Any]:
        if route.provider == "anthropic":
            return self._send_anthropic(route, body)
        if route.provider == "bedrock":
            return self._send_bedrock(route, body)
        raise ModelProviderError(f"Unsupported provider: {route.provider}")

    def embed(self, route: Route, text: str) -> list[float]:
        if route.provider != "bedrock":
            raise ModelProviderError(f"Embeddings are not supported by {route.provider}")
        response = self._post_json(
            url=self._bedrock_invoke_url(route),
            headers=self._bedrock_headers(),
            body={"texts": [text], "input_type": "search_query"},
            label=route.label,
        )
        embeddings = response.get("embeddings") or []
        if not embeddings or not isinstance(embeddings[0], list):
            raise ModelProviderError("Embedding response did not contain vectors")
        return [float(value) for value in embeddings[0]]

    def _send_anthropic(self, route: Route, body: dict[str, Any]) -> dict[str, Any]:
        if not self.anthropic_api_key:
            raise ModelProviderError("ANTHROPIC_API_KEY is missing")
        return self._post_json(
            url=f"{self.anthropic_base_url}/messages",
            headers={
                "x-api-key": self.anthropic_api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            body={**body, "model": route.model_id},
            label=route.label,
        )

    def _send_bedrock(self, route: Route, body: dict[str, Any]) -> dict[str, Any]:
        payload = {key: value for key, value in body.items() if key != "model"}
        payload["anthropic_version"] = BEDROCK_ANTHROPIC_VERSION
        return self._post_json(
            url=self._bedrock_invoke_url(route),
            headers=self._bedrock_headers(),
            body=payload,
            label=route.label,
        )

    def _bedrock_invoke_url(self, route: Route) -> str:
        base_url = self.bedrock_base_url_template.format(region=route.region or "us-east-1")
        model_id = parse.quote(route.model_id, safe="")
        return f"{base_url.rstrip('/')}/model/{model_id}/invoke"

    def _bedrock_headers(self) -> dict[str, str]:
        if not self.bedrock_api_key:
            raise ModelProviderError("AWS_BEARER_TOKEN_BEDROCK is missing")
        return {
            "Authorization": f"Bearer {self.bedrock_api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _post_json(
        self,
        *,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        label: str,
    ) -> dict[str, Any]:
        req = request.Request(
            url=url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            detail = f"Model request to {label} failed with status {exc.code}: {message[:400]}"
            if exc.code in RETRYABLE_STATUS_CODES:
                raise RetryableError(detail) from exc
            raise ModelProviderError(detail, status_code=exc.code) from exc
        except error.URLError as exc:
            raise RetryableError(f"Model request to {label} failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise RetryableError(f"Model request to {label} timed out") from exc

        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RetryableError(f"Model provider {label} returned non-JSON response") from exc
