"""Routing table mapping logical model identifiers to ordered provider endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Mapping

logger = logging.getLogger(__name__)

ProviderName = Literal["bedrock", "anthropic"]

CHAT_IDENTIFIERS = ("claude-3-5-sonnet", "claude-3-haiku")
EMBEDDING_IDENTIFIERS = ("embed-english-v3",)

CONTEXT_WINDOW: dict[str, int] = {
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
}

BEDROCK_REGIONS = ("us-west-2", "us-east-1", "eu-central-1", "ap-northeast-1", "ap-northeast-2")

_BEDROCK_MODEL_IDS = {
    "claude-3-5-sonnet": "anthropic.claude-3-5-sonnet-20240620-v1:0",
    "claude-3-haiku": "anthropic.claude-3-haiku-20240307-v1:0",
    "embed-english-v3": "cohere.embed-english-v3",
}
_ANTHROPIC_MODEL_IDS = {
    "claude-3-5-sonnet": "claude-3-5-sonnet-20240620",
    "claude-3-haiku": "claude-3-haiku-20240307",
}


@dataclass(frozen=True)
class Route:
    provider: ProviderName
    model_id: str
    region: str | None = None

    @property
    def label(self) -> str:
        return f"{self.provider}:{self.region}" if self.region else self.provider


@dataclass(frozen=True)
class RoutingTable:
    routes: Mapping[str, tuple[Route, ...]]
    context_windows: Mapping[str, int] = field(default_factory=lambda: dict(CONTEXT_WINDOW))

    def get_routing(self, identifier: str, index: int) -> Route:
        """Route for attempt ``index`` (0-based). Out-of-range indexes wrap around."""
        options = self.routes.get(identifier)
        if not options:
            raise ValueError(f"No routes configured for model {identifier}")
        if index >= len(options):
            logger.warning(
                "model_routing event=index_wrapped identifier=%s index=%d routes=%d",
                identifier,
                index,
                len(options),
            )
        return options[index % len(options)]

    def context_window(self, identifier: str) -> int | None:
        return self.context_windows.get(identifier)

    def restricted_to(self, providers: set[str]) -> RoutingTable:
        """Drop routes for providers without credentials, keeping identifiers with none left."""
        routes: dict[str, tuple[Route, ...]] = {}
        for identifier, options in self.routes.items():
            kept = tuple(route for route in options if route.provider in providers)
            routes[identifier] = kept or options
        return RoutingTable(routes=routes, context_windows=self.context_windows)


def default_routing_table() -> RoutingTable:
    routes: dict[str, tuple[Route, ...]] = {}
    for identifier in CHAT_IDENTIFIERS:
        routes[identifier] = (
            *(
                Route(provider="bedrock", model_id=_BEDROCK_MODEL_IDS[identifier], region=region)
                for region in BEDROCK_REGIONS
            ),
            Route(provider="anthropic", model_id=_ANTHROPIC_MODEL_IDS[identifier]),
        )
    routes["embed-english-v3"] = tuple(
        Route(provider="bedrock", model_id=_BEDROCK_MODEL_IDS["embed-english-v3"], region=region)
        for region in ("us-east-1", "us-west-2")
    )
    return RoutingTable(routes=routes)
