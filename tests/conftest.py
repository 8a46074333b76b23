"""Shared fixtures for gateway tests."""

import asyncio
from typing import Awaitable, Callable, Optional, Union

import pytest

from shared.models import (
    GenerationOptions,
    ProviderConfig,
    ProviderResult,
    ResultStatus,
    TokenUsage,
)
from providers.registry import ProviderRegistry
from storage.aggregates import AggregateStore
from storage.projects import ProjectStore
from orchestrator.service import ResponseOrchestrator


def success(key: str, total: int = 42, text: Optional[str] = None) -> ProviderResult:
    """A successful result with ``total`` tokens."""
    prompt_tokens = total // 2
    return ProviderResult(
        provider_key=key,
        response_text=text or f"{key} answer",
        status=ResultStatus.SUCCESS,
        token_usage=TokenUsage(prompt=prompt_tokens, completion=total - prompt_tokens, total=total),
        response_time_ms=120,
    )


def failure(key: str, message: str = "upstream unavailable") -> ProviderResult:
    return ProviderResult.failure(key, f"{key} Error: {message}", response_time_ms=80)


Outcome = Union[ProviderResult, Exception]


class ScriptedCaller:
    """Stands in for ProviderCaller with scripted outcomes and release gates."""

    def __init__(self, outcomes: Optional[dict[str, Outcome]] = None) -> None:
        self.outcomes: dict[str, Outcome] = dict(outcomes or {})
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, str, Optional[GenerationOptions]]] = []

    def hold(self, *keys: str) -> None:
        """Block the given providers until released."""
        for key in keys:
            self.gates[key] = asyncio.Event()

    def release(self, key: str) -> None:
        self.gates[key].set()

    async def call(
        self,
        provider_key: str,
        prompt: str,
        options: Optional[GenerationOptions] = None
    ) -> ProviderResult:
        self.calls.append((provider_key, prompt, options))
        gate = self.gates.get(provider_key)
        if gate is not None:
            await gate.wait()

        outcome = self.outcomes.get(provider_key)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return success(provider_key)
        return outcome

    def called_keys(self) -> list[str]:
        return [key for key, _, _ in self.calls]


async def wait_until(check: Callable[[], Awaitable[bool]], timeout: float = 2.0) -> None:
    """Poll ``check`` until it returns True."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await check():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


def provider(key: str, enabled: bool = True, credential: Optional[str] = "secret", cost: float = 0.0) -> ProviderConfig:
    return ProviderConfig(
        key=key,
        display_name=key.title(),
        upstream_model_id=f"vendor/{key}-model",
        credential=credential,
        enabled=enabled,
        cost_per_1k_tokens=cost,
    )


@pytest.fixture
def registry() -> ProviderRegistry:
    """alpha and beta enabled, gamma disabled."""
    return ProviderRegistry([
        provider("alpha"),
        provider("beta"),
        provider("gamma", enabled=False, credential=None),
    ])


@pytest.fixture
def caller() -> ScriptedCaller:
    return ScriptedCaller()


@pytest.fixture
def store() -> AggregateStore:
    return AggregateStore()


@pytest.fixture
def projects() -> ProjectStore:
    return ProjectStore()


@pytest.fixture
def orchestrator(registry, caller, store, projects) -> ResponseOrchestrator:
    return ResponseOrchestrator(
        registry=registry,
        caller=caller,
        store=store,
        projects=projects,
    )
