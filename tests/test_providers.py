"""Tests for the provider registry and caller."""

import json

import httpx
import pytest

from shared.config import ProviderSettings
from shared.models import (
    GenerationOptions,
    ProviderDefinition,
    ProviderResult,
    ResponseAggregate,
    ResultStatus,
)
from providers.caller import ProviderCaller, ProviderNotEnabledError
from providers.registry import ProviderRegistry
from storage.aggregates import AggregateStore

from conftest import provider, success

GATEWAY_URL = "https://gateway.test/api/v1/chat/completions"


def completion(content: str = "Hello there", usage: dict | None = None) -> dict:
    body = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    if usage is not None:
        body["usage"] = usage
    return body


def make_caller(handler, registry=None, **kwargs) -> ProviderCaller:
    registry = registry or ProviderRegistry([provider("alpha"), provider("gamma", enabled=False, credential=None)])
    return ProviderCaller(
        registry=registry,
        gateway_url=GATEWAY_URL,
        timeout=5.0,
        site_url="http://localhost:8000",
        site_title="Gateway Tests",
        transport=httpx.MockTransport(handler),
        **kwargs
    )


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def definitions(self):
        return [
            ProviderDefinition(key="alpha", display_name="Alpha", upstream_model_id="v/alpha", api_key_env="ALPHA_KEY"),
            ProviderDefinition(key="beta", display_name="Beta", upstream_model_id="v/beta", api_key_env="BETA_KEY"),
        ]

    def test_enabled_by_own_credential(self):
        settings = ProviderSettings(api_key=None, catalog=self.definitions())

        registry = ProviderRegistry.from_settings(settings, environ={"ALPHA_KEY": "a-key"})

        assert [p.key for p in registry.list_enabled()] == ["alpha"]
        assert registry.get("alpha").credential == "a-key"
        assert registry.get("beta").enabled is False
        assert registry.keys() == ["alpha", "beta"]

    def test_shared_key_enables_all(self):
        settings = ProviderSettings(api_key="shared", catalog=self.definitions())

        registry = ProviderRegistry.from_settings(settings, environ={"ALPHA_KEY": "a-key"})

        assert len(registry.list_enabled()) == 2
        assert registry.get("alpha").credential == "shared"

    def test_test_mode_enables_unconfigured(self):
        settings = ProviderSettings(api_key=None, catalog=self.definitions())

        registry = ProviderRegistry.from_settings(settings, test_mode=True, environ={})

        assert len(registry.list_enabled()) == 2
        assert all(not p.configured for p in registry.list_enabled())

    def test_unknown_provider(self):
        registry = ProviderRegistry([provider("alpha")])

        assert registry.get("nope") is None
        assert registry.is_enabled("nope") is False

    def test_duplicate_key_raises(self):
        with pytest.raises(ValueError, match="already registered"):
            ProviderRegistry([provider("alpha"), provider("alpha")])

    def test_status_hides_credentials(self):
        registry = ProviderRegistry([provider("alpha"), provider("gamma", enabled=False, credential=None)])

        status = {entry["key"]: entry for entry in registry.status()}

        assert status["alpha"]["configured"] is True
        assert status["gamma"]["enabled"] is False
        assert all("credential" not in entry for entry in status.values())

    def test_default_catalog(self):
        settings = ProviderSettings(api_key=None)
        registry = ProviderRegistry.from_settings(settings, environ={})

        assert registry.keys() == ["gemini", "deepseek", "microsoft", "llama", "openai"]
        assert registry.list_enabled() == []


class TestProviderCaller:
    """Tests for ProviderCaller against a mocked gateway."""

    @pytest.mark.asyncio
    async def test_success(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion(
                "AI is the study of intelligent agents.",
                usage={"prompt_tokens": 12, "completion_tokens": 30, "total_tokens": 42},
            ))

        async with make_caller(handler) as caller:
            result = await caller.call("alpha", "What is AI?", GenerationOptions(temperature=0.2, max_tokens=300))

        assert result.status == ResultStatus.SUCCESS
        assert result.response_text == "AI is the study of intelligent agents."
        assert result.token_usage.total == 42
        assert result.token_usage.prompt == 12
        assert result.error_message is None

        assert captured["url"] == GATEWAY_URL
        assert captured["headers"]["authorization"] == "Bearer secret"
        assert captured["headers"]["x-title"] == "Gateway Tests"
        assert captured["body"] == {
            "model": "vendor/alpha-model",
            "messages": [{"role": "user", "content": "What is AI?"}],
            "temperature": 0.2,
            "max_tokens": 300,
        }

    @pytest.mark.asyncio
    async def test_missing_usage_defaults_to_zero(self):
        def handler(request):
            return httpx.Response(200, json=completion("ok", usage={"total_tokens": 9}))

        async with make_caller(handler) as caller:
            result = await caller.call("alpha", "hi")

        assert result.status == ResultStatus.SUCCESS
        assert result.token_usage.prompt == 0
        assert result.token_usage.completion == 0
        assert result.token_usage.total == 9

    @pytest.mark.asyncio
    async def test_upstream_error_message_preferred(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "Rate limit exceeded", "code": 429}})

        async with make_caller(handler) as caller:
            result = await caller.call("alpha", "hi")

        assert result.status == ResultStatus.ERROR
        assert result.error_message == "alpha Error: Rate limit exceeded"
        assert result.response_text == ""
        assert result.token_usage.total == 0

    @pytest.mark.asyncio
    async def test_upstream_plain_text_error(self):
        def handler(request):
            return httpx.Response(502, text="Bad gateway")

        async with make_caller(handler) as caller:
            result = await caller.call("alpha", "hi")

        assert result.status == ResultStatus.ERROR
        assert result.error_message == "alpha Error: Bad gateway"

    @pytest.mark.asyncio
    async def test_timeout_becomes_error_result(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        async with make_caller(handler) as caller:
            result = await caller.call("alpha", "hi")

        assert result.status == ResultStatus.ERROR
        assert "timed out" in result.error_message

    @pytest.mark.asyncio
    async def test_connection_error_becomes_error_result(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_caller(handler) as caller:
            result = await caller.call("alpha", "hi")

        assert result.status == ResultStatus.ERROR
        assert result.error_message == "alpha Error: connection refused"

    @pytest.mark.asyncio
    async def test_malformed_payload_becomes_error_result(self):
        def handler(request):
            return httpx.Response(200, json={"id": "gen-1"})

        async with make_caller(handler) as caller:
            result = await caller.call("alpha", "hi")

        assert result.status == ResultStatus.ERROR
        assert "no choices" in result.error_message

    @pytest.mark.asyncio
    async def test_disabled_provider_raises(self):
        def handler(request):
            raise AssertionError("upstream must not be called")

        async with make_caller(handler) as caller:
            with pytest.raises(ProviderNotEnabledError):
                await caller.call("gamma", "hi")
            with pytest.raises(ProviderNotEnabledError):
                await caller.call("unknown", "hi")

    @staticmethod
    async def history_store() -> AggregateStore:
        store = AggregateStore()
        await store.insert(ResponseAggregate(
            id="prev-1",
            prompt="Earlier question",
            owner_id="user1",
            results={"alpha": success("alpha", text="Earlier answer")},
            requested_providers=["alpha"],
            total_count=1,
        ))
        return store

    @pytest.mark.asyncio
    async def test_previous_turn_prepended(self):
        store = await self.history_store()
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=completion("Follow-up answer"))

        async with make_caller(handler, history_lookup=store.get) as caller:
            result = await caller.call(
                "alpha", "And then?",
                GenerationOptions(previous_response_id="prev-1", owner_id="user1")
            )

        assert result.status == ResultStatus.SUCCESS
        assert bodies[0]["messages"] == [
            {"role": "user", "content": "Earlier question"},
            {"role": "assistant", "content": "Earlier answer"},
            {"role": "user", "content": "And then?"},
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_id", ["user2", None])
    async def test_previous_turn_of_another_owner_not_sent(self, owner_id):
        store = await self.history_store()
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=completion("hello"))

        async with make_caller(handler, history_lookup=store.get) as caller:
            result = await caller.call(
                "alpha", "hi",
                GenerationOptions(previous_response_id="prev-1", owner_id=owner_id)
            )

        assert result.status == ResultStatus.SUCCESS
        assert bodies[0]["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_history_lookup_failure_is_swallowed(self):
        async def lookup(aggregate_id, owner_id):
            raise RuntimeError("store offline")

        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=completion("still fine"))

        async with make_caller(handler, history_lookup=lookup) as caller:
            result = await caller.call(
                "alpha", "And then?",
                GenerationOptions(previous_response_id="prev-1", owner_id="user1")
            )

        assert result.status == ResultStatus.SUCCESS
        assert bodies[0]["messages"] == [{"role": "user", "content": "And then?"}]

    @pytest.mark.asyncio
    async def test_mock_mode_without_credential(self):
        registry = ProviderRegistry([provider("alpha", credential=None)], test_mode=True)

        def handler(request):
            raise AssertionError("upstream must not be called in mock mode")

        async with make_caller(handler, registry=registry, mock_delay_ms=(0, 0)) as caller:
            result = await caller.call("alpha", "What is AI?")

        assert result.status == ResultStatus.SUCCESS
        assert result.response_text
        assert 50 <= result.token_usage.total < 150
        assert result.token_usage.prompt + result.token_usage.completion == result.token_usage.total

    @pytest.mark.asyncio
    async def test_cost_estimate(self):
        registry = ProviderRegistry([provider("alpha", cost=2.0)])

        def handler(request):
            return httpx.Response(200, json=completion("ok", usage={"total_tokens": 500}))

        async with make_caller(handler, registry=registry) as caller:
            result = await caller.call("alpha", "hi")

        assert result.cost == pytest.approx(1.0)
