"""Provider Caller.

Makes one upstream chat-completion call per provider and normalizes the
outcome into a ProviderResult. Upstream failures are returned as error
results; they never propagate to the caller.
"""

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from shared.logging import get_logger
from shared.models import (
    GenerationOptions,
    ProviderConfig,
    ProviderResult,
    ResponseAggregate,
    ResultStatus,
    TokenUsage,
)
from providers.registry import ProviderRegistry

logger = get_logger(__name__)

# Resolves an earlier aggregate (by id, scoped to an owner) for conversation context
HistoryLookup = Callable[[str, Optional[str]], Awaitable[Optional[ResponseAggregate]]]


class ProviderCallerError(Exception):
    """Base exception for provider caller errors."""
    pass


class ProviderNotEnabledError(ProviderCallerError):
    """Provider is unknown or has no credential outside test mode."""

    def __init__(self, provider_key: str) -> None:
        super().__init__(f"Provider '{provider_key}' is not enabled or configured")
        self.provider_key = provider_key


class MalformedResponseError(ProviderCallerError):
    """Upstream answered 2xx with an unusable body."""
    pass


MOCK_RESPONSES = [
    'This is a mock response from {name} for the prompt: "{snippet}..."',
    "{name} would typically analyze this prompt and provide a detailed response based on its training data.",
    "Mock {name} response: the prompt raises topics that would require thoughtful analysis.",
    "{name} simulation: this is a test response generated for development purposes.",
]


class ProviderCaller:
    """
    Client for the unified chat-completion gateway.

    One instance is shared by all concurrent calls; each call carries its
    own timeout and is independent of its siblings.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        gateway_url: str = "https://openrouter.ai/api/v1/chat/completions",
        timeout: float = 60.0,
        site_url: Optional[str] = None,
        site_title: Optional[str] = None,
        history_lookup: Optional[HistoryLookup] = None,
        mock_delay_ms: tuple[int, int] = (500, 1500),
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize the caller.

        Args:
            registry: Provider registry
            gateway_url: Chat-completion endpoint
            timeout: Per-call timeout in seconds
            site_url: Sent as HTTP-Referer
            site_title: Sent as X-Title
            history_lookup: Loads a previous aggregate for context
            mock_delay_ms: Simulated latency range for mock calls
            transport: Optional httpx transport (tests)
        """
        self.registry = registry
        self.gateway_url = gateway_url
        self.timeout = timeout
        self.site_url = site_url
        self.site_title = site_title
        self.history_lookup = history_lookup
        self.mock_delay_ms = mock_delay_ms
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ProviderCaller":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _get_headers(self, provider: ProviderConfig) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {provider.credential}",
            "Content-Type": "application/json",
        }
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.site_title:
            headers["X-Title"] = self.site_title
        return headers

    async def call(
        self,
        provider_key: str,
        prompt: str,
        options: Optional[GenerationOptions] = None
    ) -> ProviderResult:
        """
        Generate a response from a single provider.

        Args:
            provider_key: Registry key of the provider
            prompt: Current user prompt
            options: Sampling options and optional previous response id

        Returns:
            A success or error result

        Raises:
            ProviderNotEnabledError: If the provider cannot be called
        """
        provider = self.registry.get(provider_key)
        if provider is None or not provider.enabled:
            raise ProviderNotEnabledError(provider_key)

        options = options or GenerationOptions()

        if self.registry.test_mode and not provider.configured:
            return await self._mock_call(provider, prompt)

        return await self._upstream_call(provider, prompt, options)

    async def _mock_call(self, provider: ProviderConfig, prompt: str) -> ProviderResult:
        """Synthetic result after a simulated network delay."""
        low, high = self.mock_delay_ms
        delay_ms = random.uniform(low, max(low, high))
        await asyncio.sleep(delay_ms / 1000)

        total = random.randint(50, 149)
        prompt_tokens = int(total * 0.7)
        text = random.choice(MOCK_RESPONSES).format(
            name=provider.display_name,
            snippet=prompt[:50]
        )

        logger.debug("Mock provider call", provider=provider.key, delay_ms=int(delay_ms))

        return ProviderResult(
            provider_key=provider.key,
            response_text=text,
            status=ResultStatus.SUCCESS,
            token_usage=TokenUsage(
                prompt=prompt_tokens,
                completion=total - prompt_tokens,
                total=total
            ),
            response_time_ms=int(delay_ms),
            cost=self._estimate_cost(provider, total),
        )

    async def _build_messages(
        self,
        provider: ProviderConfig,
        prompt: str,
        previous_response_id: Optional[str],
        owner_id: Optional[str] = None
    ) -> list[dict[str, str]]:
        """
        Current prompt, preceded by the previous turn when it can be found.

        The previous turn is only used when it belongs to ``owner_id``.
        """
        messages: list[dict[str, str]] = []

        if previous_response_id and owner_id and self.history_lookup is not None:
            try:
                previous = await self.history_lookup(previous_response_id, owner_id)
                if previous is not None:
                    messages.append({"role": "user", "content": previous.prompt})
                    earlier = previous.results.get(provider.key)
                    if earlier is not None and earlier.response_text:
                        messages.append({"role": "assistant", "content": earlier.response_text})
                    logger.debug(
                        "Added conversation history",
                        provider=provider.key,
                        previous_response_id=previous_response_id
                    )
            except Exception as e:
                logger.warning(
                    "Failed to load conversation history",
                    provider=provider.key,
                    previous_response_id=previous_response_id,
                    error=str(e)
                )

        messages.append({"role": "user", "content": prompt})
        return messages

    async def _upstream_call(
        self,
        provider: ProviderConfig,
        prompt: str,
        options: GenerationOptions
    ) -> ProviderResult:
        started = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        try:
            messages = await self._build_messages(
                provider, prompt, options.previous_response_id, options.owner_id
            )
            payload = {
                "model": provider.upstream_model_id,
                "messages": messages,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
            }

            logger.info("Calling provider", provider=provider.key, model=provider.upstream_model_id)

            client = await self._get_client()
            response = await client.post(
                self.gateway_url,
                json=payload,
                headers=self._get_headers(provider)
            )
            response.raise_for_status()
            content, usage = self._parse_completion(response)

        except httpx.HTTPStatusError as e:
            detail = self._extract_error_detail(e.response) or str(e)
            return self._error_result(provider, detail, elapsed_ms(), status_code=e.response.status_code)
        except httpx.TimeoutException:
            return self._error_result(provider, f"Request timed out after {self.timeout:g}s", elapsed_ms())
        except httpx.HTTPError as e:
            return self._error_result(provider, str(e) or type(e).__name__, elapsed_ms())
        except MalformedResponseError as e:
            return self._error_result(provider, str(e), elapsed_ms())

        response_time = elapsed_ms()
        logger.info(
            "Provider call completed",
            provider=provider.key,
            response_time_ms=response_time,
            total_tokens=usage.total
        )

        return ProviderResult(
            provider_key=provider.key,
            response_text=content,
            status=ResultStatus.SUCCESS,
            token_usage=usage,
            response_time_ms=response_time,
            cost=self._estimate_cost(provider, usage.total),
        )

    @staticmethod
    def _parse_completion(response: httpx.Response) -> tuple[str, TokenUsage]:
        """Extract message content and usage from a completion body."""
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Invalid JSON from upstream: {e}")

        if not isinstance(data, dict):
            raise MalformedResponseError("Unexpected upstream payload")

        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            message = ProviderCaller._error_from_body(data)
            raise MalformedResponseError(message or "Upstream response contained no choices")

        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        content = message.get("content") or ""

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        try:
            tokens = TokenUsage(
                prompt=usage.get("prompt_tokens") or 0,
                completion=usage.get("completion_tokens") or 0,
                total=usage.get("total_tokens") or 0,
            )
        except ValueError as e:
            raise MalformedResponseError(f"Invalid usage block from upstream: {e}")

        return str(content), tokens

    @staticmethod
    def _error_from_body(data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("message"):
            return str(data["message"])
        return None

    @classmethod
    def _extract_error_detail(cls, response: httpx.Response) -> Optional[str]:
        """Prefer the upstream's own error message over the transport error."""
        try:
            data = response.json()
        except ValueError:
            return response.text or None
        return cls._error_from_body(data) or response.text or None

    def _error_result(
        self,
        provider: ProviderConfig,
        detail: str,
        response_time_ms: int,
        status_code: Optional[int] = None
    ) -> ProviderResult:
        logger.error(
            "Provider call failed",
            provider=provider.key,
            status_code=status_code,
            response_time_ms=response_time_ms,
            error=detail
        )
        return ProviderResult.failure(
            provider.key,
            f"{provider.key} Error: {detail}",
            response_time_ms=response_time_ms
        )

    @staticmethod
    def _estimate_cost(provider: ProviderConfig, total_tokens: int) -> float:
        return round(total_tokens / 1000 * provider.cost_per_1k_tokens, 6)
