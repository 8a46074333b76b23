"""Response Orchestrator - multi-provider fan-out and aggregation.

The orchestrator coordinates:
- Aggregate creation with every requested provider pending
- Detached per-provider calls, each patching only its own result
- Retry of failed providers
- Selection of a preferred response
- Usage statistics
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from shared.logging import get_logger
from shared.models import (
    GenerationOptions,
    GenerationSettings,
    OverallStats,
    OverallStatus,
    ProviderResult,
    ProviderStats,
    ResponseAggregate,
    ResultStatus,
    StatsSummary,
    TokenUsage,
    TERMINAL_STATUSES,
)
from providers.caller import ProviderCaller, ProviderNotEnabledError
from providers.registry import ProviderRegistry
from storage.aggregates import AggregateStore
from storage.projects import ProjectStore, project_name_from_prompt

logger = get_logger(__name__)

MAX_PROMPT_LENGTH = 10000


class OrchestratorError(Exception):
    """Base exception for orchestration errors."""
    status_code = 500


class InvalidRequestError(OrchestratorError):
    """Request failed validation."""
    status_code = 400


class NoProvidersAvailableError(OrchestratorError):
    """None of the requested providers is enabled."""
    status_code = 400

    def __init__(self, message: str = "No AI models are configured and available") -> None:
        super().__init__(message)


class InvalidSelectionError(OrchestratorError):
    """Selected provider has no successful result."""
    status_code = 400


class NothingToRetryError(OrchestratorError):
    """Aggregate has no failed results."""
    status_code = 400

    def __init__(self, message: str = "No failed responses to retry") -> None:
        super().__init__(message)


class AggregateNotFoundError(OrchestratorError):
    """Aggregate does not exist or belongs to someone else."""
    status_code = 404

    def __init__(self, aggregate_id: str) -> None:
        super().__init__(f"AI response '{aggregate_id}' not found")
        self.aggregate_id = aggregate_id


class ResultNotFoundError(OrchestratorError):
    """Aggregate has no result for the provider."""
    status_code = 404

    def __init__(self, provider_key: str) -> None:
        super().__init__(f"Model response '{provider_key}' not found")
        self.provider_key = provider_key


class ProjectNotFoundError(OrchestratorError):
    """Project does not exist or belongs to someone else."""
    status_code = 404


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ResponseOrchestrator:
    """
    Orchestrates one prompt across many providers.

    The aggregate store is the only shared state: each provider task
    writes its own result through an atomic patch, so no in-memory join
    between siblings is needed.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        caller: ProviderCaller,
        store: Optional[AggregateStore] = None,
        projects: Optional[ProjectStore] = None
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            registry: Provider registry
            caller: Provider caller (or anything with the same ``call``)
            store: Aggregate store
            projects: Project store for default projects and selections
        """
        self.registry = registry
        self.caller = caller
        self.store = store or AggregateStore()
        self.projects = projects or ProjectStore()
        self._tasks: set[asyncio.Task] = set()

    # Submission

    async def submit(
        self,
        prompt: str,
        owner_id: str,
        project_id: Optional[str] = None,
        settings: Optional[GenerationSettings] = None,
        previous_response_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> ResponseAggregate:
        """
        Create an aggregate and start every provider call.

        Returns as soon as the aggregate is stored; provider calls run
        detached and report through the store.

        Raises:
            InvalidRequestError: If the prompt is empty or too long
            NoProvidersAvailableError: If no requested provider is enabled
            AggregateNotFoundError: If ``previous_response_id`` is not the caller's
            ProjectNotFoundError: If ``project_id`` is not the caller's
        """
        prompt = (prompt or "").strip()
        if not prompt:
            raise InvalidRequestError("Prompt is required")
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise InvalidRequestError(f"Prompt must not exceed {MAX_PROMPT_LENGTH} characters")

        settings = settings or GenerationSettings()
        providers = self._resolve_providers(settings.enabled_models)

        if previous_response_id and await self.store.get(previous_response_id, owner_id=owner_id) is None:
            raise AggregateNotFoundError(previous_response_id)

        if project_id:
            if await self.projects.get(project_id, owner_id=owner_id) is None:
                raise ProjectNotFoundError(f"Project '{project_id}' not found")
        else:
            project = await self.projects.create(
                owner_id=owner_id,
                name=project_name_from_prompt(prompt),
                settings=GenerationSettings(enabled_models=self.registry.keys()),
            )
            project_id = project.id

        aggregate = ResponseAggregate(
            id=uuid.uuid4().hex,
            prompt=prompt,
            owner_id=owner_id,
            project_id=project_id,
            results={key: ProviderResult.pending(key) for key in providers},
            requested_providers=providers,
            selected_provider=(
                providers[0] if previous_response_id and len(providers) == 1 else None
            ),
            settings=settings.model_copy(update={"enabled_models": providers}),
            total_count=len(providers),
            previous_response_id=previous_response_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        stored = await self.store.insert(aggregate)

        logger.info(
            "Aggregate created",
            aggregate_id=stored.id,
            owner=owner_id,
            providers=providers
        )

        options = self._options_for(stored)
        for key in providers:
            self._dispatch(stored.id, key, prompt, options)

        return stored

    def _resolve_providers(self, requested: Optional[list[str]]) -> list[str]:
        """Requested providers that are actually enabled, in request order."""
        requested = requested or self.registry.keys()
        providers: list[str] = []
        for key in requested:
            if key not in providers and self.registry.is_enabled(key):
                providers.append(key)

        if not providers:
            raise NoProvidersAvailableError()
        return providers

    @staticmethod
    def _options_for(aggregate: ResponseAggregate) -> GenerationOptions:
        return GenerationOptions(
            temperature=aggregate.settings.temperature,
            max_tokens=aggregate.settings.max_tokens,
            previous_response_id=aggregate.previous_response_id,
            owner_id=aggregate.owner_id,
        )

    def _dispatch(
        self,
        aggregate_id: str,
        provider_key: str,
        prompt: str,
        options: GenerationOptions
    ) -> asyncio.Task:
        """Start one detached provider task."""
        task = asyncio.create_task(
            self._run_provider(aggregate_id, provider_key, prompt, options),
            name=f"provider-{provider_key}-{aggregate_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _call_provider(
        self,
        provider_key: str,
        prompt: str,
        options: GenerationOptions
    ) -> ProviderResult:
        """Call one provider; any failure becomes an error result."""
        try:
            return await self.caller.call(provider_key, prompt, options)
        except ProviderNotEnabledError as e:
            return ProviderResult.failure(provider_key, str(e))
        except Exception as e:
            logger.error(
                "Unexpected provider failure",
                provider=provider_key,
                error=str(e),
                exc_info=True
            )
            return ProviderResult.failure(
                provider_key,
                f"{provider_key} Error: {str(e) or 'Failed to generate response'}"
            )

    async def _run_provider(
        self,
        aggregate_id: str,
        provider_key: str,
        prompt: str,
        options: GenerationOptions
    ) -> None:
        result = await self._call_provider(provider_key, prompt, options)

        try:
            updated = await self.store.patch_results(aggregate_id, {provider_key: result})
        except Exception as e:
            logger.error(
                "Failed to record provider result",
                aggregate_id=aggregate_id,
                provider=provider_key,
                error=str(e)
            )
            return

        if updated is None:
            logger.info(
                "Provider result discarded",
                aggregate_id=aggregate_id,
                provider=provider_key
            )
            return

        logger.info(
            "Provider result recorded",
            aggregate_id=aggregate_id,
            provider=provider_key,
            status=result.status.value,
            overall_status=updated.overall_status.value,
            completed=updated.completed_count,
            failed=updated.failed_count,
            total=updated.total_count
        )

    async def wait_for_pending(self, timeout: Optional[float] = None) -> None:
        """Wait until every detached provider task has finished."""
        while self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
            if timeout is not None:
                break

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # Reads

    async def get(self, aggregate_id: str, owner_id: str) -> ResponseAggregate:
        """
        Raises:
            AggregateNotFoundError: If missing or not owned by ``owner_id``
        """
        aggregate = await self.store.get(aggregate_id, owner_id=owner_id)
        if aggregate is None:
            raise AggregateNotFoundError(aggregate_id)
        return aggregate

    async def list_responses(
        self,
        owner_id: str,
        project_id: Optional[str] = None,
        status: Optional[OverallStatus] = None,
        provider_key: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20
    ) -> dict[str, Any]:
        """List a user's aggregates, one page at a time."""
        if page < 1:
            raise InvalidRequestError("Page must be at least 1")
        if not 1 <= limit <= 100:
            raise InvalidRequestError("Limit must be between 1 and 100")

        try:
            items, total = await self.store.find(
                owner_id,
                project_id=project_id,
                status=status,
                provider_key=provider_key,
                search=search,
                sort_by=sort_by,
                descending=sort_order != "asc",
                skip=(page - 1) * limit,
                limit=limit,
            )
        except ValueError as e:
            raise InvalidRequestError(str(e))

        return {
            "items": items,
            "count": total,
            "page": page,
            "total_pages": (total + limit - 1) // limit,
        }

    async def delete(self, aggregate_id: str, owner_id: str) -> None:
        """
        Delete an aggregate. In-flight provider calls are not cancelled;
        their results are dropped when they arrive.
        """
        if not await self.store.delete(aggregate_id, owner_id=owner_id):
            raise AggregateNotFoundError(aggregate_id)

    # Retries

    async def retry_failed(self, aggregate_id: str, owner_id: str) -> ResponseAggregate:
        """
        Re-run every provider currently in error and wait for all of them.

        Only results still in error when the calls finish are replaced.

        Raises:
            AggregateNotFoundError: If the aggregate does not exist
            NothingToRetryError: If no provider is in error
        """
        aggregate = await self.get(aggregate_id, owner_id)
        failed = aggregate.keys_with_status(ResultStatus.ERROR)
        if not failed:
            raise NothingToRetryError()

        logger.info("Retrying failed providers", aggregate_id=aggregate_id, providers=failed)

        options = self._options_for(aggregate)
        results = await asyncio.gather(*(
            self._call_provider(key, aggregate.prompt, options) for key in failed
        ))

        # Keys that left the error state while the calls ran keep their newer result
        updated = await self.store.patch_results(
            aggregate_id,
            dict(zip(failed, results)),
            only_if_status=ResultStatus.ERROR
        )
        if updated is None:
            updated = await self.get(aggregate_id, owner_id)
            logger.info(
                "Retried results discarded",
                aggregate_id=aggregate_id,
                providers=failed
            )
        return updated

    async def retry_provider(
        self,
        aggregate_id: str,
        owner_id: str,
        provider_key: str
    ) -> ResponseAggregate:
        """
        Reset one provider to pending and regenerate it in the background.

        Raises:
            AggregateNotFoundError: If the aggregate does not exist
            ResultNotFoundError: If the aggregate has no result for the provider
            ProviderNotEnabledError: If the provider cannot be called
        """
        aggregate = await self.get(aggregate_id, owner_id)
        if provider_key not in aggregate.results:
            raise ResultNotFoundError(provider_key)
        if not self.registry.is_enabled(provider_key):
            raise ProviderNotEnabledError(provider_key)

        updated = await self.store.patch_results(
            aggregate_id, {provider_key: ProviderResult.pending(provider_key)}
        )
        if updated is None:
            raise ResultNotFoundError(provider_key)

        logger.info("Regenerating provider", aggregate_id=aggregate_id, provider=provider_key)
        self._dispatch(aggregate_id, provider_key, updated.prompt, self._options_for(updated))
        return updated

    # Manual edits

    async def update_result(
        self,
        aggregate_id: str,
        owner_id: str,
        provider_key: str,
        status: ResultStatus,
        response_text: Optional[str] = None,
        error_message: Optional[str] = None,
        token_usage: Optional[TokenUsage] = None,
        response_time_ms: Optional[int] = None
    ) -> ResponseAggregate:
        """Overwrite fields of an existing result (manual correction)."""
        await self.get(aggregate_id, owner_id)

        def change(current: ProviderResult) -> ProviderResult:
            data = current.model_dump()
            data["status"] = status
            if response_text is not None:
                data["response_text"] = response_text
            if error_message is not None:
                data["error_message"] = error_message
            if token_usage is not None:
                data["token_usage"] = token_usage.model_dump()
            if response_time_ms is not None:
                data["response_time_ms"] = response_time_ms
            return ProviderResult.model_validate(data)

        return await self._modify_result(aggregate_id, provider_key, change)

    async def edit_response(
        self,
        aggregate_id: str,
        owner_id: str,
        provider_key: str,
        response_text: str
    ) -> ResponseAggregate:
        """Replace a successful result's text and mark it edited."""
        if not response_text or not response_text.strip():
            raise InvalidRequestError("Response content is required")

        aggregate = await self.get(aggregate_id, owner_id)
        current = aggregate.results.get(provider_key)
        if current is None:
            raise ResultNotFoundError(provider_key)
        if current.status != ResultStatus.SUCCESS:
            raise InvalidRequestError("Only successful responses can be edited")

        def change(result: ProviderResult) -> ProviderResult:
            return result.model_copy(update={"response_text": response_text, "is_edited": True})

        return await self._modify_result(aggregate_id, provider_key, change)

    async def _modify_result(
        self,
        aggregate_id: str,
        provider_key: str,
        change: Callable[[ProviderResult], ProviderResult]
    ) -> ResponseAggregate:
        updated = await self.store.modify_result(aggregate_id, provider_key, change)
        if updated is None:
            if await self.store.get(aggregate_id) is None:
                raise AggregateNotFoundError(aggregate_id)
            raise ResultNotFoundError(provider_key)
        return updated

    # Selection

    async def select_preferred(
        self,
        aggregate_id: str,
        owner_id: str,
        provider_key: str
    ) -> ResponseAggregate:
        """
        Keep only ``provider_key``'s successful result.

        The project's default provider list is narrowed too, on a best
        effort basis.

        Raises:
            AggregateNotFoundError: If the aggregate does not exist
            InvalidSelectionError: If the provider has no successful result
        """
        aggregate = await self.get(aggregate_id, owner_id)
        current = aggregate.results.get(provider_key)
        if current is None or current.status != ResultStatus.SUCCESS:
            raise InvalidSelectionError(
                f"Selected model response '{provider_key}' does not exist or did not succeed"
            )

        updated = await self.store.select_result(aggregate_id, provider_key)
        if updated is None:
            # Deleted or changed between the read and the conditional update
            if await self.store.get(aggregate_id) is None:
                raise AggregateNotFoundError(aggregate_id)
            raise InvalidSelectionError(
                f"Selected model response '{provider_key}' is no longer available"
            )

        logger.info("Preferred response selected", aggregate_id=aggregate_id, provider=provider_key)

        if updated.project_id:
            await self._narrow_project(updated.project_id, provider_key)

        return updated

    async def _narrow_project(self, project_id: str, provider_key: str) -> None:
        try:
            project = await self.projects.set_enabled_models(project_id, [provider_key])
            if project is None:
                logger.warning("Project not found for selection", project_id=project_id)
        except Exception as e:
            logger.warning(
                "Failed to update project providers",
                project_id=project_id,
                provider=provider_key,
                error=str(e)
            )

    async def clear_selection(self, aggregate_id: str, owner_id: str) -> ResponseAggregate:
        """
        Clear the selected provider.

        Results removed by a selection stay removed; only the requested
        provider list is restored so clients can regenerate.
        """
        await self.get(aggregate_id, owner_id)
        updated = await self.store.clear_selection(aggregate_id, self.registry.keys())
        if updated is None:
            raise AggregateNotFoundError(aggregate_id)

        logger.info(
            "Selection cleared",
            aggregate_id=aggregate_id,
            providers=updated.requested_providers
        )
        return updated

    # Statistics

    async def get_stats(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        provider_key: Optional[str] = None
    ) -> StatsSummary:
        """
        Summarize a user's usage.

        With ``provider_key``, only aggregates where that provider
        succeeded are counted in the overall figures.
        """
        start, end = _as_naive_utc(start), _as_naive_utc(end)
        if start and end and end <= start:
            raise InvalidRequestError("End date must be after start date")

        aggregates, _ = await self.store.find(
            owner_id,
            provider_key=provider_key,
            provider_status=ResultStatus.SUCCESS if provider_key else None,
            created_from=start,
            created_to=end,
        )

        overall = OverallStats(total_requests=len(aggregates))
        durations = []
        for aggregate in aggregates:
            overall.total_tokens_used += aggregate.total_tokens_used
            overall.total_cost += aggregate.total_cost
            if aggregate.overall_status == OverallStatus.COMPLETED:
                overall.completed_requests += 1
            elif aggregate.overall_status == OverallStatus.PARTIAL:
                overall.partial_requests += 1
            elif aggregate.overall_status == OverallStatus.FAILED:
                overall.failed_requests += 1
            else:
                overall.processing_requests += 1
            if aggregate.overall_status in TERMINAL_STATUSES:
                durations.append(aggregate.duration_ms)

        overall.total_cost = round(overall.total_cost, 6)
        if durations:
            overall.avg_duration_ms = sum(durations) / len(durations)

        provider_stats: dict[str, ProviderStats] = {}
        all_aggregates, _ = await self.store.find(owner_id, created_from=start, created_to=end)

        for key in self.registry.keys():
            successes = [
                a.results[key] for a in all_aggregates
                if key in a.results and a.results[key].status == ResultStatus.SUCCESS
            ]
            stats = ProviderStats(
                successful_responses=len(successes),
                total_tokens=sum(r.token_usage.total for r in successes),
            )
            if successes:
                stats.avg_response_time_ms = (
                    sum(r.response_time_ms for r in successes) / len(successes)
                )
            provider_stats[key] = stats

        return StatsSummary(
            overall=overall,
            provider_stats=provider_stats,
            provider_status=self.registry.status(),
        )

    def provider_status(self) -> list[dict[str, Any]]:
        return self.registry.status()
