"""Aggregate document store.

Keeps response aggregates as documents and exposes atomic, field-level
updates. Every update runs as a single critical section against the
stored document, so concurrent provider completions never overwrite each
other with stale copies. Reads always return detached snapshots.
"""

import asyncio
from datetime import datetime
from typing import Callable, Iterable, Optional

from shared.logging import get_logger
from shared.models import (
    OverallStatus,
    ProviderResult,
    ResponseAggregate,
    ResultStatus,
)

logger = get_logger(__name__)

SORTABLE_FIELDS = ("created_at", "updated_at", "duration_ms", "total_tokens_used")


class AggregateStore:
    """
    In-process document store for response aggregates.

    Responsibilities:
    - Durable create before the submit call returns
    - Update-if-exists patches keyed by provider
    - Atomic narrowing for preferred-response selection
    - Owner-scoped queries for listing and statistics
    """

    def __init__(self) -> None:
        self._documents: dict[str, ResponseAggregate] = {}
        self._lock = asyncio.Lock()

    async def insert(self, aggregate: ResponseAggregate) -> ResponseAggregate:
        """
        Store a new aggregate.

        Raises:
            ValueError: If an aggregate with the same id exists
        """
        async with self._lock:
            if aggregate.id in self._documents:
                raise ValueError(f"Aggregate '{aggregate.id}' already exists")
            self._documents[aggregate.id] = aggregate.model_copy(deep=True)

        logger.debug("Aggregate stored", aggregate_id=aggregate.id, owner=aggregate.owner_id)
        return aggregate.model_copy(deep=True)

    async def get(
        self,
        aggregate_id: str,
        owner_id: Optional[str] = None
    ) -> Optional[ResponseAggregate]:
        """Get a snapshot by id, optionally scoped to its owner."""
        document = self._documents.get(aggregate_id)
        if document is None:
            return None
        if owner_id is not None and document.owner_id != owner_id:
            return None
        return document.model_copy(deep=True)

    async def delete(self, aggregate_id: str, owner_id: Optional[str] = None) -> bool:
        """
        Delete an aggregate.

        Returns:
            True if deleted, False if not found
        """
        async with self._lock:
            document = self._documents.get(aggregate_id)
            if document is None:
                return False
            if owner_id is not None and document.owner_id != owner_id:
                return False
            del self._documents[aggregate_id]

        logger.info("Aggregate deleted", aggregate_id=aggregate_id)
        return True

    async def _modify(
        self,
        aggregate_id: str,
        mutate: Callable[[ResponseAggregate], bool]
    ) -> Optional[ResponseAggregate]:
        """
        Apply ``mutate`` to the stored document in one critical section.

        ``mutate`` returns False when its precondition does not hold; the
        document is then left untouched and None is returned. A missing
        document also yields None.
        """
        async with self._lock:
            document = self._documents.get(aggregate_id)
            if document is None:
                return None

            working = document.model_copy(deep=True)
            if not mutate(working):
                return None

            working.updated_at = datetime.utcnow()
            self._documents[aggregate_id] = working
            return working.model_copy(deep=True)

    async def patch_results(
        self,
        aggregate_id: str,
        results: dict[str, ProviderResult],
        only_if_status: Optional[ResultStatus] = None
    ) -> Optional[ResponseAggregate]:
        """
        Overwrite the given provider results and recompute status.

        Keys that are no longer on the aggregate are skipped, never added.
        With ``only_if_status``, keys whose stored result has another status
        are skipped too. Returns None when nothing was applied or the
        aggregate is missing.
        """
        def apply(document: ResponseAggregate) -> bool:
            applied = [
                key for key in results
                if key in document.results
                and (only_if_status is None or document.results[key].status == only_if_status)
            ]
            if not applied:
                return False
            for key in applied:
                document.results[key] = results[key].model_copy(deep=True)
            document.refresh_status()
            return True

        updated = await self._modify(aggregate_id, apply)
        if updated is None:
            logger.debug(
                "Result patch skipped",
                aggregate_id=aggregate_id,
                providers=list(results)
            )
        return updated

    async def modify_result(
        self,
        aggregate_id: str,
        provider_key: str,
        change: Callable[[ProviderResult], ProviderResult]
    ) -> Optional[ResponseAggregate]:
        """Replace one existing result with ``change(current)`` and recompute."""
        def apply(document: ResponseAggregate) -> bool:
            current = document.results.get(provider_key)
            if current is None:
                return False
            document.results[provider_key] = change(current)
            document.refresh_status()
            return True

        return await self._modify(aggregate_id, apply)

    async def select_result(
        self,
        aggregate_id: str,
        provider_key: str
    ) -> Optional[ResponseAggregate]:
        """
        Collapse an aggregate to a single successful result.

        Only applies while ``provider_key`` holds a success result; every
        other result is removed in the same step.
        """
        def apply(document: ResponseAggregate) -> bool:
            chosen = document.results.get(provider_key)
            if chosen is None or chosen.status != ResultStatus.SUCCESS:
                return False

            document.results = {provider_key: chosen}
            document.selected_provider = provider_key
            document.requested_providers = [provider_key]
            document.settings.enabled_models = [provider_key]
            document.total_count = 1
            # One success out of one: refresh yields completed, 1/1, 0 failed
            document.refresh_status()
            return True

        return await self._modify(aggregate_id, apply)

    async def clear_selection(
        self,
        aggregate_id: str,
        fallback_providers: Iterable[str]
    ) -> Optional[ResponseAggregate]:
        """
        Clear the selected provider.

        Requested providers become the keys still present on the document,
        or ``fallback_providers`` if none remain. Removed results are not
        restored.
        """
        fallback = list(fallback_providers)

        def apply(document: ResponseAggregate) -> bool:
            remaining = list(document.results)
            document.selected_provider = None
            document.requested_providers = remaining or fallback
            document.settings.enabled_models = list(document.requested_providers)
            return True

        return await self._modify(aggregate_id, apply)

    async def find(
        self,
        owner_id: str,
        project_id: Optional[str] = None,
        status: Optional[OverallStatus] = None,
        provider_key: Optional[str] = None,
        provider_status: Optional[ResultStatus] = None,
        search: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        sort_by: str = "created_at",
        descending: bool = True,
        skip: int = 0,
        limit: Optional[int] = None
    ) -> tuple[list[ResponseAggregate], int]:
        """
        Query a user's aggregates.

        Args:
            owner_id: Owner to scope the query to
            project_id: Only aggregates of this project
            status: Only aggregates with this overall status
            provider_key: Only aggregates carrying a result for this provider
            provider_status: With provider_key, require this result status
            search: Case-insensitive substring of the prompt
            created_from: Inclusive lower bound on created_at
            created_to: Inclusive upper bound on created_at
            sort_by: One of SORTABLE_FIELDS
            descending: Sort order
            skip: Number of matches to skip
            limit: Maximum number of matches to return

        Returns:
            Tuple of (page of snapshots, total number of matches)
        """
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort by '{sort_by}'")

        needle = search.lower() if search else None
        matches = []

        for document in self._documents.values():
            if document.owner_id != owner_id:
                continue
            if project_id and document.project_id != project_id:
                continue
            if status and document.overall_status != status:
                continue
            if provider_key:
                result = document.results.get(provider_key)
                if result is None:
                    continue
                if provider_status and result.status != provider_status:
                    continue
            if needle and needle not in document.prompt.lower():
                continue
            if created_from and document.created_at < created_from:
                continue
            if created_to and document.created_at > created_to:
                continue
            matches.append(document)

        matches.sort(key=lambda d: getattr(d, sort_by), reverse=descending)
        total = len(matches)

        page = matches[skip:] if limit is None else matches[skip:skip + limit]
        return [d.model_copy(deep=True) for d in page], total

    def count(self) -> int:
        """Number of stored aggregates."""
        return len(self._documents)
