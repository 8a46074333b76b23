"""Orchestrator - multi-provider response aggregation.

Creates response aggregates, fans prompts out to providers without
blocking the client, and applies retries and selections.
"""

from orchestrator.service import (
    AggregateNotFoundError,
    InvalidRequestError,
    InvalidSelectionError,
    NoProvidersAvailableError,
    NothingToRetryError,
    OrchestratorError,
    ResponseOrchestrator,
    ResultNotFoundError,
)

__all__ = [
    "AggregateNotFoundError",
    "InvalidRequestError",
    "InvalidSelectionError",
    "NoProvidersAvailableError",
    "NothingToRetryError",
    "OrchestratorError",
    "ResponseOrchestrator",
    "ResultNotFoundError",
]
