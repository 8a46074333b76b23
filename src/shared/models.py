"""Core data models for the response gateway.

This module defines the provider catalog entries, the per-provider results
and the persisted response aggregate that owns the status invariants.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


class ResultStatus(str, Enum):
    """Lifecycle of a single provider call."""
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class OverallStatus(str, Enum):
    """Aggregate status derived from all provider results."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    OverallStatus.COMPLETED,
    OverallStatus.PARTIAL,
    OverallStatus.FAILED,
})


class ProviderDefinition(BaseModel):
    """Catalog entry for an upstream model, as written in configuration."""
    key: str = Field(..., description="Short provider key, e.g. gemini")
    display_name: str
    upstream_model_id: str = Field(..., description="Model identifier sent to the gateway")
    api_key_env: Optional[str] = Field(
        default=None,
        description="Environment variable holding a provider-specific credential"
    )
    cost_per_1k_tokens: float = Field(default=0.0, ge=0)


class ProviderConfig(BaseModel):
    """Resolved, read-only provider configuration."""
    key: str
    display_name: str
    upstream_model_id: str
    credential: Optional[str] = Field(default=None, repr=False)
    enabled: bool = False
    cost_per_1k_tokens: float = 0.0

    model_config = {"frozen": True}

    @property
    def configured(self) -> bool:
        """Whether a real credential is available."""
        return bool(self.credential)


class TokenUsage(BaseModel):
    """Token counts reported by the upstream."""
    prompt: int = Field(default=0, ge=0)
    completion: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class ProviderResult(BaseModel):
    """
    Outcome of one provider call within an aggregate.

    Errors never carry response text and successes never carry an error
    message; the validator normalizes both.
    """
    provider_key: str
    response_text: str = ""
    status: ResultStatus = ResultStatus.PENDING
    error_message: Optional[str] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    response_time_ms: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0)
    is_edited: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def _normalize_for_status(self) -> "ProviderResult":
        if self.status == ResultStatus.ERROR:
            self.response_text = ""
            if not self.error_message:
                self.error_message = f"{self.provider_key} Error: unknown error"
        elif self.status == ResultStatus.SUCCESS:
            self.error_message = None
        return self

    @classmethod
    def pending(cls, provider_key: str) -> "ProviderResult":
        """Placeholder stored until the provider reports."""
        return cls(provider_key=provider_key)

    @classmethod
    def failure(
        cls,
        provider_key: str,
        message: str,
        response_time_ms: int = 0
    ) -> "ProviderResult":
        """Error result with zeroed usage."""
        return cls(
            provider_key=provider_key,
            status=ResultStatus.ERROR,
            error_message=message,
            response_time_ms=response_time_ms,
        )


class GenerationSettings(BaseModel):
    """Per-request generation settings."""
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=2000, ge=1, le=8000)
    enabled_models: Optional[list[str]] = Field(default=None, min_length=1)


class GenerationOptions(BaseModel):
    """Options for a single provider call."""
    temperature: float = 0.7
    max_tokens: int = 2000
    previous_response_id: Optional[str] = None
    owner_id: Optional[str] = Field(default=None, description="Owner the previous response must belong to")


class ResponseAggregate(BaseModel):
    """
    One prompt submission and every provider's outcome for it.

    Counters and the overall status are always derived from ``results``
    by :meth:`refresh_status`, never incremented in place.
    """
    id: str
    prompt: str
    owner_id: str
    project_id: Optional[str] = None
    results: dict[str, ProviderResult] = Field(default_factory=dict)
    requested_providers: list[str] = Field(default_factory=list)
    selected_provider: Optional[str] = None
    settings: GenerationSettings = Field(default_factory=GenerationSettings)

    overall_status: OverallStatus = OverallStatus.PROCESSING
    total_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    total_tokens_used: int = 0
    total_cost: float = 0.0

    started_at: datetime = Field(default_factory=datetime.utcnow)
    ended_at: Optional[datetime] = None
    duration_ms: int = 0

    previous_response_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in TERMINAL_STATUSES

    def keys_with_status(self, status: ResultStatus) -> list[str]:
        """Provider keys whose result currently has ``status``."""
        return [key for key, result in self.results.items() if result.status == status]

    def refresh_status(self, now: Optional[datetime] = None) -> None:
        """
        Recompute counters and overall status from the current results.

        Safe to call any number of times in any order. ``ended_at`` and
        ``duration_ms`` are only written the first time a terminal status
        is reached.
        """
        completed = 0
        failed = 0
        tokens = 0
        cost = 0.0

        for result in self.results.values():
            if result.status == ResultStatus.SUCCESS:
                completed += 1
                tokens += result.token_usage.total
                cost += result.cost
            elif result.status == ResultStatus.ERROR:
                failed += 1

        self.completed_count = completed
        self.failed_count = failed
        self.total_tokens_used = tokens
        self.total_cost = round(cost, 6)

        if completed == self.total_count:
            self.overall_status = OverallStatus.COMPLETED
        elif completed + failed == self.total_count:
            self.overall_status = (
                OverallStatus.PARTIAL if completed > 0 else OverallStatus.FAILED
            )
        else:
            self.overall_status = OverallStatus.PROCESSING

        if self.is_terminal and self.ended_at is None:
            self.ended_at = now or datetime.utcnow()
            delta = self.ended_at - self.started_at
            self.duration_ms = max(int(delta.total_seconds() * 1000), 0)


class Project(BaseModel):
    """Minimal project record holding default generation settings."""
    id: str
    name: str
    owner_id: str
    settings: GenerationSettings = Field(default_factory=GenerationSettings)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class UserContext(BaseModel):
    """Authenticated caller identity."""
    user_id: str
    username: str = ""
    email: Optional[str] = None
    roles: list[str] = Field(default_factory=list)


class ProviderStats(BaseModel):
    """Per-provider usage summary."""
    successful_responses: int = 0
    total_tokens: int = 0
    avg_response_time_ms: float = 0


class OverallStats(BaseModel):
    """Usage summary across a user's aggregates."""
    total_requests: int = 0
    completed_requests: int = 0
    partial_requests: int = 0
    failed_requests: int = 0
    processing_requests: int = 0
    total_tokens_used: int = 0
    total_cost: float = 0.0
    avg_duration_ms: float = 0


class StatsSummary(BaseModel):
    """Result of a statistics query."""
    overall: OverallStats = Field(default_factory=OverallStats)
    provider_stats: dict[str, ProviderStats] = Field(default_factory=dict)
    provider_status: list[dict[str, Any]] = Field(default_factory=list)
