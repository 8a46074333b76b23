"""Shared models, configuration and logging for the response gateway."""

from shared.models import (
    GenerationOptions,
    GenerationSettings,
    OverallStatus,
    ProviderConfig,
    ProviderResult,
    ResponseAggregate,
    ResultStatus,
    TokenUsage,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "GenerationOptions",
    "GenerationSettings",
    "OverallStatus",
    "ProviderConfig",
    "ProviderResult",
    "ResponseAggregate",
    "ResultStatus",
    "TokenUsage",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
