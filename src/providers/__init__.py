"""Providers - catalog and upstream calls.

The registry resolves which upstream models are available; the caller
performs one chat-completion request per provider and reports the outcome
as data.
"""

from providers.registry import ProviderRegistry
from providers.caller import ProviderCaller, ProviderCallerError, ProviderNotEnabledError

__all__ = [
    "ProviderRegistry",
    "ProviderCaller",
    "ProviderCallerError",
    "ProviderNotEnabledError",
]
