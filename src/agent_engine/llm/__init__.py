from __future__ import annotations

from .client import FakeProviderClient, OpenAIProviderClient, ProviderClient, ProviderTarget
from .retry import FailureKind, ProviderFailure, RetryDecision, RetryPolicy, classify

__all__ = [
    "FailureKind",
    "FakeProviderClient",
    "OpenAIProviderClient",
    "ProviderClient",
    "ProviderFailure",
    "ProviderTarget",
    "RetryDecision",
    "RetryPolicy",
    "classify",
]
