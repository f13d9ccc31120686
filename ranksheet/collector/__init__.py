"""
Signal Collector

Fetches keyword signals and product metadata from the upstream providers.
"""

from .client import (
    KeywordAsinItem,
    RetryConfig,
    SignalClient,
    SignalProvider,
    analytics_breaker_config,
    catalog_breaker_config,
)

__all__ = [
    "KeywordAsinItem",
    "RetryConfig",
    "SignalClient",
    "SignalProvider",
    "analytics_breaker_config",
    "catalog_breaker_config",
]
