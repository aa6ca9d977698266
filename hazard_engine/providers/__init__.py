"""
providers: external hazard data sources.

Sub-modules:
    descriptors     static per-provider configuration
    base            shared fetch flow (cache, rate limit, retry, health)
    gov_index       FEMA National Risk Index
    climate_check   ClimateCheck-style per-hazard analyses
    first_street    First Street-style property risk factors
    hydro_monitor   USGS river gauge percentiles
    registry        process-wide registry of clients and shared services
    fallback        sequential first-acceptable-answer executor
"""

from .base import ProviderClient, RequestSpec
from .descriptors import ProviderDescriptor, ProviderKind
from .fallback import FallbackCandidate, FallbackExecutor, FallbackResult
from .registry import ProviderRegistry, default_descriptors

__all__ = [
    "ProviderClient",
    "RequestSpec",
    "ProviderDescriptor",
    "ProviderKind",
    "FallbackCandidate",
    "FallbackExecutor",
    "FallbackResult",
    "ProviderRegistry",
    "default_descriptors",
]
