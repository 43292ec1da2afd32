"""Rate-limit detection, backoff, and fallback resolution."""

from ralph.ratelimit.backoff import (
    BACKOFF_BASE_MS,
    BACKOFF_MAX_MS,
    BackoffPolicy,
    BackoffState,
    calculate_backoff_ms,
)
from ralph.ratelimit.detector import (
    RateLimitDetector,
    RateLimitVerdict,
    extract_retry_after,
    rate_limit_detector,
)
from ralph.ratelimit.fallback import FallbackResolver, parse_fallback_pairs

__all__ = [
    "BACKOFF_BASE_MS",
    "BACKOFF_MAX_MS",
    "BackoffPolicy",
    "BackoffState",
    "FallbackResolver",
    "RateLimitDetector",
    "RateLimitVerdict",
    "calculate_backoff_ms",
    "extract_retry_after",
    "parse_fallback_pairs",
    "rate_limit_detector",
]
