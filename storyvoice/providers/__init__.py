"""Provider-call infrastructure shared by synthesis backends.

This package contains the audio cache plus retry and circuit-breaker helpers
used around every backend request.
"""

from .cache import AudioCache, make_cache_key
from .retry import CircuitBreaker, CircuitBreakerRegistry, backoff_delay, call_with_retry

__all__ = [
    "AudioCache",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "backoff_delay",
    "call_with_retry",
    "make_cache_key",
]
