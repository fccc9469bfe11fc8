"""Circuit breaker module."""

from .breaker import DEFAULT_OPERATION_CLASS, CircuitBreaker, CircuitBreakerBank

__all__ = ["CircuitBreaker", "CircuitBreakerBank", "DEFAULT_OPERATION_CLASS"]
