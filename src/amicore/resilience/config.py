"""Circuit breaker configuration presets."""

from __future__ import annotations

from amicore.resilience.models import CircuitBreakerConfig


def create_default_circuit_breaker() -> CircuitBreakerConfig:
    """Create default circuit breaker configuration.

    Returns:
        Circuit breaker configuration with sensible defaults
    """
    return CircuitBreakerConfig(
        failure_threshold=5,
        success_threshold=3,
        recovery_timeout_seconds=60.0,
        timeout_seconds=30.0,
        monitor_window_seconds=300.0,
    )


def create_ami_circuit_breaker() -> CircuitBreakerConfig:
    """Create configuration tuned for manager-interface actions.

    Actions are short request/response exchanges, so the per-call timeout
    is tight and the circuit trips after fewer failures.

    Returns:
        Circuit breaker configuration for AMI traffic
    """
    return CircuitBreakerConfig(
        failure_threshold=3,
        success_threshold=2,
        recovery_timeout_seconds=30.0,
        timeout_seconds=10.0,  # matches the default AMI read timeout
        monitor_window_seconds=300.0,
    )
