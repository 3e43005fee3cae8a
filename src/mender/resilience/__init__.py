"""Provider resilience — rate-limit backoff, health tracking, failover."""
