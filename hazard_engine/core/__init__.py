"""
Core package: cross-cutting concerns.

Modules:
    config          environment variables & settings
    logging_config  structured JSON / pretty logging
    middleware      request IDs and timing
    errors          exception hierarchy & handlers
    rate_limiter    per-provider sliding-window limiter
    cache           TTL cache over memory or Redis
    health          provider health monitor & /health report
"""
