"""
hazard_engine: multi-source climate hazard risk aggregation.

Sub-packages:
    core/        config, logging, errors, cache, rate limiting, health
    providers/   provider descriptors, HTTP clients, registry, fallback
    scoring/     data model, normalization table, aggregation engine
    api/         FastAPI schemas and routes
"""

__version__ = "1.0.0"
