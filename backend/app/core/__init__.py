"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    health      — health check aggregation
    database    — async PostgreSQL connection (rain readings)
    cache       — Redis cache for accumulated series
    middleware  — request logging & correlation IDs
"""
