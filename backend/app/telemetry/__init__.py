"""
Telemetry Module
================

Observability for the tracking API.

Components:
- sentry.py: Error tracking (unexpected failures inside funnel steps)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (optional)

Usage:
    from app.telemetry import init_sentry, capture_exception

Related modules:
- app/main.py: Initializes Sentry in create_app()
- app/services/funnel_bridge.py: Reports exceptions converted into failed results
"""

from app.telemetry.sentry import capture_exception, init_sentry

__all__ = [
    "init_sentry",
    "capture_exception",
]
