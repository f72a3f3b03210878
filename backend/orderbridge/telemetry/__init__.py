"""
Telemetry Module
================

Error tracking for the conversion pipeline.

Components:
- sentry.py: Error tracking (webhook handler, queue worker)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (optional; telemetry is a no-op without it)

Usage:
    from orderbridge.telemetry import init_sentry

    # Initialize on app/worker startup
    init_sentry()
"""

from orderbridge.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
