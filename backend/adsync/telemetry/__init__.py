"""
Telemetry Module
================

Error tracking for the sync API and worker.

Usage:
    from adsync.telemetry import init_sentry, capture_exception
"""

from adsync.telemetry.sentry import capture_exception, init_sentry

__all__ = [
    "init_sentry",
    "capture_exception",
]
