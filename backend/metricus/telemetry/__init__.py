"""
Telemetry Module
================

Error reporting for the metricus backend.

Usage:
    from metricus.telemetry import init_sentry, capture_exception
"""

from metricus.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
