"""
Telemetry Module
================

Error tracking for shopsync (Sentry). Logging itself uses the stdlib
`logging` module configured in shopsync/main.py.

Usage:
    from shopsync.telemetry import init_sentry, capture_exception
"""

from shopsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
