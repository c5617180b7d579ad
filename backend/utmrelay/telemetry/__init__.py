"""
Telemetry Module
================

Observability for the relay: Sentry error tracking plus the stdlib
logging configured in utmrelay/main.py.

Usage:
    from utmrelay.telemetry import init_sentry, capture_exception

    init_sentry()
    ...
    except Exception as e:
        capture_exception(e, extra={"sale_code": sale_code})
"""

from utmrelay.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
