"""Reason codes recorded against terminal outcomes.

These codes are persisted as the ``reason`` of each processed-log entry and
included in structured logs so that a summary can explain why a recording
failed. Keep them stable; reports group by them.
"""

from __future__ import annotations


class ErrorCode:
    ACTION_NOT_FOUND = "action_not_found"
    PROCESS_TIMEOUT = "process_timeout"
    STUCK_TIMEOUT = "stuck_timeout"
    NAVIGATION_FAILED = "navigation_failed"
    RATE_LIMIT_EXHAUSTED = "rate_limit_exhausted"
    EXPORT_UNCONFIRMED = "export_unconfirmed"
    EXTRACTION = "extraction_failed"
    INTERNAL = "internal_error"


__all__ = ["ErrorCode"]
