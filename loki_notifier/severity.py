#!/usr/bin/env python3
"""
Loki Notifier - Severity filter.

A line is notifiable when it contains "error", "warning" or "fatal" anywhere,
case-sensitive, with no word boundaries: "errorless" matches, "ERROR" does
not. Level labels and structured log fields are not consulted.
"""

from typing import Tuple

NOTIFY_KEYWORDS: Tuple[str, ...] = ("error", "warning", "fatal")


def is_notifiable(line: str) -> bool:
    """Return True if the log line should produce a notification."""
    return any(keyword in line for keyword in NOTIFY_KEYWORDS)
