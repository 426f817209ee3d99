#!/usr/bin/env python3
"""
Loki Notifier - Telegram MarkdownV2 message formatting.

Field order of an alert body (each line emitted only when its value is
non-empty, except the log line which is always present):

    *Level:* `...`
    *Labels:* `...`        only when both container and service are empty
    *Container:* `...`
    *Service:* `...`
    ```
    <log line, verbatim>
    ```
    *File:* `...`
    *Host:* `...`
    *IpAddress:* `...`
    *Time:* `...`
"""

from typing import List, Mapping

# Characters Telegram MarkdownV2 treats as markup outside code blocks.
MARKDOWN_V2_SPECIAL_CHARS = "_*[]()~`>#+-=|{}.!"

_ESCAPE_TABLE = str.maketrans({char: "\\" + char for char in MARKDOWN_V2_SPECIAL_CHARS})

# (label key, field title) rendered after the code block
TRAILING_FIELDS = (
    ("filename", "File"),
    ("host", "Host"),
    ("ip", "IpAddress"),
    ("time", "Time"),
)


def escape_markdown_v2(text: str) -> str:
    """Prefix every MarkdownV2 special character with a backslash."""
    return text.translate(_ESCAPE_TABLE)


def _field(title: str, value: str) -> str:
    return f"*{title}:* `{escape_markdown_v2(value)}`\n"


def format_alert(
    container_name: str,
    service_name: str,
    labels: Mapping[str, str],
    raw_labels: str,
    line: str,
) -> str:
    """
    Build the alert body for one log line.

    Args:
        container_name: container_name label ('' when absent)
        service_name: service_name label ('' when absent)
        labels: Parsed label map of the stream
        raw_labels: Unparsed label string, shown when no container/service is known
        line: The log line, placed verbatim in a code block

    Returns:
        str: MarkdownV2 message text
    """
    container_name = container_name or ""
    service_name = service_name or ""
    parts: List[str] = []

    level = labels.get("level", "")
    if level:
        parts.append(_field("Level", level))

    if not container_name and not service_name and raw_labels:
        parts.append(_field("Labels", raw_labels))

    if container_name:
        parts.append(_field("Container", container_name))

    if service_name:
        parts.append(_field("Service", service_name))

    parts.append(f"```\n{line}\n```\n")

    for key, title in TRAILING_FIELDS:
        value = labels.get(key, "")
        if value:
            parts.append(_field(title, value))

    return "".join(parts)
