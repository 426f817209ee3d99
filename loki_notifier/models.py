#!/usr/bin/env python3
"""
Loki Notifier - Shared data model.

Value types passed between the decoder, the HTTP handler and the dispatch
workers. Everything here is immutable once built.
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Entry:
    """One log line and its timestamp (nanoseconds since the epoch)."""
    line: str
    timestamp_ns: int = 0
    structured_metadata: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Stream:
    """A raw label string plus its ordered entries."""
    labels: str
    entries: Tuple[Entry, ...] = ()
    hash: int = 0


@dataclass(frozen=True)
class PushPayload:
    streams: Tuple[Stream, ...] = ()


@dataclass(frozen=True)
class ChannelRule:
    """Routing rule: streams whose container/service contains `needle` go to this chat."""
    name: str
    needle: str
    token: str = field(repr=False, default="")
    chat_id: int = 0

    @property
    def has_credentials(self) -> bool:
        return bool(self.token) and self.chat_id != 0


@dataclass(frozen=True)
class Destination:
    name: str
    token: str = field(repr=False)
    chat_id: int


@dataclass(frozen=True)
class NotificationJob:
    """Everything a dispatch worker needs to route, format and send one entry."""
    container_name: str
    service_name: str
    raw_labels: str
    labels: Mapping[str, str]
    entry: Entry
    correlation_id: str = "system"


@dataclass(frozen=True)
class DispatchResult:
    """
    Outcome of a single dispatch.

    status is one of: success, fail_client, fail_send
    """
    status: str
    destination: str
    chat_id: int
    error: Optional[str] = None
    latency: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def as_log_fields(self) -> Dict[str, object]:
        return {
            "dispatch_status": self.status,
            "destination": self.destination,
            "chat_id": self.chat_id,
            "latency_ms": round(self.latency * 1000, 1),
        }
