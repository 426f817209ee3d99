#!/usr/bin/env python3
"""
Loki Notifier - Channel routing.

Maps a stream's container/service identity to a Telegram destination using
the configured channel rules.
"""

from typing import Optional, Sequence, Tuple

from loki_notifier.logging_utils import get_logger
from loki_notifier.models import ChannelRule, Destination

logger = get_logger(__name__)

DEFAULT_DESTINATION_NAME = "default"


class ChannelRouter:
    """
    Resolves the destination for a notification.

    Rules are checked in declaration order and the first rule whose needle is
    a substring of the container name or of the service name wins. When no
    rule matches, or the matching rule has no usable credentials, the default
    destination is returned, so every entry is routable.
    """

    def __init__(self, rules: Sequence[ChannelRule], default: Destination):
        self.rules: Tuple[ChannelRule, ...] = tuple(rules)
        self.default = default

    def find_rule(self, container_name: Optional[str], service_name: Optional[str]) -> Optional[ChannelRule]:
        """Return the first rule matching either name, or None."""
        container_name = container_name or ""
        service_name = service_name or ""

        for rule in self.rules:
            if not rule.needle:
                continue
            if rule.needle in container_name or rule.needle in service_name:
                return rule

        return None

    def resolve(self, container_name: Optional[str], service_name: Optional[str]) -> Destination:
        rule = self.find_rule(container_name, service_name)

        if rule is None:
            return self.default

        if not rule.has_credentials:
            logger.warning(f"Channel '{rule.name}' matched but has no token/chat id; using default destination")
            return self.default

        return Destination(name=rule.name, token=rule.token, chat_id=rule.chat_id)
