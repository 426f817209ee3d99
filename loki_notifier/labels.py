#!/usr/bin/env python3
"""
Loki Notifier - Label string parser.

Turns a Loki stream label string such as

    {container_name="web", level="error"}

into a plain dict. Promtail and some relabeling pipelines emit values with
escaped quotes instead (container_name=\\"web\\"); both forms may appear in the
same string.

Grammar (scanned left to right, first alternative that matches wins):

    escaped pair:  key=\\"value\\"   value may contain backslash escapes,
                                     kept verbatim
    plain pair:    key="value"       value may not contain a double quote

Anything that matches neither form is dropped. Parsing never raises; a label
string with no recognizable pairs yields an empty dict. On duplicate keys the
last occurrence wins.
"""

import re
from typing import Dict

# key=\"value\" (value may contain \x escape sequences, including \")
ESCAPED_PAIR = r'(?P<ekey>\w+)=\\"(?P<evalue>[^"\\]*(?:\\.[^"\\]*)*)\\"'

# key="value"
PLAIN_PAIR = r'(?P<pkey>\w+)="(?P<pvalue>[^"]*)"'

_LABEL_PAIR_RE = re.compile(f"{ESCAPED_PAIR}|{PLAIN_PAIR}", re.ASCII)


def parse_labels(label_str: str) -> Dict[str, str]:
    """
    Parse a brace-delimited label string into a key -> value mapping.

    Args:
        label_str: Raw label string from a push stream.

    Returns:
        dict: Label values keyed by label name (possibly empty).
    """
    labels: Dict[str, str] = {}
    if not label_str:
        return labels

    body = label_str.strip("{}")

    for match in _LABEL_PAIR_RE.finditer(body):
        if match.group("ekey"):
            labels[match.group("ekey")] = match.group("evalue")
        else:
            labels[match.group("pkey")] = match.group("pvalue")

    return labels
