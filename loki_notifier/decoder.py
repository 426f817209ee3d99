#!/usr/bin/env python3
"""
Loki Notifier - Push payload decoder.

Decodes the body of a Loki push request: snappy block-compressed bytes
wrapping a protobuf ``logproto.PushRequest``. Decoding is all-or-nothing; a
payload that fails either step raises and no stream from it is processed.

The encoder is the exact inverse and is used by the push sender script and
the tests.
"""

from typing import Iterable, Sequence

import snappy
from google.protobuf.message import DecodeError as ProtobufDecodeError

from loki_notifier.logproto import PushRequest
from loki_notifier.models import Entry, PushPayload, Stream

NANOS_PER_SECOND = 1_000_000_000


class DecodeError(Exception):
    """Raised when a push payload cannot be decoded."""


class DecompressionError(DecodeError):
    """Payload is not valid snappy block-compressed data."""


class DeserializationError(DecodeError):
    """Decompressed bytes are not a valid PushRequest."""


def decode_push_request(body: bytes) -> PushPayload:
    """
    Decompress and deserialize a push request body.

    Invalid UTF-8 in labels, lines or metadata is replaced with U+FFFD
    rather than rejecting the payload.

    Args:
        body: Raw HTTP request body.

    Returns:
        PushPayload: Streams in payload order.

    Raises:
        DecompressionError: snappy decoding failed.
        DeserializationError: protobuf decoding failed.
    """
    try:
        raw = snappy.decompress(body)
    except Exception as e:
        raise DecompressionError(f"snappy: {e}") from e

    try:
        request = PushRequest.FromString(raw)
    except (ProtobufDecodeError, ValueError) as e:
        raise DeserializationError(f"protobuf: {e}") from e

    return PushPayload(streams=tuple(_stream_from_proto(s) for s in request.streams))


def _text(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


def _stream_from_proto(proto_stream) -> Stream:
    entries = tuple(
        Entry(
            line=_text(proto_entry.line),
            timestamp_ns=proto_entry.timestamp.seconds * NANOS_PER_SECOND + proto_entry.timestamp.nanos,
            structured_metadata=tuple((_text(p.name), _text(p.value)) for p in proto_entry.structuredMetadata),
        )
        for proto_entry in proto_stream.entries
    )
    return Stream(labels=_text(proto_stream.labels), entries=entries, hash=proto_stream.hash)


def encode_push_request(streams: Iterable[Stream]) -> bytes:
    """Serialize and snappy-compress streams into a push request body."""
    request = PushRequest()
    for stream in streams:
        proto_stream = request.streams.add()
        proto_stream.labels = stream.labels.encode("utf-8")
        proto_stream.hash = stream.hash
        _fill_entries(proto_stream, stream.entries)
    return snappy.compress(request.SerializeToString())


def _fill_entries(proto_stream, entries: Sequence[Entry]) -> None:
    for entry in entries:
        proto_entry = proto_stream.entries.add()
        proto_entry.line = entry.line.encode("utf-8")
        seconds, nanos = divmod(entry.timestamp_ns, NANOS_PER_SECOND)
        proto_entry.timestamp.seconds = seconds
        proto_entry.timestamp.nanos = nanos
        for name, value in entry.structured_metadata:
            proto_entry.structuredMetadata.add(name=name.encode("utf-8"), value=value.encode("utf-8"))
