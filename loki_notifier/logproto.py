#!/usr/bin/env python3
"""
Loki Notifier - Loki push protocol schema.

Protobuf message classes for the Loki push API (package ``logproto``). The
schema is small and stable, so it is declared here as a FileDescriptorProto and
loaded into a private descriptor pool instead of shipping protoc output:

    message PushRequest      { repeated StreamAdapter streams = 1; }
    message StreamAdapter    { bytes labels = 1;
                               repeated EntryAdapter entries = 2;
                               uint64 hash = 3; }
    message EntryAdapter     { google.protobuf.Timestamp timestamp = 1;
                               bytes line = 2;
                               repeated LabelPairAdapter structuredMetadata = 3; }
    message LabelPairAdapter { bytes name = 1; bytes value = 2; }

Field numbers match Grafana Loki's pkg/push/push.proto, so payloads produced
by Promtail, Grafana Agent/Alloy or the Docker logging driver decode
unchanged. Loki declares the text fields as `string` but never validates
their encoding, so shippers forward binary log lines as-is. They are declared
`bytes` here; the decoder turns them into text with invalid UTF-8 replaced.
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory, timestamp_pb2

PROTO_FILE_NAME = "loki_notifier/logproto/push.proto"
PROTO_PACKAGE = "logproto"

_Field = descriptor_pb2.FieldDescriptorProto


def _add_field(message, name, number, field_type, label=_Field.LABEL_OPTIONAL, type_name=None):
    field = message.field.add(name=name, number=number, type=field_type, label=label)
    if type_name:
        field.type_name = type_name
    return field


def build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    """Build the FileDescriptorProto for the push schema."""
    file_proto = descriptor_pb2.FileDescriptorProto(
        name=PROTO_FILE_NAME,
        package=PROTO_PACKAGE,
        syntax="proto3",
    )
    file_proto.dependency.append(timestamp_pb2.DESCRIPTOR.name)

    label_pair = file_proto.message_type.add(name="LabelPairAdapter")
    _add_field(label_pair, "name", 1, _Field.TYPE_BYTES)
    _add_field(label_pair, "value", 2, _Field.TYPE_BYTES)

    entry = file_proto.message_type.add(name="EntryAdapter")
    _add_field(entry, "timestamp", 1, _Field.TYPE_MESSAGE, type_name=".google.protobuf.Timestamp")
    _add_field(entry, "line", 2, _Field.TYPE_BYTES)
    _add_field(entry, "structuredMetadata", 3, _Field.TYPE_MESSAGE,
               label=_Field.LABEL_REPEATED, type_name=".logproto.LabelPairAdapter")

    stream = file_proto.message_type.add(name="StreamAdapter")
    _add_field(stream, "labels", 1, _Field.TYPE_BYTES)
    _add_field(stream, "entries", 2, _Field.TYPE_MESSAGE,
               label=_Field.LABEL_REPEATED, type_name=".logproto.EntryAdapter")
    _add_field(stream, "hash", 3, _Field.TYPE_UINT64)

    push = file_proto.message_type.add(name="PushRequest")
    _add_field(push, "streams", 1, _Field.TYPE_MESSAGE,
               label=_Field.LABEL_REPEATED, type_name=".logproto.StreamAdapter")

    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(timestamp_pb2.DESCRIPTOR.serialized_pb)
_POOL.AddSerializedFile(build_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{PROTO_PACKAGE}.{name}"))


PushRequest = _message_class("PushRequest")
StreamAdapter = _message_class("StreamAdapter")
EntryAdapter = _message_class("EntryAdapter")
LabelPairAdapter = _message_class("LabelPairAdapter")
