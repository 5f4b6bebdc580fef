"""Push-server frame schema.

The protobuf descriptors are built at runtime from the table below, inside a
private ``DescriptorPool`` owned by each ``PullSchema``. Nothing is
registered in the process-wide default pool, so two pull clients never share
decoder state.
"""

from __future__ import annotations

from typing import Any

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "pushserver"
FILE_NAME = "push_server.proto"

_F = descriptor_pb2.FieldDescriptorProto

# message -> [(field, number, type, repeated, type_name, oneof)]
MESSAGE_FIELDS: dict[str, list[tuple[str, int, int, bool, str | None, str | None]]] = {
    "Receiver": [
        ("id", 1, _F.TYPE_BYTES, False, None, None),
        ("is_private", 2, _F.TYPE_BOOL, False, None, None),
        ("signature", 3, _F.TYPE_BYTES, False, None, None),
    ],
    "Sender": [
        ("type", 1, _F.TYPE_ENUM, False, "SenderType", None),
        ("id", 2, _F.TYPE_BYTES, False, None, None),
    ],
    "IncomingMessage": [
        ("receivers", 1, _F.TYPE_MESSAGE, True, "Receiver", None),
        ("sender", 2, _F.TYPE_MESSAGE, False, "Sender", None),
        ("body", 3, _F.TYPE_STRING, False, None, None),
        ("expiry", 4, _F.TYPE_UINT32, False, None, None),
        ("type", 5, _F.TYPE_STRING, False, None, None),
    ],
    "IncomingMessagesRequest": [
        ("messages", 1, _F.TYPE_MESSAGE, True, "IncomingMessage", None),
    ],
    "ChannelStatsRequest": [
        ("channels", 1, _F.TYPE_MESSAGE, True, "Receiver", None),
    ],
    "ServerStatsRequest": [],
    "Request": [
        ("incoming_messages", 1, _F.TYPE_MESSAGE, False, "IncomingMessagesRequest", "command"),
        ("channel_stats", 2, _F.TYPE_MESSAGE, False, "ChannelStatsRequest", "command"),
        ("server_stats", 3, _F.TYPE_MESSAGE, False, "ServerStatsRequest", "command"),
    ],
    "RequestBatch": [
        ("requests", 1, _F.TYPE_MESSAGE, True, "Request", None),
    ],
    "OutgoingMessage": [
        ("id", 1, _F.TYPE_BYTES, False, None, None),
        ("body", 2, _F.TYPE_STRING, False, None, None),
        ("expiry", 3, _F.TYPE_UINT32, False, None, None),
        ("created", 4, _F.TYPE_FIXED32, False, None, None),
        ("sender", 5, _F.TYPE_MESSAGE, False, "Sender", None),
    ],
    "OutgoingMessagesResponse": [
        ("messages", 1, _F.TYPE_MESSAGE, True, "OutgoingMessage", None),
    ],
    "ChannelStats": [
        ("id", 1, _F.TYPE_BYTES, False, None, None),
        ("is_private", 2, _F.TYPE_BOOL, False, None, None),
        ("is_online", 3, _F.TYPE_BOOL, False, None, None),
    ],
    "ChannelStatsResponse": [
        ("channels", 1, _F.TYPE_MESSAGE, True, "ChannelStats", None),
    ],
    "JsonResponse": [
        ("json", 1, _F.TYPE_STRING, False, None, None),
    ],
    "Response": [
        ("outgoing_messages", 1, _F.TYPE_MESSAGE, False, "OutgoingMessagesResponse", "command"),
        ("channel_stats", 2, _F.TYPE_MESSAGE, False, "ChannelStatsResponse", "command"),
        ("server_stats", 3, _F.TYPE_MESSAGE, False, "JsonResponse", "command"),
    ],
    "ResponseBatch": [
        ("responses", 1, _F.TYPE_MESSAGE, True, "Response", None),
    ],
}

SENDER_TYPES = {"UNKNOWN": 0, "CLIENT": 1, "BACKEND": 2}


def build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    """FileDescriptorProto for the push-server frames."""
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_proto.name = FILE_NAME
    file_proto.package = PACKAGE
    file_proto.syntax = "proto3"

    enum_proto = file_proto.enum_type.add()
    enum_proto.name = "SenderType"
    for name, number in SENDER_TYPES.items():
        value = enum_proto.value.add()
        value.name = name
        value.number = number

    for message_name, fields in MESSAGE_FIELDS.items():
        message_proto = file_proto.message_type.add()
        message_proto.name = message_name
        oneofs: list[str] = []
        for name, number, field_type, repeated, type_name, oneof in fields:
            field_proto = message_proto.field.add()
            field_proto.name = name
            field_proto.number = number
            field_proto.type = field_type
            field_proto.label = _F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL
            if type_name:
                field_proto.type_name = f".{PACKAGE}.{type_name}"
            if oneof:
                if oneof not in oneofs:
                    oneofs.append(oneof)
                    message_proto.oneof_decl.add().name = oneof
                field_proto.oneof_index = oneofs.index(oneof)
    return file_proto


class PullSchema:
    """Message classes for one pull connection.

    Attributes are the generated classes, e.g. ``schema.ResponseBatch``.
    """

    def __init__(self) -> None:
        self._pool = descriptor_pool.DescriptorPool()
        self._pool.AddSerializedFile(build_file_descriptor().SerializeToString())
        self._classes: dict[str, type] = {}
        for name in MESSAGE_FIELDS:
            descriptor = self._pool.FindMessageTypeByName(f"{PACKAGE}.{name}")
            self._classes[name] = message_factory.GetMessageClass(descriptor)

    def __getattr__(self, name: str) -> Any:
        classes = self.__dict__.get("_classes", {})
        if name in classes:
            return classes[name]
        raise AttributeError(name)

    def message_names(self) -> tuple[str, ...]:
        return tuple(self._classes)
