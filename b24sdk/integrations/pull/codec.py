"""Frame codec for the pull channel.

The wire format follows the push server version:

- 5 and newer: JSON-RPC 2.0 text frames; events arrive as ``incoming.message``
  requests, the server pings with a bare ``ping`` and expects ``pong``, and
  every delivered message is acknowledged with ``mack:<mid>``.
- 4: binary frames, protobuf ``ResponseBatch`` messages whose outgoing
  messages carry a JSON body ``{"module_id", "command", "params", "extra"}``.
- older: plain text, every event wrapped in ``#!NGINXNMS!#...#!NGINXNME!#``.
  Long-polling answers use the same framing.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from google.protobuf.message import DecodeError as ProtobufDecodeError

from b24sdk.core.errors import DecodeError
from b24sdk.core.logging import safe_preview
from b24sdk.integrations.pull.schema import PullSchema

logger = logging.getLogger(__name__)

PLAIN_TEXT_FRAME_RE = re.compile(r"#!NGINXNMS!#(.*?)#!NGINXNME!#", re.DOTALL)

SENDER_UNKNOWN = 0
SENDER_CLIENT = 1
SENDER_BACKEND = 2

DEFAULT_SERVER_VERSION = 4

JSON_RPC_VERSION = "2.0"
JSON_RPC_PING = "ping"
JSON_RPC_PONG = "pong"
RPC_INCOMING_MESSAGE = "incoming.message"
RPC_PUBLISH = "publish"


class PullProtocol(str, Enum):
    PLAIN_TEXT = "plain_text"
    PROTOBUF = "protobuf"
    JSON_RPC = "json_rpc"

    @classmethod
    def for_server_version(cls, version: int) -> PullProtocol:
        if version >= 5:
            return cls.JSON_RPC
        if version == 4:
            return cls.PROTOBUF
        return cls.PLAIN_TEXT


def decode_id(raw: bytes) -> str:
    return raw.hex()


def encode_id(value: str | None) -> bytes:
    if not value:
        return b""
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise DecodeError(
            error_code="PULL_INVALID_ID",
            message=f"Not a hex-encoded id: {value!r}",
        ) from e


@dataclass(frozen=True)
class PushMessage:
    """One event delivered over the pull channel."""

    module_id: str
    command: str
    params: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    mid: str | None = None
    expiry: int = 0
    created: int = 0
    sender_type: int = SENDER_UNKNOWN
    sender_id: str | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any], **kwargs: Any) -> PushMessage:
        params = body.get("params")
        extra = body.get("extra")
        return cls(
            module_id=str(body.get("module_id") or "").lower(),
            command=str(body.get("command") or ""),
            params=params if isinstance(params, dict) else {},
            extra=extra if isinstance(extra, dict) else {},
            **kwargs,
        )


@dataclass(frozen=True)
class Publication:
    """Outbound client event.

    Protobuf frames address ``receivers`` only; JSON-RPC servers resolve
    ``user_ids`` themselves and take ``receivers`` as ``"publicId.signature"``.
    """

    module_id: str
    command: str
    params: dict[str, Any] = field(default_factory=dict)
    receivers: tuple[tuple[str, str], ...] = ()  # (public_id, signature)
    user_ids: tuple[int, ...] = ()
    expiry: int = 0

    def body(self) -> dict[str, Any]:
        return {"module_id": self.module_id, "command": self.command, "params": self.params}

    def rpc_params(self) -> dict[str, Any]:
        return {
            "userList": list(self.user_ids),
            "channelList": [f"{public_id}.{signature}" for public_id, signature in self.receivers],
            "body": self.body(),
            "expiry": self.expiry,
        }


class PullCodec:
    """Decodes inbound frames and encodes outbound ones for one server version."""

    def __init__(self, schema: PullSchema | None = None, *, server_version: int = DEFAULT_SERVER_VERSION):
        self.schema = schema or PullSchema()
        self.server_version = server_version
        self.protocol = PullProtocol.for_server_version(server_version)
        self._rpc_ids = itertools.count(1)

    def decode(self, frame: bytes | bytearray | str) -> list[PushMessage]:
        """Decode one frame into messages.

        Raises:
            DecodeError: the frame cannot be parsed at all
        """
        if isinstance(frame, (bytes, bytearray)):
            return self.decode_binary(bytes(frame))
        if isinstance(frame, str) and frame:
            if self.protocol is PullProtocol.JSON_RPC:
                return self.decode_json_rpc(frame)
            return self.decode_plain_text(frame)
        raise DecodeError(
            error_code="PULL_EMPTY_FRAME",
            message=f"Unsupported frame: {type(frame).__name__}",
        )

    def decode_binary(self, frame: bytes) -> list[PushMessage]:
        batch = self.schema.ResponseBatch()
        try:
            batch.ParseFromString(frame)
        except ProtobufDecodeError as e:
            raise DecodeError(
                error_code="PULL_FRAME_MALFORMED",
                message=f"Could not parse ResponseBatch ({len(frame)} bytes): {e}",
            ) from e

        messages: list[PushMessage] = []
        for response in batch.responses:
            if response.WhichOneof("command") != "outgoing_messages":
                continue
            for outgoing in response.outgoing_messages.messages:
                try:
                    body = json.loads(outgoing.body)
                except json.JSONDecodeError:
                    logger.warning(
                        "[B24:PULL] Could not parse message body: %s", safe_preview(outgoing.body)
                    )
                    continue
                if not isinstance(body, dict):
                    logger.warning("[B24:PULL] Message body is not an object: %s", safe_preview(body))
                    continue
                sender_id = decode_id(outgoing.sender.id) if outgoing.sender.id else None
                messages.append(
                    PushMessage.from_body(
                        body,
                        mid=decode_id(outgoing.id),
                        expiry=outgoing.expiry,
                        created=outgoing.created,
                        sender_type=outgoing.sender.type,
                        sender_id=sender_id,
                    )
                )
        return messages

    def decode_plain_text(self, frame: str) -> list[PushMessage]:
        chunks = PLAIN_TEXT_FRAME_RE.findall(frame)
        if not chunks:
            raise DecodeError(
                error_code="PULL_FRAME_MALFORMED",
                message=f"No events in plain-text frame: {safe_preview(frame)}",
            )

        messages: list[PushMessage] = []
        for chunk in chunks:
            if not chunk:
                continue
            try:
                event = json.loads(chunk)
            except json.JSONDecodeError:
                logger.warning("[B24:PULL] Skipping unparseable event: %s", safe_preview(chunk))
                continue
            text = event.get("text") if isinstance(event, dict) else None
            if not isinstance(text, dict):
                continue
            messages.append(PushMessage.from_body(text, mid=event.get("mid") or None))
        return messages

    def encode_publications(self, publications: list[Publication]) -> bytes | str:
        """Encode client events as one frame.

        A ``RequestBatch`` for protobuf servers, ``publish`` request(s) for
        JSON-RPC servers.
        """
        if self.protocol is PullProtocol.JSON_RPC:
            requests = [self.rpc_request(RPC_PUBLISH, publication.rpc_params()) for publication in publications]
            return json.dumps(requests[0] if len(requests) == 1 else requests, ensure_ascii=False)

        schema = self.schema
        request_batch = schema.RequestBatch()
        request = request_batch.requests.add()
        for publication in publications:
            incoming = request.incoming_messages.messages.add()
            incoming.body = json.dumps(publication.body(), ensure_ascii=False)
            incoming.expiry = publication.expiry
            for public_id, signature in publication.receivers:
                receiver = incoming.receivers.add()
                receiver.id = encode_id(public_id)
                receiver.signature = encode_id(signature)
        return request_batch.SerializeToString()

    def encode_channel_stats_request(self, channels: list[tuple[str, str]]) -> bytes:
        request_batch = self.schema.RequestBatch()
        request = request_batch.requests.add()
        request.channel_stats.SetInParent()
        for public_id, signature in channels:
            channel = request.channel_stats.channels.add()
            channel.id = encode_id(public_id)
            channel.signature = encode_id(signature)
        return request_batch.SerializeToString()

    def decode_json_rpc(self, frame: str) -> list[PushMessage]:
        """Messages of the ``incoming.message`` requests in a JSON-RPC frame.

        Responses to our own requests and other server methods carry no
        events; they are logged and skipped.
        """
        try:
            packet = json.loads(frame)
        except json.JSONDecodeError as e:
            raise DecodeError(
                error_code="PULL_FRAME_MALFORMED",
                message=f"Could not decode JSON-RPC frame: {safe_preview(frame)}",
            ) from e

        messages: list[PushMessage] = []
        for command in packet if isinstance(packet, list) else [packet]:
            if not isinstance(command, dict) or "jsonrpc" not in command:
                logger.warning("[B24:PULL] Unknown JSON-RPC packet: %s", safe_preview(command))
                continue
            method = command.get("method")
            if method is None:
                if "error" in command:
                    logger.warning(
                        "[B24:PULL] JSON-RPC request %s failed: %s",
                        command.get("id"),
                        safe_preview(command["error"]),
                    )
                continue
            if method != RPC_INCOMING_MESSAGE:
                logger.debug("[B24:PULL] Ignoring JSON-RPC method %s", method)
                continue
            message = self._incoming_message(command.get("params"))
            if message is not None:
                messages.append(message)
        return messages

    @staticmethod
    def _incoming_message(fields: Any) -> PushMessage | None:
        if not isinstance(fields, dict) or not isinstance(fields.get("body"), dict):
            logger.warning("[B24:PULL] incoming.message without body: %s", safe_preview(fields))
            return None

        body = dict(fields["body"])
        params = dict(body["params"]) if isinstance(body.get("params"), dict) else {}
        for key in ("user_params", "dictionary"):
            if isinstance(fields.get(key), dict):
                params.update(fields[key])
        sender = fields.get("sender") if isinstance(fields.get("sender"), dict) else {}
        extra = dict(body["extra"]) if isinstance(body.get("extra"), dict) else {}
        extra["sender"] = sender
        body.update(params=params, extra=extra)

        mid = fields.get("mid")
        sender_type = sender.get("type")
        return PushMessage.from_body(
            body,
            mid=str(mid) if mid else None,
            sender_type=sender_type if isinstance(sender_type, int) else SENDER_UNKNOWN,
            sender_id=str(sender["id"]) if sender.get("id") else None,
        )

    def rpc_request(self, method: str, params: Any) -> dict[str, Any]:
        return {"jsonrpc": JSON_RPC_VERSION, "method": method, "params": params, "id": next(self._rpc_ids)}

    @staticmethod
    def encode_ack(mid: str) -> str:
        return f"mack:{mid}"
