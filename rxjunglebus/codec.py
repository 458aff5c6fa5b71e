"""Publication codecs.

Provides the canonical record types (Transaction, ControlMessage), the
abstract WireFormat base class, concrete implementations for the two wire
encodings the server speaks (ProtobufFormat, JSONFormat), and the
wire_format_factory helper.

Binary fields (transaction body, merkle proof) always come out as lower-case
hex strings. An empty ``transaction`` means the body was not inlined and has
to be fetched out of band; an empty ``merkle_proof`` is normal for mempool
entries.
"""

import binascii
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Literal

from google.protobuf.message import DecodeError as ProtobufDecodeError

from .channels import StreamKind
from .mechanism import DecodeError
from .schema import ControlResponseMessage, TransactionMessage
from .utils import base64_to_hex, bytes_to_hex

WireProtocol = Literal["protobuf", "json"]


class ControlStatusCode(IntEnum):
    """Status codes carried on the control channel.

    ``PAUSED`` is never sent by the server; it is synthesized locally when the
    client asks the server to pause a data stream.
    """

    WAITING = 100
    ERROR = 101
    BLOCK_DONE = 200
    REORG = 300
    PAUSED = 400


@dataclass(frozen=True)
class Transaction:
    id: str = ""
    block_hash: str = ""
    block_height: int = 0
    block_index: int = 0
    block_time: int = 0
    transaction: str = ""
    merkle_proof: str = ""


@dataclass(frozen=True)
class ControlMessage:
    status_code: int = 0
    status: str = ""
    message: str = ""
    block: int = 0
    transactions: int = 0

    @property
    def code(self) -> ControlStatusCode | None:
        """The status code as an enum member, ``None`` for unknown codes."""
        try:
            return ControlStatusCode(self.status_code)
        except ValueError:
            return None


CanonicalRecord = Transaction | ControlMessage


class WireFormat(ABC):
    """Decodes raw publication payloads into canonical records."""

    name: WireProtocol

    @abstractmethod
    def decode_transaction(self, payload: Any) -> Transaction: ...

    @abstractmethod
    def decode_control(self, payload: Any) -> ControlMessage: ...

    def decode(self, kind: StreamKind, payload: Any) -> CanonicalRecord:
        if kind is StreamKind.CONTROL:
            return self.decode_control(payload)
        return self.decode_transaction(payload)


class ProtobufFormat(WireFormat):
    name: WireProtocol = "protobuf"

    def decode_transaction(self, payload: Any) -> Transaction:
        message = self._parse(TransactionMessage, payload, "Transaction")
        return Transaction(
            id=message.id,
            block_hash=message.block_hash,
            block_height=message.block_height,
            block_index=message.block_index,
            block_time=message.block_time,
            transaction=bytes_to_hex(message.transaction),
            merkle_proof=bytes_to_hex(message.merkle_proof),
        )

    def decode_control(self, payload: Any) -> ControlMessage:
        message = self._parse(ControlResponseMessage, payload, "ControlResponse")
        return ControlMessage(
            status_code=message.statusCode,
            status=message.status,
            message=message.message,
            block=message.block,
            transactions=message.transactions,
        )

    @staticmethod
    def _parse(message_cls: Any, payload: Any, type_name: str) -> Any:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise DecodeError(
                TypeError(f"expected bytes, got {type(payload).__name__}"),
                source="ProtobufFormat",
                note=f"decode {type_name}",
            )
        message = message_cls()
        try:
            message.ParseFromString(bytes(payload))
        except ProtobufDecodeError as e:
            raise DecodeError(e, source="ProtobufFormat", note=f"decode {type_name}") from e
        return message


class JSONFormat(WireFormat):
    """JSON publications; ``transaction`` and ``merkle_proof`` are base64."""

    name: WireProtocol = "json"

    def decode_transaction(self, payload: Any) -> Transaction:
        data = self._load(payload, "Transaction")
        try:
            return Transaction(
                id=str(data.get("id") or ""),
                block_hash=str(data.get("block_hash") or ""),
                block_height=_as_int(data.get("block_height")),
                block_index=_as_int(data.get("block_index")),
                block_time=_as_int(data.get("block_time")),
                transaction=base64_to_hex(data.get("transaction")),
                merkle_proof=base64_to_hex(data.get("merkle_proof")),
            )
        except (binascii.Error, TypeError, ValueError) as e:
            raise DecodeError(e, source="JSONFormat", note="decode Transaction") from e

    def decode_control(self, payload: Any) -> ControlMessage:
        data = self._load(payload, "ControlResponse")
        try:
            return ControlMessage(
                status_code=_as_int(data.get("statusCode")),
                status=str(data.get("status") or ""),
                message=str(data.get("message") or ""),
                block=_as_int(data.get("block")),
                transactions=_as_int(data.get("transactions")),
            )
        except (TypeError, ValueError) as e:
            raise DecodeError(
                e, source="JSONFormat", note="decode ControlResponse"
            ) from e

    @staticmethod
    def _load(payload: Any, type_name: str) -> dict[str, Any]:
        if isinstance(payload, (bytes, bytearray, str)):
            try:
                payload = json.loads(payload)
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise DecodeError(e, source="JSONFormat", note=f"decode {type_name}") from e
        if not isinstance(payload, dict):
            raise DecodeError(
                TypeError(f"expected a JSON object, got {type(payload).__name__}"),
                source="JSONFormat",
                note=f"decode {type_name}",
            )
        return payload


def _as_int(value: Any) -> int:
    # 64-bit fields may arrive as JSON strings
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise TypeError("boolean is not a valid numeric field")
    return int(value)


def wire_format_factory(protocol: WireProtocol) -> WireFormat:
    """Create a WireFormat instance based on the protocol parameter."""
    if protocol == "protobuf":
        return ProtobufFormat()
    elif protocol == "json":
        return JSONFormat()
    else:
        raise ValueError(f"Unsupported protocol '{protocol}'.")


def decode(protocol: WireProtocol, kind: StreamKind, payload: Any) -> CanonicalRecord:
    """Decode one publication received on a channel of the given kind."""
    return wire_format_factory(protocol).decode(kind, payload)
