"""Binary schema for JungleBus publications.

The message classes are built at import time from a ``FileDescriptorProto``
so no generated ``_pb2`` module is needed. Field numbers and types must stay
in sync with the server:

    Transaction:      id(1) string, block_hash(2) string, block_height(3) uint32,
                      block_index(4) uint64, block_time(5) uint32,
                      transaction(6) bytes, merkle_proof(7) bytes
    ControlResponse:  statusCode(1) uint32, status(2) string, message(3) string,
                      block(4) uint32, transactions(5) uint64
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

_FD = descriptor_pb2.FieldDescriptorProto

_PACKAGE = "junglebus"

_TRANSACTION_FIELDS: list[tuple[str, int, int]] = [
    ("id", 1, _FD.TYPE_STRING),
    ("block_hash", 2, _FD.TYPE_STRING),
    ("block_height", 3, _FD.TYPE_UINT32),
    ("block_index", 4, _FD.TYPE_UINT64),
    ("block_time", 5, _FD.TYPE_UINT32),
    ("transaction", 6, _FD.TYPE_BYTES),
    ("merkle_proof", 7, _FD.TYPE_BYTES),
]

_CONTROL_FIELDS: list[tuple[str, int, int]] = [
    ("statusCode", 1, _FD.TYPE_UINT32),
    ("status", 2, _FD.TYPE_STRING),
    ("message", 3, _FD.TYPE_STRING),
    ("block", 4, _FD.TYPE_UINT32),
    ("transactions", 5, _FD.TYPE_UINT64),
]


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="junglebus.proto",
        package=_PACKAGE,
        syntax="proto3",
    )
    for message_name, fields in (
        ("Transaction", _TRANSACTION_FIELDS),
        ("ControlResponse", _CONTROL_FIELDS),
    ):
        message = file_proto.message_type.add(name=message_name)
        for field_name, number, field_type in fields:
            message.field.add(
                name=field_name,
                number=number,
                type=field_type,
                label=_FD.LABEL_OPTIONAL,
            )
    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file().SerializeToString())

TransactionMessage = message_factory.GetMessageClass(
    _pool.FindMessageTypeByName(f"{_PACKAGE}.Transaction")
)
ControlResponseMessage = message_factory.GetMessageClass(
    _pool.FindMessageTypeByName(f"{_PACKAGE}.ControlResponse")
)

__all__ = ["TransactionMessage", "ControlResponseMessage"]
