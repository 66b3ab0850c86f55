"""Message classes for the debuginfo store protocol.

The descriptor is assembled in code and registered in a private pool, so the
wire types are available without a protoc generation step.
"""

from __future__ import annotations

from typing import Sequence

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "parca.debuginfo.v1alpha1"
SERVICE = f"{PACKAGE}.DebuginfoService"

SHOULD_INITIATE_UPLOAD_METHOD = f"/{SERVICE}/ShouldInitiateUpload"
INITIATE_UPLOAD_METHOD = f"/{SERVICE}/InitiateUpload"
UPLOAD_METHOD = f"/{SERVICE}/Upload"
MARK_UPLOAD_FINISHED_METHOD = f"/{SERVICE}/MarkUploadFinished"

DEBUGINFO_TYPE_DEBUGINFO_UNSPECIFIED = 0
DEBUGINFO_TYPE_EXECUTABLE = 1
DEBUGINFO_TYPE_SOURCES = 2

UPLOAD_STRATEGY_UNSPECIFIED = 0
UPLOAD_STRATEGY_GRPC = 1
UPLOAD_STRATEGY_SIGNED_URL = 2

_Field = descriptor_pb2.FieldDescriptorProto
_DEBUGINFO_TYPE = f".{PACKAGE}.DebuginfoType"
_UPLOAD_STRATEGY = f".{PACKAGE}.UploadInstructions.UploadStrategy"

# (name, number, type, type_name, oneof_index)
_FieldSpec = tuple[str, int, int, str | None, int | None]


def _string(name: str, number: int, oneof: int | None = None) -> _FieldSpec:
    return (name, number, _Field.TYPE_STRING, None, oneof)


def _bool(name: str, number: int) -> _FieldSpec:
    return (name, number, _Field.TYPE_BOOL, None, None)


def _debuginfo_type(name: str, number: int) -> _FieldSpec:
    return (name, number, _Field.TYPE_ENUM, _DEBUGINFO_TYPE, None)


def _add_enum(container, name: str, values: Sequence[tuple[str, int]]) -> None:
    enum = container.enum_type.add(name=name)
    for value_name, number in values:
        enum.value.add(name=value_name, number=number)


def _add_message(
    file_proto: descriptor_pb2.FileDescriptorProto,
    name: str,
    fields: Sequence[_FieldSpec],
    *,
    oneofs: Sequence[str] = (),
) -> descriptor_pb2.DescriptorProto:
    message = file_proto.message_type.add(name=name)
    for oneof in oneofs:
        message.oneof_decl.add(name=oneof)
    for field_name, number, field_type, type_name, oneof_index in fields:
        field = message.field.add(
            name=field_name,
            number=number,
            type=field_type,
            label=_Field.LABEL_OPTIONAL,
        )
        if type_name is not None:
            field.type_name = type_name
        if oneof_index is not None:
            field.oneof_index = oneof_index
    return message


def _file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="parca/debuginfo/v1alpha1/debuginfo.proto",
        package=PACKAGE,
        syntax="proto3",
    )
    _add_enum(
        file_proto,
        "DebuginfoType",
        (
            ("DEBUGINFO_TYPE_DEBUGINFO_UNSPECIFIED", DEBUGINFO_TYPE_DEBUGINFO_UNSPECIFIED),
            ("DEBUGINFO_TYPE_EXECUTABLE", DEBUGINFO_TYPE_EXECUTABLE),
            ("DEBUGINFO_TYPE_SOURCES", DEBUGINFO_TYPE_SOURCES),
        ),
    )
    _add_message(
        file_proto,
        "ShouldInitiateUploadRequest",
        (
            _string("build_id", 1),
            _string("hash", 2),
            _bool("force", 3),
            _debuginfo_type("type", 4),
        ),
    )
    _add_message(
        file_proto,
        "ShouldInitiateUploadResponse",
        (_bool("should_initiate_upload", 1), _string("reason", 2)),
    )
    _add_message(
        file_proto,
        "InitiateUploadRequest",
        (
            _string("build_id", 1),
            ("size", 2, _Field.TYPE_INT64, None, None),
            _string("hash", 3),
            _bool("force", 4),
            _debuginfo_type("type", 5),
        ),
    )
    instructions = _add_message(
        file_proto,
        "UploadInstructions",
        (
            _string("build_id", 1),
            _string("upload_id", 2),
            ("upload_strategy", 3, _Field.TYPE_ENUM, _UPLOAD_STRATEGY, None),
            _string("signed_url", 4),
            _debuginfo_type("type", 5),
        ),
    )
    _add_enum(
        instructions,
        "UploadStrategy",
        (
            ("UPLOAD_STRATEGY_UNSPECIFIED", UPLOAD_STRATEGY_UNSPECIFIED),
            ("UPLOAD_STRATEGY_GRPC", UPLOAD_STRATEGY_GRPC),
            ("UPLOAD_STRATEGY_SIGNED_URL", UPLOAD_STRATEGY_SIGNED_URL),
        ),
    )
    _add_message(
        file_proto,
        "InitiateUploadResponse",
        (
            (
                "upload_instructions",
                1,
                _Field.TYPE_MESSAGE,
                f".{PACKAGE}.UploadInstructions",
                None,
            ),
        ),
    )
    _add_message(
        file_proto,
        "MarkUploadFinishedRequest",
        (
            _string("build_id", 1),
            _string("upload_id", 2),
            _debuginfo_type("type", 3),
        ),
    )
    _add_message(file_proto, "MarkUploadFinishedResponse", ())
    _add_message(
        file_proto,
        "UploadInfo",
        (
            _string("build_id", 1),
            _string("upload_id", 2),
            _debuginfo_type("type", 3),
        ),
    )
    _add_message(
        file_proto,
        "UploadRequest",
        (
            ("info", 1, _Field.TYPE_MESSAGE, f".{PACKAGE}.UploadInfo", 0),
            ("chunk_data", 2, _Field.TYPE_BYTES, None, 0),
        ),
        oneofs=("data",),
    )
    _add_message(
        file_proto,
        "UploadResponse",
        (_string("build_id", 1), ("size", 2, _Field.TYPE_UINT64, None, None)),
    )
    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{PACKAGE}.{name}"))


ShouldInitiateUploadRequest = _message_class("ShouldInitiateUploadRequest")
ShouldInitiateUploadResponse = _message_class("ShouldInitiateUploadResponse")
InitiateUploadRequest = _message_class("InitiateUploadRequest")
InitiateUploadResponse = _message_class("InitiateUploadResponse")
UploadInstructions = _message_class("UploadInstructions")
MarkUploadFinishedRequest = _message_class("MarkUploadFinishedRequest")
MarkUploadFinishedResponse = _message_class("MarkUploadFinishedResponse")
UploadInfo = _message_class("UploadInfo")
UploadRequest = _message_class("UploadRequest")
UploadResponse = _message_class("UploadResponse")
