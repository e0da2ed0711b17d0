"""
Echoserver protobuf schema.

The schema is assembled as a FileDescriptorProto at import time and added to
the default descriptor pool, so the message classes exist without generated
code and the server reflection service can describe them to clients:

    syntax = "proto3";
    package echoserver;

    service Echoserver {
      rpc Echo(EchoRequest) returns (EchoResponse);
      rpc Status(StatusRequest) returns (StatusResponse);
      rpc Request(RequestRequest) returns (RequestResponse);
    }

    message EchoRequest { string message = 1; }
    message EchoResponse { string message = 1; }
    message StatusRequest { string status = 1; }
    message StatusResponse {}
    message RequestRequest {
      string uri = 1;
      string method = 2;
      string message = 3;
      map<string, string> headers = 4;
    }
    message RequestResponse { string message = 1; }
"""

from typing import Dict, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "echoserver"
FILE_NAME = "echoserver/echoserver.proto"
SERVICE_NAME = f"{PACKAGE}.Echoserver"

_STRING = descriptor_pb2.FieldDescriptorProto.TYPE_STRING
_MESSAGE = descriptor_pb2.FieldDescriptorProto.TYPE_MESSAGE
_OPTIONAL = descriptor_pb2.FieldDescriptorProto.LABEL_OPTIONAL
_REPEATED = descriptor_pb2.FieldDescriptorProto.LABEL_REPEATED

# method name -> (request message, response message)
METHODS: Dict[str, Tuple[str, str]] = {
    "Echo": ("EchoRequest", "EchoResponse"),
    "Status": ("StatusRequest", "StatusResponse"),
    "Request": ("RequestRequest", "RequestResponse"),
}


def _add_string_fields(message: descriptor_pb2.DescriptorProto, *names: str) -> None:
    for number, name in enumerate(names, start=1):
        message.field.add(name=name, number=number, type=_STRING, label=_OPTIONAL, json_name=name)


def build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    """Describe the echoserver package as a FileDescriptorProto."""
    file_proto = descriptor_pb2.FileDescriptorProto(name=FILE_NAME, package=PACKAGE, syntax="proto3")

    _add_string_fields(file_proto.message_type.add(name="EchoRequest"), "message")
    _add_string_fields(file_proto.message_type.add(name="EchoResponse"), "message")
    _add_string_fields(file_proto.message_type.add(name="StatusRequest"), "status")
    file_proto.message_type.add(name="StatusResponse")

    request = file_proto.message_type.add(name="RequestRequest")
    _add_string_fields(request, "uri", "method", "message")
    headers_entry = request.nested_type.add(name="HeadersEntry")
    headers_entry.options.map_entry = True
    _add_string_fields(headers_entry, "key", "value")
    request.field.add(
        name="headers",
        number=4,
        type=_MESSAGE,
        label=_REPEATED,
        type_name=f".{PACKAGE}.RequestRequest.HeadersEntry",
        json_name="headers",
    )

    _add_string_fields(file_proto.message_type.add(name="RequestResponse"), "message")

    service = file_proto.service.add(name="Echoserver")
    for method, (request_type, response_type) in METHODS.items():
        service.method.add(
            name=method,
            input_type=f".{PACKAGE}.{request_type}",
            output_type=f".{PACKAGE}.{response_type}",
        )

    return file_proto


def _register() -> descriptor_pool.DescriptorPool:
    pool = descriptor_pool.Default()
    try:
        pool.FindFileByName(FILE_NAME)
    except KeyError:
        pool.AddSerializedFile(build_file_descriptor().SerializeToString())
    return pool


_pool = _register()


def message_class(name: str):
    """Concrete message class for `echoserver.<name>`."""
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.{name}"))


EchoRequest = message_class("EchoRequest")
EchoResponse = message_class("EchoResponse")
StatusRequest = message_class("StatusRequest")
StatusResponse = message_class("StatusResponse")
RequestRequest = message_class("RequestRequest")
RequestResponse = message_class("RequestResponse")
