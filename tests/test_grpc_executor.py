import json
import threading
import time

import pytest

from grpc_service import SERVICE, USERS_PROTO, start_server, write_descriptor_set
from stepflow.engine.executor_interface import (
    ConfigurationError, ExpectationError, FlowCancelledError, ProtocolError
)
from stepflow.executors.grpc import GrpcExecutor
from stepflow.executors.grpc.executor import split_method_name


@pytest.fixture(scope="module")
def reflection_target():
    server, target = start_server(with_reflection=True)
    yield target
    server.stop(None)


@pytest.fixture(scope="module")
def plain_target():
    server, target = start_server(with_reflection=False)
    yield target
    server.stop(None)


@pytest.fixture
def executor():
    return GrpcExecutor()


def grpc_step(target, method="GetUser", **fields):
    block = {"target": target, "method": f"{SERVICE}/{method}"}
    block.update(fields)
    return block


def test_unary_call_over_reflection(executor, make_context, reflection_target):
    context = make_context({
        "name": "get",
        "grpc": grpc_step(reflection_target, request='{"id": "{{.user}}"}'),
        "save": {"name": "name", "active": "active", "age": "age"},
        "timeout_seconds": 5,
    }, {"user": "u1"})

    executor.execute(context)

    assert context.variables.as_dict() == {"user": "u1", "name": "Ada", "active": "true", "age": "0"}
    assert context.log.response["code"] == "OK"
    assert json.loads(context.log.response["body"])["id"] == "u1"


def test_metadata_is_sent(executor, make_context, reflection_target):
    context = make_context({
        "grpc": grpc_step(reflection_target, request='{"id": "u2"}', metadata={" X-Name ": "{{.who}}"}),
        "save": {"name": "name"},
        "timeout_seconds": 5,
    }, {"who": "Grace"})

    executor.execute(context)

    assert context.variables.get("name") == "Grace"
    assert context.log.request["metadata"] == {"x-name": "Grace"}


@pytest.mark.parametrize("expect_code", ["NOT_FOUND", "not_found", "5"])
def test_expected_error_code_passes(executor, make_context, reflection_target, expect_code):
    context = make_context({
        "grpc": grpc_step(reflection_target, request='{"id": "missing"}', expect_code=expect_code),
        "timeout_seconds": 5,
    })
    executor.execute(context)
    assert context.log.response["code"] == "NOT_FOUND"
    assert "not found" in context.log.response["details"]


def test_expected_error_code_not_returned(executor, make_context, reflection_target):
    context = make_context({
        "name": "expect-missing",
        "grpc": grpc_step(reflection_target, request='{"id": "u1"}', expect_code="NOT_FOUND"),
        "timeout_seconds": 5,
    })
    with pytest.raises(ExpectationError) as exc_info:
        executor.execute(context)

    message = str(exc_info.value)
    assert "expected NOT_FOUND but got OK" in message
    assert exc_info.value.expected == "NOT_FOUND"
    assert exc_info.value.actual == "OK"


def test_error_status_without_expectation_fails(executor, make_context, reflection_target):
    context = make_context({
        "grpc": grpc_step(reflection_target, request='{"id": "missing"}'),
        "timeout_seconds": 5,
    })
    with pytest.raises(ExpectationError) as exc_info:
        executor.execute(context)
    assert "code = NOT_FOUND" in str(exc_info.value)


def test_server_streaming(executor, make_context, reflection_target):
    context = make_context({
        "grpc": grpc_step(reflection_target, method="ListUsers", request='{"limit": 3}'),
        "save": {"count": "#", "first": "0.name", "ids": "#.id"},
        "timeout_seconds": 5,
    })
    executor.execute(context)
    assert context.variables.get("count") == "3"
    assert context.variables.get("first") == "user-0"
    assert context.variables.get("ids") == '["u0","u1","u2"]'


def test_client_streaming(executor, make_context, reflection_target):
    context = make_context({
        "grpc": grpc_step(reflection_target, method="CreateUsers",
                          request='{"id": "a"}\n{"id": "b"}\n{"id": "c"}'),
        "save": {"created": "created"},
        "timeout_seconds": 5,
    })
    executor.execute(context)
    assert context.variables.get("created") == "3"


def test_text_format(executor, make_context, reflection_target):
    context = make_context({
        "grpc": grpc_step(reflection_target, request='id: "u7"', format="text"),
        "save": {"name": "name"},
        "timeout_seconds": 5,
    })
    executor.execute(context)
    assert 'name: "Ada"' in context.log.response["body"]
    assert not context.variables.has("name")


def test_method_name_with_dot_separator(executor, make_context, reflection_target):
    context = make_context({
        "grpc": {"target": reflection_target, "method": f"{SERVICE}.GetUser", "request": '{"id": "x"}'},
        "save": {"id": "id"},
        "timeout_seconds": 5,
    })
    executor.execute(context)
    assert context.variables.get("id") == "x"


def test_proto_sets_without_reflection(executor, make_context, plain_target, tmp_path):
    protoset = write_descriptor_set(tmp_path / "users.protoset")
    context = make_context({
        "grpc": grpc_step(plain_target, request='{"id": "u1"}', use_reflection=False, proto_sets=[protoset]),
        "save": {"name": "name"},
        "timeout_seconds": 5,
    })
    executor.execute(context)
    assert context.variables.get("name") == "Ada"


def test_proto_files_without_reflection(executor, make_context, plain_target, tmp_path):
    (tmp_path / "users.proto").write_text(USERS_PROTO)
    context = make_context({
        "grpc": grpc_step(plain_target, request='{"id": "u1"}', use_reflection=False,
                          proto_files=["users.proto"], proto_paths=[str(tmp_path)]),
        "save": {"name": "name"},
        "timeout_seconds": 5,
    })
    executor.execute(context)
    assert context.variables.get("name") == "Ada"


def test_reflection_with_proto_set_fallback(executor, make_context, reflection_target, tmp_path):
    protoset = write_descriptor_set(tmp_path / "users.protoset")
    context = make_context({
        "grpc": grpc_step(reflection_target, request='{"id": "u1"}', proto_sets=protoset),
        "save": {"name": "name"},
        "timeout_seconds": 5,
    })
    executor.execute(context)
    assert context.variables.get("name") == "Ada"


def test_reflection_disabled_without_descriptors(executor, make_context, plain_target):
    context = make_context({"grpc": grpc_step(plain_target, use_reflection=False), "timeout_seconds": 5})
    with pytest.raises(ConfigurationError) as exc_info:
        executor.execute(context)
    assert "requires reflection (use_reflection) or proto descriptors" in str(exc_info.value)


def test_proto_sets_and_files_are_exclusive(executor, make_context, plain_target):
    context = make_context({
        "grpc": grpc_step(plain_target, proto_sets=["a.protoset"], proto_files=["a.proto"]),
        "timeout_seconds": 5,
    })
    with pytest.raises(ConfigurationError):
        executor.execute(context)


def test_unknown_method(executor, make_context, reflection_target):
    context = make_context({"grpc": grpc_step(reflection_target, method="DeleteUser"), "timeout_seconds": 5})
    with pytest.raises(ProtocolError) as exc_info:
        executor.execute(context)
    assert "resolve grpc method" in str(exc_info.value)


def test_unary_method_rejects_several_messages(executor, make_context, reflection_target):
    context = make_context({
        "grpc": grpc_step(reflection_target, request='{"id": "a"} {"id": "b"}'),
        "timeout_seconds": 5,
    })
    with pytest.raises(ConfigurationError) as exc_info:
        executor.execute(context)
    assert "is unary" in str(exc_info.value)


def test_invalid_request_payload(executor, make_context, reflection_target):
    context = make_context({
        "grpc": grpc_step(reflection_target, request='{"nickname": "a"}'),
        "timeout_seconds": 5,
    })
    with pytest.raises(ConfigurationError) as exc_info:
        executor.execute(context)
    assert "parse grpc request" in str(exc_info.value)


@pytest.mark.parametrize("fields,message", [
    ({"target": "", "method": f"{SERVICE}/GetUser"}, "requires grpc.target"),
    ({"target": "localhost:1", "method": ""}, "requires grpc.method"),
    ({"target": "localhost:1", "method": f"{SERVICE}/GetUser", "expect_code": "SOMETIMES"},
     "unknown grpc expect_code"),
    ({"target": "localhost:1", "method": f"{SERVICE}/GetUser", "format": "xml"}, "unsupported grpc format"),
    ({"target": "localhost:1", "method": "GetUser"}, "must be fully qualified"),
])
def test_invalid_configuration(executor, make_context, fields, message):
    with pytest.raises(ConfigurationError) as exc_info:
        executor.execute(make_context({"grpc": fields}))
    assert message in str(exc_info.value)


def test_unreachable_target(executor, make_context):
    context = make_context({"grpc": grpc_step("127.0.0.1:1"), "timeout_seconds": 1})
    with pytest.raises(ProtocolError) as exc_info:
        executor.execute(context)
    assert "dial grpc" in str(exc_info.value)


def test_cancel_aborts_call_in_flight(executor, make_context, reflection_target):
    context = make_context({
        "name": "slow-rpc",
        "grpc": grpc_step(reflection_target, request='{"id": "u1"}', metadata={"x-delay": "5"}),
        "save": {"name": "name"},
        "timeout_seconds": 30,
    })
    timer = threading.Timer(0.5, context.cancel_event.set)
    timer.start()

    started = time.monotonic()
    try:
        with pytest.raises(FlowCancelledError):
            executor.execute(context)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 4
    assert context.variables.get("name") == ""


def test_split_method_name():
    assert split_method_name("/pkg.Svc/Call") == ("pkg.Svc", "Call")
    assert split_method_name("pkg.Svc.Call") == ("pkg.Svc", "Call")
    with pytest.raises(ValueError):
        split_method_name("Call")
