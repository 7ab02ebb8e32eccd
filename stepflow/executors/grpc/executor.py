"""
gRPC Executor - Invokes one RPC per step using dynamically resolved schemas.

Method and message types come from a DescriptorSource (server reflection,
local descriptor files, or both), so no generated stubs are needed. Unary,
server-streaming, client-streaming and bidirectional methods are supported;
every response message is captured.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import grpc
from google.protobuf import message_factory
from google.protobuf.descriptor import MethodDescriptor, ServiceDescriptor

from ...engine.executor_interface import (
    ConfigurationError, ExpectationError, ProtocolError, StepContext, StepExecutor, run_cancellable
)
from ...engine.extraction import is_json, save_response_values, trim_long_string
from ...models.flow import GrpcStep, StepKind
from . import codes
from .descriptors import (
    CompositeDescriptorSource, DescriptorError, DescriptorSource,
    ReflectionDescriptorSource, StaticDescriptorSource, attach_extensions, message_pool,
)
from .formats import format_response, join_responses, parse_format, parse_requests
from .transport import TLSOptions, build_metadata, create_channel, wait_for_ready

logger = logging.getLogger(__name__)


def split_method_name(method: str) -> Tuple[str, str]:
    """
    Split 'pkg.Service/Method' or 'pkg.Service.Method' into service and method.

    Raises:
        ValueError: If the name has no service part
    """
    name = method.strip().lstrip("/")
    if "/" in name:
        service, _, method_name = name.rpartition("/")
    else:
        service, _, method_name = name.rpartition(".")
    if not service or not method_name:
        raise ValueError(f"method name \"{method}\" must be fully qualified (package.Service/Method)")
    return service, method_name


def build_descriptor_source(channel: grpc.Channel, cfg: GrpcStep, context: StepContext,
                            reflection_metadata, timeout: float) -> DescriptorSource:
    """
    Pick the descriptor source for a step.

    Reflection is used unless disabled; local files (proto_sets or
    proto_files) are combined with it when both are configured.

    Raises:
        ConfigurationError: If options conflict or no source is available
        DescriptorError: If local descriptor files cannot be loaded
    """
    proto_sets = context.render_list(cfg.proto_sets)
    proto_files = context.render_list(cfg.proto_files)
    proto_paths = context.render_list(cfg.proto_paths)

    if proto_sets and proto_files:
        raise ConfigurationError(context.name, "grpc step cannot set both proto_sets and proto_files")

    file_source: Optional[DescriptorSource] = None
    if proto_sets:
        file_source = StaticDescriptorSource.from_proto_sets(proto_sets)
    elif proto_files:
        file_source = StaticDescriptorSource.from_proto_files(proto_files, proto_paths)

    if cfg.reflection_enabled:
        reflection = ReflectionDescriptorSource(channel, reflection_metadata, timeout)
        if file_source is not None:
            return CompositeDescriptorSource(reflection, file_source)
        return reflection

    if file_source is not None:
        return file_source

    raise ConfigurationError(context.name, "grpc step requires reflection (use_reflection) or proto descriptors")


@dataclass
class CallResult:
    """Outcome of one RPC: status plus every response received before it."""
    code: int = codes.OK
    details: str = ""
    responses: List[Any] = field(default_factory=list)


def invoke_method(channel: grpc.Channel, method: MethodDescriptor, requests: List[Any],
                  metadata, timeout: float) -> CallResult:
    """
    Invoke a method with already-built request messages.

    Non-OK statuses are captured in the result rather than raised.
    """
    path = f"/{method.containing_service.full_name}/{method.name}"
    response_class = message_factory.GetMessageClass(method.output_type)
    serializer = lambda message: message.SerializeToString()  # noqa: E731
    deserializer = response_class.FromString

    client_streaming = method.client_streaming
    server_streaming = method.server_streaming
    result = CallResult()

    try:
        if not client_streaming and not server_streaming:
            stub = channel.unary_unary(path, request_serializer=serializer, response_deserializer=deserializer)
            response, call = stub.with_call(requests[0], timeout=timeout, metadata=metadata)
            result.responses.append(response)
        elif not client_streaming:
            stub = channel.unary_stream(path, request_serializer=serializer, response_deserializer=deserializer)
            call = stub(requests[0], timeout=timeout, metadata=metadata)
            for response in call:
                result.responses.append(response)
        elif not server_streaming:
            stub = channel.stream_unary(path, request_serializer=serializer, response_deserializer=deserializer)
            response, call = stub.with_call(iter(requests), timeout=timeout, metadata=metadata)
            result.responses.append(response)
        else:
            stub = channel.stream_stream(path, request_serializer=serializer, response_deserializer=deserializer)
            call = stub(iter(requests), timeout=timeout, metadata=metadata)
            for response in call:
                result.responses.append(response)
    except grpc.RpcError as e:
        result.code = codes.status_code_number(e.code())
        result.details = e.details() or ""
        return result

    result.code = codes.status_code_number(call.code())
    result.details = call.details() or ""
    return result


class GrpcExecutor(StepExecutor):
    """
    gRPC step executor.

    Step fields (`grpc` block):
        - target, method: Dial target and fully-qualified method
        - request: Request payload (templated); JSON or text format
        - metadata / reflection_metadata: Headers for the call / reflection
        - use_tls, skip_tls_verify, ca_cert, client_cert, client_key, server_name
        - proto_sets | proto_files (+ proto_paths), use_reflection
        - expect_code: Expected status (name or number, default OK)
    """

    @property
    def kind(self) -> StepKind:
        return StepKind.GRPC

    def execute(self, context: StepContext) -> None:
        """Resolve the method, invoke it, check the status and save values."""
        step = context.step
        name = step.name
        cfg = step.grpc
        if cfg is None:
            raise ConfigurationError(name, "missing grpc configuration")

        target = context.render(cfg.target).strip()
        if not target:
            raise ConfigurationError(name, "requires grpc.target")

        method_name = context.render(cfg.method).strip()
        if not method_name:
            raise ConfigurationError(name, "requires grpc.method")

        try:
            fmt = parse_format(cfg.format)
            expected_code = codes.parse_status_code(cfg.expect_code)
            service_name, short_method = split_method_name(method_name)
        except ValueError as e:
            raise ConfigurationError(name, str(e), e) from e

        payload = context.render(cfg.request)
        metadata = build_metadata(context.render_map(cfg.metadata))
        reflection_metadata = build_metadata(context.render_map(cfg.reflection_metadata))
        tls = TLSOptions(
            enabled=cfg.use_tls,
            skip_verify=cfg.skip_tls_verify,
            ca_cert=context.render(cfg.ca_cert).strip(),
            client_cert=context.render(cfg.client_cert).strip(),
            client_key=context.render(cfg.client_key).strip(),
            server_name=context.render(cfg.server_name).strip(),
        )

        context.log.set_request(
            target=target,
            method=method_name,
            metadata=dict(metadata) or None,
            body=payload or None,
        )
        logger.info(f"[grpc] {name}: {method_name} {trim_long_string(target)}")

        deadline = time.monotonic() + context.timeout

        def remaining() -> float:
            return max(deadline - time.monotonic(), 0.001)

        try:
            channel = create_channel(target, tls, remaining())
        except ValueError as e:
            raise ConfigurationError(name, str(e), e) from e
        except ConnectionError as e:
            raise ProtocolError(name, f"dial grpc: {e}", e) from e

        def call() -> Tuple[MethodDescriptor, CallResult, int]:
            try:
                wait_for_ready(channel, remaining())
            except grpc.FutureTimeoutError as e:
                raise ProtocolError(name, f"dial grpc {target}: not ready after {context.timeout}s", e) from e

            try:
                source = build_descriptor_source(channel, cfg, context, reflection_metadata, remaining())
                method = attach_extensions(self._resolve_method(source, service_name, short_method), source)
            except DescriptorError as e:
                raise ProtocolError(name, f"resolve grpc method {method_name}: {e}", e) from e

            pool = message_pool(method.input_type)
            request_class = message_factory.GetMessageClass(method.input_type)
            try:
                requests = parse_requests(payload, request_class, fmt, pool)
            except ValueError as e:
                raise ConfigurationError(name, f"parse grpc request: {e}", e) from e

            if not method.client_streaming and len(requests) > 1:
                raise ConfigurationError(
                    name, f"method {method_name} is unary but the request holds {len(requests)} messages"
                )

            started = time.monotonic()
            result = invoke_method(channel, method, requests, metadata, remaining())
            return method, result, int((time.monotonic() - started) * 1000)

        try:
            method, result, duration_ms = run_cancellable(context, call, on_cancel=channel.close)
        finally:
            channel.close()

        formatted = [format_response(response, fmt, message_pool(method.output_type))
                     for response in result.responses]
        response_payload = join_responses(formatted)

        context.log.set_response(
            code=codes.code_name(result.code),
            details=result.details or None,
            body=response_payload or None,
            duration_ms=duration_ms,
        )
        logger.info(f"[grpc] {name}: {codes.code_name(result.code)} ({duration_ms}ms)")

        self._check_status(name, cfg, expected_code, result)

        if step.save and response_payload and is_json(response_payload):
            save_response_values(name, response_payload, step.save, context.variables)

    def _resolve_method(self, source: DescriptorSource, service_name: str,
                        method_name: str) -> MethodDescriptor:
        service = source.find_symbol(service_name)
        if not isinstance(service, ServiceDescriptor):
            raise DescriptorError(f"target server does not expose service \"{service_name}\"")
        method = service.methods_by_name.get(method_name)
        if method is None:
            raise DescriptorError(f"service \"{service_name}\" does not include a method named \"{method_name}\"")
        return method

    def _check_status(self, name: str, cfg: GrpcStep, expected_code: int, result: CallResult) -> None:
        expected = codes.code_name(expected_code)
        actual = codes.code_name(result.code)

        if cfg.expect_code.strip():
            if result.code != expected_code:
                raise ExpectationError(
                    name,
                    f"expected {expected} but got {actual} ({result.details})",
                    expected=expected,
                    actual=actual,
                    detail=result.details,
                )
        elif result.code != codes.OK:
            raise ExpectationError(
                name,
                f"rpc error: code = {actual} desc = {result.details}",
                expected=expected,
                actual=actual,
                detail=result.details,
            )
