"""
Descriptor Sources - Where gRPC steps get their schema from.

Three sources implement one interface:
- ReflectionDescriptorSource: asks the server over the reflection service
- StaticDescriptorSource: compiled FileDescriptorSet files, or .proto files
  compiled on the fly with grpc_tools.protoc
- CompositeDescriptorSource: reflection first, static files as fallback

Every lookup failure is reported as DescriptorError so the composite source
can fall back regardless of why the primary source failed.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections import namedtuple
from typing import Dict, List, Optional, Sequence, Tuple

import grpc
import grpc_tools
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.descriptor import Descriptor, FieldDescriptor, FileDescriptor, MethodDescriptor
from google.protobuf.message import DecodeError
# Registers the well-known types in the default pool for descriptor sets
# that reference them without bundling them
from google.protobuf import (  # noqa: F401
    any_pb2, duration_pb2, empty_pb2, field_mask_pb2, struct_pb2, timestamp_pb2, wrappers_pb2
)
from grpc_reflection.v1alpha.proto_reflection_descriptor_database import (
    ProtoReflectionDescriptorDatabase
)
from grpc_tools import protoc

logger = logging.getLogger(__name__)


class DescriptorError(Exception):
    """Raised when a symbol or file cannot be resolved."""
    pass


class DescriptorSource(ABC):
    """Schema lookup used to resolve methods and message types."""

    @abstractmethod
    def list_services(self) -> List[str]:
        """
        Fully-qualified names of the services this source knows.

        Raises:
            DescriptorError: If the source cannot be queried
        """
        pass

    @abstractmethod
    def find_symbol(self, name: str):
        """
        Resolve a fully-qualified symbol (service, method, message, enum or extension).

        Args:
            name: Fully-qualified name, e.g. 'acme.users.v1.UserService'

        Returns:
            The matching descriptor

        Raises:
            DescriptorError: If the symbol is unknown
        """
        pass

    @abstractmethod
    def all_extensions_for_type(self, type_name: str) -> List[FieldDescriptor]:
        """
        All known extensions of a message type.

        Raises:
            DescriptorError: If the type is unknown
        """
        pass


def _find_in_pool(pool: descriptor_pool.DescriptorPool, name: str):
    lookups = (
        pool.FindServiceByName,
        pool.FindMessageTypeByName,
        pool.FindEnumTypeByName,
        pool.FindExtensionByName,
        pool.FindMethodByName,
    )
    for lookup in lookups:
        try:
            return lookup(name)
        except KeyError:
            continue
    raise DescriptorError(f"symbol not found: {name}")


def _extensions_in_pool(pool: descriptor_pool.DescriptorPool, type_name: str) -> List[FieldDescriptor]:
    try:
        message_type = pool.FindMessageTypeByName(type_name)
    except KeyError as e:
        raise DescriptorError(f"message type not found: {type_name}") from e
    return list(pool.FindAllExtensions(message_type))


# =============================================================================
# Reflection
# =============================================================================

class _CallDetails(
        namedtuple("_CallDetails", ("method", "timeout", "metadata", "credentials",
                                    "wait_for_ready", "compression")),
        grpc.ClientCallDetails):
    pass


class ReflectionCallInterceptor(grpc.StreamStreamClientInterceptor):
    """Adds metadata (and a default deadline) to reflection calls only."""

    def __init__(self, metadata: Sequence[Tuple[str, str]], timeout: Optional[float] = None):
        self.metadata = list(metadata)
        self.timeout = timeout

    def intercept_stream_stream(self, continuation, client_call_details, request_iterator):
        metadata = list(client_call_details.metadata or []) + self.metadata
        details = _CallDetails(
            client_call_details.method,
            client_call_details.timeout if client_call_details.timeout is not None else self.timeout,
            metadata,
            client_call_details.credentials,
            getattr(client_call_details, "wait_for_ready", None),
            getattr(client_call_details, "compression", None),
        )
        return continuation(details, request_iterator)


class ReflectionDescriptorSource(DescriptorSource):
    """
    Descriptors fetched from the server's reflection service.

    Files are requested lazily as symbols are looked up and cached in a
    private descriptor pool for the life of the source.
    """

    def __init__(self, channel: grpc.Channel, metadata: Sequence[Tuple[str, str]] = (),
                 timeout: Optional[float] = None):
        """
        Initialize reflection source.

        Args:
            channel: Ready channel to the target server
            metadata: Headers attached to reflection requests only
            timeout: Deadline for each reflection request in seconds
        """
        if metadata or timeout is not None:
            channel = grpc.intercept_channel(channel, ReflectionCallInterceptor(metadata, timeout))
        self._database = ProtoReflectionDescriptorDatabase(channel)
        self.pool = descriptor_pool.DescriptorPool(self._database)

    def list_services(self) -> List[str]:
        try:
            return sorted(self._database.get_services())
        except grpc.RpcError as e:
            raise DescriptorError(f"list services via reflection: {e.details() or e.code()}") from e

    def find_symbol(self, name: str):
        try:
            return _find_in_pool(self.pool, name)
        except grpc.RpcError as e:
            raise DescriptorError(f"reflection lookup of {name} failed: {e.details() or e.code()}") from e

    def all_extensions_for_type(self, type_name: str) -> List[FieldDescriptor]:
        try:
            self.find_symbol(type_name)
            try:
                numbers = self._database.FindAllExtensionNumbers(type_name)
            except KeyError:
                numbers = []
            # Pull in the files declaring each extension so the pool knows them
            for number in numbers:
                file_proto = self._database.FindFileContainingExtension(type_name, number)
                self.pool.FindFileByName(file_proto.name)
            return _extensions_in_pool(self.pool, type_name)
        except KeyError as e:
            raise DescriptorError(f"reflection extension lookup for {type_name} failed: {e}") from e
        except grpc.RpcError as e:
            raise DescriptorError(f"reflection extension lookup for {type_name} failed: {e.details() or e.code()}") from e


# =============================================================================
# Static descriptor files
# =============================================================================

def _default_file_proto(name: str) -> Optional[descriptor_pb2.FileDescriptorProto]:
    """Fetch a file (typically a well-known type) from the default pool."""
    try:
        file_descriptor = descriptor_pool.Default().FindFileByName(name)
    except KeyError:
        return None
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_descriptor.CopyToProto(file_proto)
    return file_proto


def _add_files_in_dependency_order(pool: descriptor_pool.DescriptorPool,
                                   files: Sequence[descriptor_pb2.FileDescriptorProto]) -> List[str]:
    pending: Dict[str, descriptor_pb2.FileDescriptorProto] = {}
    for file_proto in files:
        pending.setdefault(file_proto.name, file_proto)

    added: List[str] = []

    def add(name: str, stack: Tuple[str, ...]) -> None:
        if name in added:
            return
        if name in stack:
            raise DescriptorError(f"import cycle involving {name}")

        file_proto = pending.get(name) or _default_file_proto(name)
        if file_proto is None:
            raise DescriptorError(f"descriptor set is missing dependency {name}")

        for dependency in file_proto.dependency:
            add(dependency, stack + (name,))

        pool.AddSerializedFile(file_proto.SerializeToString())
        added.append(name)

    for name in pending:
        add(name, ())

    return added


def load_descriptor_sets(paths: Sequence[str]) -> List[descriptor_pb2.FileDescriptorProto]:
    """
    Read FileDescriptorSet files.

    Raises:
        DescriptorError: If a file cannot be read or parsed
    """
    files: List[descriptor_pb2.FileDescriptorProto] = []
    for path in paths:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise DescriptorError(f"read proto set {path}: {e}") from e

        descriptor_set = descriptor_pb2.FileDescriptorSet()
        try:
            descriptor_set.ParseFromString(data)
        except DecodeError as e:
            raise DescriptorError(f"parse proto set {path}: {e}") from e
        files.extend(descriptor_set.file)
    return files


def _resolve_proto_file(path: str, proto_paths: Sequence[str]) -> str:
    if os.path.isabs(path) or os.path.exists(path):
        return os.path.abspath(path)
    for include in proto_paths:
        candidate = os.path.join(include, path)
        if os.path.exists(candidate):
            return os.path.abspath(candidate)
    raise DescriptorError(f"proto file not found: {path}")


def compile_proto_files(proto_files: Sequence[str],
                        proto_paths: Sequence[str] = ()) -> List[descriptor_pb2.FileDescriptorProto]:
    """
    Compile .proto sources with grpc_tools.protoc into descriptors.

    Args:
        proto_files: Source files (absolute, relative to cwd, or relative to a proto path)
        proto_paths: Import paths; defaults to the directories of the files

    Returns:
        File descriptors including all imports

    Raises:
        DescriptorError: If compilation fails
    """
    includes = [os.path.abspath(p) for p in proto_paths]
    files = [_resolve_proto_file(f, includes) for f in proto_files]
    if not includes:
        for file_path in files:
            directory = os.path.dirname(file_path)
            if directory not in includes:
                includes.append(directory)
    includes.append(os.path.join(os.path.dirname(grpc_tools.__file__), "_proto"))

    with tempfile.TemporaryDirectory(prefix="stepflow-protoc-") as tmp:
        output = os.path.join(tmp, "descriptors.pb")
        args = ["grpc_tools.protoc"]
        args.extend(f"--proto_path={include}" for include in includes)
        args.extend(["--include_imports", f"--descriptor_set_out={output}"])
        args.extend(files)

        exit_code = protoc.main(args)
        if exit_code != 0:
            raise DescriptorError(f"protoc failed compiling {', '.join(proto_files)} (exit code {exit_code})")

        return load_descriptor_sets([output])


class StaticDescriptorSource(DescriptorSource):
    """
    Descriptors loaded from local files into a private pool.

    Usage:
        source = StaticDescriptorSource.from_proto_sets(["api.protoset"])
        source = StaticDescriptorSource.from_proto_files(["users.proto"], ["protos"])
    """

    def __init__(self, files: Sequence[descriptor_pb2.FileDescriptorProto]):
        """
        Initialize static source.

        Args:
            files: File descriptors to load (any order)

        Raises:
            DescriptorError: If the files do not form a complete set
        """
        self.pool = descriptor_pool.DescriptorPool()
        try:
            self.file_names = _add_files_in_dependency_order(self.pool, files)
        except (TypeError, ValueError) as e:
            raise DescriptorError(f"load descriptors: {e}") from e

    @classmethod
    def from_proto_sets(cls, paths: Sequence[str]) -> "StaticDescriptorSource":
        return cls(load_descriptor_sets(paths))

    @classmethod
    def from_proto_files(cls, proto_files: Sequence[str],
                         proto_paths: Sequence[str] = ()) -> "StaticDescriptorSource":
        return cls(compile_proto_files(proto_files, proto_paths))

    def list_services(self) -> List[str]:
        services = []
        for name in self.file_names:
            file_descriptor = self.pool.FindFileByName(name)
            services.extend(service.full_name for service in file_descriptor.services_by_name.values())
        return sorted(services)

    def find_symbol(self, name: str):
        return _find_in_pool(self.pool, name)

    def all_extensions_for_type(self, type_name: str) -> List[FieldDescriptor]:
        return _extensions_in_pool(self.pool, type_name)


# =============================================================================
# Composite
# =============================================================================

class CompositeDescriptorSource(DescriptorSource):
    """
    Reflection backed by static files.

    Symbol lookups try reflection first and fall back to the files on any
    failure. Extension lists merge both sources, deduplicated by field
    number with reflection taking precedence. Services are listed from
    reflection only.
    """

    def __init__(self, reflection: DescriptorSource, files: DescriptorSource):
        self.reflection = reflection
        self.files = files

    def list_services(self) -> List[str]:
        return self.reflection.list_services()

    def find_symbol(self, name: str):
        try:
            return self.reflection.find_symbol(name)
        except DescriptorError as e:
            logger.debug(f"[grpc] reflection could not resolve {name}, using proto files: {e}")
        return self.files.find_symbol(name)

    def all_extensions_for_type(self, type_name: str) -> List[FieldDescriptor]:
        try:
            extensions = list(self.reflection.all_extensions_for_type(type_name))
        except DescriptorError:
            return self.files.all_extensions_for_type(type_name)

        try:
            file_extensions = self.files.all_extensions_for_type(type_name)
        except DescriptorError:
            return extensions

        numbers = {extension.number for extension in extensions}
        for extension in file_extensions:
            if extension.number not in numbers:
                extensions.append(extension)
                numbers.add(extension.number)
        return extensions


def message_pool(message_type: Descriptor):
    """Pool that owns a message type, used to resolve Any payloads."""
    return getattr(message_type.file, "pool", None)


def _file_with_dependencies(file_descriptor: FileDescriptor,
                            collected: Dict[str, descriptor_pb2.FileDescriptorProto]) -> None:
    if file_descriptor.name in collected:
        return
    for dependency in file_descriptor.dependencies:
        _file_with_dependencies(dependency, collected)
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_descriptor.CopyToProto(file_proto)
    collected[file_descriptor.name] = file_proto


def attach_extensions(method: MethodDescriptor, source: DescriptorSource) -> MethodDescriptor:
    """
    Make every known extension of a method's messages usable by the codecs.

    Protobuf resolves extensions through the pool that owns a message, so
    extensions found in a different pool (a proto file extending a type
    served over reflection) are invisible to JSON and text parsing. When
    there are such extensions, the method's files and the extension files
    are loaded into one fresh pool and the method is returned from it.
    Files from the method's own pool win on name clashes.

    Args:
        method: Resolved method
        source: Source used to list extensions

    Returns:
        The method itself, or its counterpart in the merged pool

    Raises:
        DescriptorError: If extensions cannot be listed or the files conflict
    """
    own_pool = message_pool(method.input_type)
    foreign: List[FieldDescriptor] = []
    for message_type in (method.input_type, method.output_type):
        for extension in source.all_extensions_for_type(message_type.full_name):
            if extension.file.pool is not own_pool:
                foreign.append(extension)

    if not foreign:
        return method

    collected: Dict[str, descriptor_pb2.FileDescriptorProto] = {}
    _file_with_dependencies(method.containing_service.file, collected)
    extension_files = []
    for extension in foreign:
        _file_with_dependencies(extension.file, collected)
        extension_files.append(extension.file.name)

    pool = descriptor_pool.DescriptorPool()
    try:
        _add_files_in_dependency_order(pool, list(collected.values()))
        merged = pool.FindMethodByName(method.full_name)
        # Registers the extensions with their message classes
        message_factory.GetMessageClassesForFiles(extension_files, pool)
    except (KeyError, TypeError, ValueError) as e:
        raise DescriptorError(f"merge extensions for {method.full_name}: {e}") from e

    logger.debug(f"[grpc] loaded {len(foreign)} extension(s) from proto files for {method.full_name}")
    return merged
