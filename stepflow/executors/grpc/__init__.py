"""
gRPC step execution: descriptor sources, transport and the executor.
"""

from .descriptors import (
    CompositeDescriptorSource,
    DescriptorError,
    DescriptorSource,
    ReflectionDescriptorSource,
    StaticDescriptorSource,
)
from .executor import GrpcExecutor

__all__ = [
    "CompositeDescriptorSource",
    "DescriptorError",
    "DescriptorSource",
    "GrpcExecutor",
    "ReflectionDescriptorSource",
    "StaticDescriptorSource",
]
