"""
Protocol executors and the default registry wiring them up.
"""

from ..engine.executor_registry import ExecutorRegistry
from .grpc import GrpcExecutor
from .http import HTTPExecutor
from .mongo import MongoExecutor
from .sql import SQLExecutor


def default_registry() -> ExecutorRegistry:
    """Registry with one executor per step kind."""
    registry = ExecutorRegistry()
    registry.register(SQLExecutor())
    registry.register(MongoExecutor())
    registry.register(GrpcExecutor())
    registry.register(HTTPExecutor())
    return registry


__all__ = [
    "GrpcExecutor",
    "HTTPExecutor",
    "MongoExecutor",
    "SQLExecutor",
    "default_registry",
]
