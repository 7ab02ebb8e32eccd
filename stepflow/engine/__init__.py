"""
Flow Engine

Core engine for executing declarative multi-protocol flows.
"""

from .executor_interface import (
    ConfigurationError,
    ExpectationError,
    FlowCancelledError,
    ProtocolError,
    StepContext,
    StepError,
    StepExecutor,
)
from .executor_registry import ExecutorRegistry
from .run_log import RunLog, RunLogEntry, StepLogContext
from .template import TemplateRenderer
from .variables import VariableStore

__all__ = [
    'ConfigurationError',
    'ExpectationError',
    'FlowCancelledError',
    'ProtocolError',
    'StepContext',
    'StepError',
    'StepExecutor',
    'ExecutorRegistry',
    'RunLog',
    'RunLogEntry',
    'StepLogContext',
    'TemplateRenderer',
    'VariableStore',
]
