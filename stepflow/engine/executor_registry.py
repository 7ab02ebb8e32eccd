"""
Executor Registry - Maps step kinds to protocol executors
"""

from typing import Dict, List

from ..models.flow import StepKind
from .executor_interface import StepExecutor


class ExecutorRegistry:
    """
    Registry for protocol executors.

    Provides lookup by step kind. Executors are stateless, so a single
    instance per kind serves every step of a run.
    """

    def __init__(self):
        """Initialize empty registry"""
        self._executors: Dict[StepKind, StepExecutor] = {}

    def register(self, executor: StepExecutor) -> None:
        """
        Register an executor under the kind it reports.

        Args:
            executor: Executor instance

        Raises:
            ValueError: If the kind is already registered
        """
        kind = executor.kind
        if kind in self._executors:
            raise ValueError(f"Executor for '{kind.value}' is already registered")

        self._executors[kind] = executor

    def replace(self, executor: StepExecutor) -> None:
        """Register an executor, replacing any existing one for its kind."""
        self._executors[executor.kind] = executor

    def get_executor(self, kind: StepKind) -> StepExecutor:
        """
        Get the executor for a step kind.

        Args:
            kind: Step kind

        Returns:
            Registered executor

        Raises:
            KeyError: If no executor handles the kind
        """
        if kind not in self._executors:
            raise KeyError(f"No executor registered for '{kind.value}' steps")

        return self._executors[kind]

    def has_executor(self, kind: StepKind) -> bool:
        return kind in self._executors

    def list_kinds(self) -> List[StepKind]:
        return list(self._executors.keys())
