"""
Variable Store - The string map threaded through a flow run.
"""

from typing import Dict, Iterator, Mapping, Optional


class VariableStore:
    """
    Mutable name -> string map for one flow run.

    Seeded from the flow's vars, then overlaid by caller overrides, then
    written by each step's save directives. Last write wins.
    """

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        """
        Initialize the store.

        Args:
            initial: Optional starting values (copied)
        """
        self._values: Dict[str, str] = {}
        if initial:
            self.update(initial)

    @classmethod
    def seeded(cls, flow_vars: Optional[Mapping[str, str]],
               overrides: Optional[Mapping[str, str]] = None) -> "VariableStore":
        """
        Build a store from flow vars with overrides taking precedence.

        Args:
            flow_vars: Variables declared by the flow
            overrides: Caller-supplied values that replace flow vars

        Returns:
            New VariableStore
        """
        store = cls(flow_vars)
        if overrides:
            store.update(overrides)
        return store

    def set(self, key: str, value: str) -> None:
        self._values[key] = str(value)

    def get(self, key: str, default: str = "") -> str:
        return self._values.get(key, default)

    def has(self, key: str) -> bool:
        return key in self._values

    def update(self, values: Mapping[str, str]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def as_dict(self) -> Dict[str, str]:
        """Snapshot of the current values."""
        return dict(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)
