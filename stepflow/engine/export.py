"""
Export Sink - Persists selected variables after a run.

Steps marked `export: true` record the current value of every variable
named in their `save` block. On close() the records are written as a JSON
array of {"step", "vars"} objects. The file (and its parent directories)
is only created when there is something to write.
"""

import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional

from ..models.flow import Step

logger = logging.getLogger(__name__)


class VariableExporter:
    """
    Collects export records for one invocation.

    Usage:
        exporter = VariableExporter("out/exported_vars.json")
        exporter.record_step(step, variables.as_dict())
        exporter.close()
    """

    def __init__(self, path: str):
        """
        Initialize exporter.

        Args:
            path: Output file path (created lazily on close)
        """
        self.path = path
        self.records: List[Dict[str, Any]] = []
        self._closed = False

    def record(self, step_name: str, values: Mapping[str, str]) -> None:
        """
        Add one record.

        Args:
            step_name: Name of the exporting step
            values: Variable values to export (copied)
        """
        self.records.append({"step": step_name, "vars": dict(values)})

    def record_step(self, step: Step, variables: Mapping[str, str]) -> bool:
        """
        Record a finished step if it is marked for export.

        Every declared save key is exported; keys that were never set export
        as an empty string.

        Returns:
            True if a record was added
        """
        if not step.export:
            return False

        values = {key: variables.get(key, "") for key in step.save}
        self.record(step.name, values)
        return True

    def close(self) -> Optional[str]:
        """
        Write the records to disk.

        Returns:
            Path written, or None when there was nothing to export
        """
        if self._closed:
            return None
        self._closed = True

        if not self.records:
            return None

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self.records, f, indent=2, ensure_ascii=False)
            f.write("\n")

        logger.info(f"[export] wrote {len(self.records)} record(s) to {self.path}")
        return self.path
