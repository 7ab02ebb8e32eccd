"""
Run Log - Records request/response details for every executed step.

Each executor fills a StepLogContext while it runs; the runner turns the
context into a RunLogEntry once the step ends. A RunLog collects the entries
of one invocation and writes them as a single JSON document on close().

Nothing is written when no step ran.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

RUN_ID_FORMAT = "%Y%m%d-%H%M%S"


def new_run_id(now: Optional[datetime] = None) -> str:
    """Run identifier derived from the UTC start time (e.g. '20250102-150405')."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime(RUN_ID_FORMAT)


@dataclass
class StepLogContext:
    """
    Context for a single step, handed to the executor that runs it.

    Executors add whatever describes the call they made: the request side
    (method, URL, target, statement, headers, send time) and the response
    side (status, headers, body, duration, transport error).
    """
    request: Dict[str, Any] = field(default_factory=dict)
    response: Dict[str, Any] = field(default_factory=dict)

    def set_request(self, **values: Any) -> None:
        self.request.update({k: v for k, v in values.items() if v is not None})

    def set_response(self, **values: Any) -> None:
        self.response.update({k: v for k, v in values.items() if v is not None})


@dataclass
class RunLogEntry:
    """One executed step as it appears in the run log."""
    step: str
    type: str
    status: str
    started_at: str
    duration_ms: int
    request: Dict[str, Any] = field(default_factory=dict)
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if not data["error"]:
            del data["error"]
        return data


class RunLog:
    """
    Collects step entries for one invocation and writes <run_id>.json.

    Usage:
        run_log = RunLog("logs")
        run_log.add(entry)
        path = run_log.close()   # None when nothing was recorded
    """

    def __init__(self, directory: str, run_id: Optional[str] = None):
        """
        Initialize run log.

        Args:
            directory: Directory the log file is written into (created on close)
            run_id: Explicit run identifier (default: current UTC time)
        """
        self.directory = directory
        self.run_id = run_id or new_run_id()
        self.entries: List[RunLogEntry] = []
        self._closed = False

    def add(self, entry: RunLogEntry) -> None:
        self.entries.append(entry)

    @property
    def path(self) -> str:
        return os.path.join(self.directory, f"{self.run_id}.json")

    def close(self) -> Optional[str]:
        """
        Write the run log if at least one step was recorded.

        Returns:
            Path of the written file, or None when nothing was written
        """
        if self._closed:
            return None
        self._closed = True

        if not self.entries:
            return None

        os.makedirs(self.directory, exist_ok=True)
        document = {
            "run_id": self.run_id,
            "steps": [entry.to_dict() for entry in self.entries],
        }
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, ensure_ascii=False, default=str)

        logger.info(f"[run_log] wrote {len(self.entries)} step(s) to {self.path}")
        return self.path
