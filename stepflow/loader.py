"""
Flow Loader - Finding, reading and validating flow files.

Also parses the command-line conveniences that feed a run: `key=value`
variable overrides and the export file location.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError

from .models.flow import Flow

logger = logging.getLogger(__name__)

FLOW_EXTENSIONS = (".yaml", ".yml")

EXPORT_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


class FlowLoadError(Exception):
    """Raised when a flow file cannot be found, read or validated."""
    pass


@dataclass
class FlowFile:
    """A flow on disk: display name (file stem) and path."""
    name: str
    path: str


def load_flow(path: str) -> Flow:
    """
    Read and validate a YAML flow file.

    Args:
        path: Flow file path

    Returns:
        Validated Flow

    Raises:
        FlowLoadError: If the file is unreadable, not YAML, or not a valid flow
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise FlowLoadError(f"read flow file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise FlowLoadError(f"parse flow file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FlowLoadError(f"parse flow file {path}: expected a mapping with vars and steps")

    try:
        return Flow.model_validate(data)
    except ValidationError as e:
        raise FlowLoadError(f"invalid flow file {path}: {e}") from e


def _stem(file_name: str) -> str:
    return os.path.splitext(os.path.basename(file_name))[0]


def list_flows(directory: str) -> List[FlowFile]:
    """
    List the flow files of a directory, sorted by name.

    Raises:
        FlowLoadError: If the directory cannot be read
    """
    try:
        entries = os.listdir(directory)
    except OSError as e:
        raise FlowLoadError(f"read flow directory: {e}") from e

    flows = []
    for entry in entries:
        path = os.path.join(directory, entry)
        if os.path.isdir(path):
            continue
        if os.path.splitext(entry)[1] not in FLOW_EXTENSIONS:
            continue
        flows.append(FlowFile(name=_stem(entry), path=path))

    return sorted(flows, key=lambda flow: flow.name)


def resolve_flow_targets(file_path: Optional[str] = None, directory: Optional[str] = None,
                         flow: Optional[str] = None) -> List[FlowFile]:
    """
    Decide which flows to run.

    An explicit file wins; otherwise every flow of the directory, or the one
    named by `flow` (extension optional).

    Args:
        file_path: Single flow file
        directory: Directory to search (default: current directory)
        flow: Flow name within the directory

    Returns:
        Flows to run, in order

    Raises:
        FlowLoadError: If nothing matches
    """
    if file_path:
        if not os.path.exists(file_path):
            raise FlowLoadError(f"flow file \"{file_path}\" not accessible")
        if os.path.isdir(file_path):
            raise FlowLoadError(f"flow file \"{file_path}\" is a directory")
        return [FlowFile(name=_stem(file_path), path=file_path)]

    directory = directory or "."
    flows = list_flows(directory)

    if not flow:
        if not flows:
            raise FlowLoadError(f"no flow files found in \"{directory}\"")
        return flows

    normalized = os.path.splitext(flow)[0] if os.path.splitext(flow)[1] else flow
    for candidate in flows:
        if candidate.name == normalized:
            return [candidate]

    raise FlowLoadError(f"flow \"{flow}\" not found in \"{directory}\"")


def parse_var_overrides(pairs: Optional[Sequence[str]]) -> Dict[str, str]:
    """
    Parse `key=value` overrides.

    Keys are trimmed; values are kept verbatim (they may contain '=').
    Empty entries are ignored.

    Raises:
        ValueError: If an entry has no '=' or an empty key
    """
    overrides: Dict[str, str] = {}
    for pair in pairs or []:
        if not pair:
            continue
        key, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"invalid var override \"{pair}\", expected key=value")
        key = key.strip()
        if not key:
            raise ValueError(f"invalid var override \"{pair}\", empty key")
        overrides[key] = value
    return overrides


def resolve_export_file_path(path: str, now: Optional[datetime] = None) -> str:
    """
    Resolve where exported variables are written.

    A path naming a directory (an existing one, one ending in a separator, or
    one without a file extension) gets a timestamped file inside it:
    exported_vars_<YYYYmmdd-HHMMSS>.json.
    """
    if not path:
        return path

    is_directory = (
        path.endswith(("/", os.sep))
        or os.path.isdir(path)
        or not os.path.splitext(path)[1]
    )
    if not is_directory:
        return path

    timestamp = (now or datetime.now()).strftime(EXPORT_TIMESTAMP_FORMAT)
    return os.path.join(path, f"exported_vars_{timestamp}.json")
