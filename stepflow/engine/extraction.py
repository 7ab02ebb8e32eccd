"""
Extraction - Turns step responses into saved variables.

Two mechanisms:
- Path queries over a JSON document (HTTP bodies, gRPC responses and the
  Extended JSON produced for document-store results).
- Column extraction over the first row of a SQL result.

Path syntax:
    user.id             nested keys
    items.0.id          numeric segment indexes arrays
    items[0].id         bracket index
    items.#             array length
    items.#.id          value of "id" for every element
    meta.version\\.major escaped dot inside a key
"""

import datetime
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .executor_interface import ConfigurationError
from .variables import VariableStore

logger = logging.getLogger(__name__)

MAX_LOGGED_VALUE = 120

_MISSING = object()


def trim_long_string(value: str, limit: int = MAX_LOGGED_VALUE) -> str:
    """Shorten a value for log output."""
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


def split_path(path: str) -> List[str]:
    """
    Split a query path into segments.

    Args:
        path: Dotted query path

    Returns:
        List of key / index segments
    """
    segments: List[str] = []
    current: List[str] = []
    after_bracket = False
    i = 0

    while i < len(path):
        char = path[i]

        if char == "\\" and i + 1 < len(path):
            current.append(path[i + 1])
            after_bracket = False
            i += 2
            continue

        if char == ".":
            if not after_bracket:
                segments.append("".join(current))
            current = []
            after_bracket = False
            i += 1
            continue

        if char == "[":
            end = path.find("]", i)
            if end != -1 and path[i + 1:end].isdigit():
                if current:
                    segments.append("".join(current))
                    current = []
                segments.append(path[i + 1:end])
                after_bracket = True
                i = end + 1
                continue

        current.append(char)
        after_bracket = False
        i += 1

    if current or not after_bracket:
        segments.append("".join(current))

    return segments


def _walk(value: Any, segments: Sequence[str]) -> Any:
    for position, segment in enumerate(segments):
        if isinstance(value, list):
            if segment == "#":
                rest = segments[position + 1:]
                if not rest:
                    return len(value)
                matches = (_walk(item, rest) for item in value)
                return [match for match in matches if match is not _MISSING]
            if segment.isdigit() and int(segment) < len(value):
                value = value[int(segment)]
                continue
            return _MISSING

        if isinstance(value, dict):
            if segment in value:
                value = value[segment]
                continue
            return _MISSING

        return _MISSING

    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def format_number(value: Union[float, Decimal]) -> str:
    """
    Shortest plain-decimal form of a non-integer JSON number.

    The value is rounded to double precision and written without an
    exponent or trailing zeros: 1.0 -> "1", 1e3 -> "1000", 1.50 -> "1.5".
    """
    shortest = Decimal(repr(float(value))).normalize()
    return format(shortest, "f")


def format_value(value: Any) -> Optional[str]:
    """
    Convert a queried JSON value to its saved string form.

    Returns None for null and empty strings, which leave the variable unset.
    """
    if value is None or value is _MISSING:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (float, Decimal)):
        return format_number(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def parse_json_document(raw: Union[str, bytes]) -> Any:
    """
    Parse a response body, ignoring a leading UTF-8 byte order mark.

    Raises:
        ValueError: If the body is not valid JSON
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8-sig")
    return json.loads(raw.lstrip("\ufeff"), parse_float=Decimal)


def query(document: Any, path: str) -> Optional[str]:
    """
    Run one path query against a parsed document.

    Args:
        document: Parsed JSON value
        path: Query path

    Returns:
        Saved string form of the match, or None if nothing usable matched
    """
    if not path:
        return None
    return format_value(_walk(document, split_path(path)))


def extract_values(raw: Union[str, bytes], save: Mapping[str, str]) -> Dict[str, str]:
    """
    Evaluate every save path against a raw JSON response.

    Invalid JSON extracts nothing.

    Args:
        raw: Response text
        save: Mapping of variable name to query path

    Returns:
        Dictionary of variable name to value for the paths that matched
    """
    try:
        document = parse_json_document(raw)
    except ValueError:
        return {}

    values = {}
    for var_name, path in save.items():
        value = query(document, path)
        if value is not None:
            values[var_name] = value
    return values


def save_response_values(step_name: str, raw: Union[str, bytes], save: Mapping[str, str],
                         variables: VariableStore) -> Dict[str, str]:
    """
    Extract save paths from a response and write them into the variable store.

    Args:
        step_name: Step name (for logs)
        raw: Response text
        save: Mapping of variable name to query path
        variables: Store receiving the values

    Returns:
        Dictionary of the values that were saved
    """
    values = extract_values(raw, save)

    for var_name, value in values.items():
        variables.set(var_name, value)
        logger.info(f"[{step_name}] saved {var_name} = {trim_long_string(value)}")

    if save and not values:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        logger.info(f"[{step_name}] no values saved from response")
        logger.debug(f"[{step_name}] response: {text}")

    return values


def column_value_to_string(value: Any) -> str:
    """String form of a SQL column value."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    return str(value)


def extract_row_values(step_name: str, columns: Sequence[str], row: Sequence[Any],
                       save: Mapping[str, str]) -> Dict[str, str]:
    """
    Map save directives onto the columns of one result row.

    Column names match case-insensitively. An empty column name means
    "the column named like the variable". NULL values are skipped.

    Args:
        step_name: Step name (for errors)
        columns: Result column names
        row: First result row
        save: Mapping of variable name to column name

    Returns:
        Dictionary of variable name to value

    Raises:
        ConfigurationError: If a requested column is not in the result set
    """
    column_index = {}
    for index, column in enumerate(columns):
        column_index.setdefault(column.lower(), index)

    values = {}
    for var_name, column in save.items():
        target = column.strip() or var_name
        index = column_index.get(target.lower())
        if index is None:
            raise ConfigurationError(step_name, f"column \"{target}\" not found in result set")

        value = row[index]
        if value is None:
            continue
        values[var_name] = column_value_to_string(value)

    return values


def is_json(raw: Union[str, bytes]) -> bool:
    """True when the raw text parses as JSON."""
    try:
        parse_json_document(raw)
    except ValueError:
        return False
    return True
