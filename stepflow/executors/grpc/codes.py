"""
gRPC status codes - Parsing expect_code values and naming codes for messages.
"""

from typing import Dict

import grpc

OK = 0

# Canonical names; both spellings of CANCELLED are accepted
CODE_LOOKUP: Dict[str, int] = {
    "OK": 0,
    "CANCELED": 1,
    "CANCELLED": 1,
    "UNKNOWN": 2,
    "INVALID_ARGUMENT": 3,
    "DEADLINE_EXCEEDED": 4,
    "NOT_FOUND": 5,
    "ALREADY_EXISTS": 6,
    "PERMISSION_DENIED": 7,
    "RESOURCE_EXHAUSTED": 8,
    "FAILED_PRECONDITION": 9,
    "ABORTED": 10,
    "OUT_OF_RANGE": 11,
    "UNIMPLEMENTED": 12,
    "INTERNAL": 13,
    "UNAVAILABLE": 14,
    "DATA_LOSS": 15,
    "UNAUTHENTICATED": 16,
}

_STATUS_BY_NUMBER: Dict[int, grpc.StatusCode] = {code.value[0]: code for code in grpc.StatusCode}


def parse_status_code(value: str) -> int:
    """
    Parse an expect_code value.

    Accepts a canonical name (case-insensitive) or a number. Blank means OK.

    Raises:
        ValueError: If the value is neither
    """
    text = (value or "").strip()
    if not text:
        return OK

    code = CODE_LOOKUP.get(text.upper())
    if code is not None:
        return code

    try:
        return int(text)
    except ValueError:
        raise ValueError(f"unknown grpc expect_code \"{value}\"") from None


def status_code_number(code: grpc.StatusCode) -> int:
    return code.value[0]


def code_name(code: int) -> str:
    """Canonical name of a numeric status code (e.g. 5 -> 'NOT_FOUND')."""
    status = _STATUS_BY_NUMBER.get(code)
    if status is None:
        return f"Code({code})"
    return status.name
