import grpc
import pytest

from stepflow.executors.grpc.codes import code_name, parse_status_code, status_code_number


@pytest.mark.parametrize("value,expected", [
    ("", 0),
    ("   ", 0),
    ("OK", 0),
    ("not_found", 5),
    ("CANCELED", 1),
    ("CANCELLED", 1),
    ("Unauthenticated", 16),
    ("14", 14),
])
def test_parse_status_code(value, expected):
    assert parse_status_code(value) == expected


@pytest.mark.parametrize("value", ["NOPE", "not-a-code", "5x"])
def test_unknown_code_name(value):
    with pytest.raises(ValueError) as exc_info:
        parse_status_code(value)
    assert f'unknown grpc expect_code "{value}"' in str(exc_info.value)


def test_code_names():
    assert code_name(0) == "OK"
    assert code_name(5) == "NOT_FOUND"
    assert code_name(1) == "CANCELLED"
    assert code_name(99) == "Code(99)"


def test_status_code_number():
    assert status_code_number(grpc.StatusCode.UNAVAILABLE) == 14
