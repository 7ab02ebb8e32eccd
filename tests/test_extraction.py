import datetime
from decimal import Decimal

import pytest

from stepflow.engine.executor_interface import ConfigurationError
from stepflow.engine.extraction import (
    column_value_to_string, extract_row_values, extract_values, format_number, format_value,
    is_json, query, save_response_values, split_path, trim_long_string,
)
from stepflow.engine.variables import VariableStore


@pytest.mark.parametrize("path,expected", [
    ("id", ["id"]),
    ("user.id", ["user", "id"]),
    ("items.0.id", ["items", "0", "id"]),
    ("items[0].id", ["items", "0", "id"]),
    ("items[2]", ["items", "2"]),
    ("items.#", ["items", "#"]),
    ("meta.version\\.major", ["meta", "version.major"]),
])
def test_split_path(path, expected):
    assert split_path(path) == expected


def test_extract_values_from_nested_document():
    body = '{"user": {"id": 42, "name": "Ada", "active": true}, "token": "abc"}'
    save = {"user_id": "user.id", "name": "user.name", "active": "user.active", "token": "token"}
    assert extract_values(body, save) == {
        "user_id": "42",
        "name": "Ada",
        "active": "true",
        "token": "abc",
    }


def test_extract_values_arrays_and_counts():
    body = '{"items": [{"id": "a"}, {"id": "b"}, {"id": "c"}]}'
    save = {
        "first": "items.0.id",
        "second": "items[1].id",
        "count": "items.#",
        "ids": "items.#.id",
    }
    assert extract_values(body, save) == {
        "first": "a",
        "second": "b",
        "count": "3",
        "ids": '["a","b","c"]',
    }


def test_root_array_length():
    assert query([1, 2, 3, 4], "#") == "4"


def test_objects_are_saved_as_compact_json():
    body = '{"user": {"id": 1, "tags": ["x", "y"]}}'
    assert extract_values(body, {"user": "user"}) == {"user": '{"id":1,"tags":["x","y"]}'}


def test_large_integers_keep_their_digits():
    body = '{"price": 19.90, "big": 12345678901234567890}'
    assert extract_values(body, {"price": "price", "big": "big"}) == {
        "price": "19.9",
        "big": "12345678901234567890",
    }


def test_null_missing_and_empty_values_are_skipped():
    body = '{"a": null, "b": "", "c": "ok"}'
    assert extract_values(body, {"a": "a", "b": "b", "c": "c", "d": "d"}) == {"c": "ok"}


def test_invalid_json_extracts_nothing():
    assert extract_values("<html>nope</html>", {"a": "a"}) == {}


def test_byte_order_mark_is_ignored():
    assert extract_values('\ufeff{"id": "x"}', {"id": "id"}) == {"id": "x"}
    assert extract_values(b'\xef\xbb\xbf{"id": "y"}', {"id": "id"}) == {"id": "y"}


def test_extended_json_paths():
    body = '{"_id": {"$oid": "65a1b2c3d4e5f6a7b8c9d0e1"}, "count": {"$numberInt": "3"}}'
    save = {"id": "_id.$oid", "count": "count.$numberInt"}
    assert extract_values(body, save) == {"id": "65a1b2c3d4e5f6a7b8c9d0e1", "count": "3"}


def test_format_value():
    assert format_value(None) is None
    assert format_value("") is None
    assert format_value(False) == "false"
    assert format_value(Decimal("1.50")) == "1.5"
    assert format_value({"a": Decimal("2.5")}) == '{"a":2.5}'


def test_save_response_values_writes_store():
    variables = VariableStore({"keep": "1"})
    saved = save_response_values("login", '{"token": "t-1"}', {"token": "token"}, variables)
    assert saved == {"token": "t-1"}
    assert variables.as_dict() == {"keep": "1", "token": "t-1"}


def test_save_response_values_with_no_match_leaves_store_untouched():
    variables = VariableStore()
    assert save_response_values("s", '{"a": 1}', {"b": "b"}, variables) == {}
    assert len(variables) == 0


def test_is_json():
    assert is_json('{"a": 1}')
    assert is_json("[]")
    assert not is_json("plain text")


def test_trim_long_string():
    assert trim_long_string("short") == "short"
    long_value = "x" * 200
    assert trim_long_string(long_value) == "x" * 120 + "..."


def test_extract_row_values_matches_columns_case_insensitively():
    columns = ["ID", "Email", "deleted_at"]
    row = (7, "a@b.io", None)
    save = {"user_id": "id", "email": "", "deleted": "deleted_at"}
    assert extract_row_values("q", columns, row, save) == {"user_id": "7", "email": "a@b.io"}


def test_extract_row_values_missing_column():
    with pytest.raises(ConfigurationError) as exc_info:
        extract_row_values("q", ["id"], (1,), {"email": "email"})
    assert 'column "email" not found in result set' in str(exc_info.value)


def test_column_value_to_string():
    assert column_value_to_string(b"raw") == "raw"
    assert column_value_to_string(True) == "true"
    assert column_value_to_string(datetime.date(2024, 1, 2)) == "2024-01-02"
    assert column_value_to_string(Decimal("3.10")) == "3.10"


@pytest.mark.parametrize("raw,expected", [
    ("1.0", "1"),
    ("1e3", "1000"),
    ("-2.50", "-2.5"),
    ("0.1", "0.1"),
    ("1.5E-7", "0.00000015"),
    ("12345678901234567890", "12345678901234567890"),
])
def test_numbers_are_saved_in_plain_form(raw, expected):
    assert extract_values('{"n": ' + raw + '}', {"n": "n"}) == {"n": expected}


def test_format_number():
    assert format_number(2.0) == "2"
    assert format_number(Decimal("100.000")) == "100"
