"""
Template Builtins - Functions every dotted-dialect template can call.

    index . "api-key"         lookup in the variable mapping (missing -> "")
    printf "%s-%03d" .a .n    formatted text (%v %s %q %d %f %e %g %x %t %c %%)
    print / println           operands joined as text
    len .token                length (byte length for text)
    eq .a "x" "y"             true if .a equals any of the rest
    ne lt le gt ge            comparisons of same-kind values
    and / or / not            short-circuit truth helpers returning operands
    urlquery .q               query-string escaping

Comparing text with a number is an error, so the template falls back to its
raw text instead of silently comparing unequal.
"""

import json
import re
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import quote_plus

_TYPE_NAMES = {str: "string", bool: "bool", int: "int", float: "float64", Decimal: "float64"}

_VERB = re.compile(r"%([-+# 0]*)(\d*)(?:\.(\d*))?([a-zA-Z%])")


def _type_name(value: Any) -> str:
    return _TYPE_NAMES.get(type(value), type(value).__name__)


def format_plain(value: Any) -> str:
    """Default text form of a value: lowercase booleans, <nil> for None."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    return str(value)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("bool is not an integer")
    if isinstance(value, (int, Decimal)):
        return int(value)
    return int(str(value).strip())


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("bool is not a number")
    return float(value)


def _shortest_float(value: float) -> str:
    text = repr(value)
    return text[:-2] if text.endswith(".0") else text


def _format_verb(verb: str, value: Any, precision: Optional[str]) -> Tuple[str, bool]:
    """
    Format one argument.

    Returns:
        Tuple of (text, numeric) where numeric enables sign-aware zero padding

    Raises:
        TypeError, ValueError: If the verb does not apply to the value
    """
    if verb == "v":
        return format_plain(value), isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)
    if verb == "s":
        text = format_plain(value)
        if precision is not None:
            text = text[:int(precision or 0)]
        return text, False
    if verb == "q":
        return json.dumps(format_plain(value), ensure_ascii=False), False
    if verb == "t":
        if not isinstance(value, bool):
            raise TypeError("not a bool")
        return format_plain(value), False
    if verb == "d":
        return str(_as_int(value)), True
    if verb in "fFeE":
        digits = int(precision or 0) if precision is not None else 6
        return format(_as_float(value), f".{digits}{verb}"), True
    if verb in "gG":
        if precision is None:
            text = _shortest_float(_as_float(value))
            return (text.upper() if verb == "G" else text), True
        return format(_as_float(value), f".{int(precision or 1)}{verb}"), True
    if verb in "xX":
        if isinstance(value, str):
            text = value.encode("utf-8").hex()
        else:
            text = format(_as_int(value), "x")
        return (text.upper() if verb == "X" else text), not isinstance(value, str)
    if verb == "o":
        return format(_as_int(value), "o"), True
    if verb == "b":
        return format(_as_int(value), "b"), True
    if verb == "c":
        return chr(_as_int(value)), False
    if verb == "U":
        return f"U+{_as_int(value):04X}", False
    raise ValueError(f"unknown verb {verb}")


def _pad(text: str, flags: str, width: str, numeric: bool) -> str:
    if numeric and "+" in flags and not text.startswith("-"):
        text = "+" + text
    elif numeric and " " in flags and not text.startswith("-"):
        text = " " + text

    if not width or len(text) >= int(width):
        return text
    size = int(width)
    if "-" in flags:
        return text.ljust(size)
    if "0" in flags:
        sign = text[0] if numeric and text[:1] in ("+", "-", " ") else ""
        return sign + text[len(sign):].rjust(size - len(sign), "0")
    return text.rjust(size)


def sprintf(format_string: Any, *args: Any) -> str:
    """
    printf-style formatting.

    Missing arguments render as %!v(MISSING), arguments a verb cannot take
    as %!d(string=x) and leftovers are appended as %!(EXTRA ...).
    """
    used = 0

    def convert(match: re.Match) -> str:
        nonlocal used
        flags, width, precision, verb = match.groups()
        if verb == "%":
            return "%"
        if used >= len(args):
            return f"%!{verb}(MISSING)"
        value = args[used]
        used += 1
        try:
            text, numeric = _format_verb(verb, value, precision)
        except (TypeError, ValueError, OverflowError):
            return f"%!{verb}({_type_name(value)}={format_plain(value)})"
        return _pad(text, flags, width, numeric)

    result = _VERB.sub(convert, format_plain(format_string))
    if used < len(args):
        extra = ", ".join(f"{_type_name(value)}={format_plain(value)}" for value in args[used:])
        result += f"%!(EXTRA {extra})"
    return result


def sprint(*args: Any) -> str:
    """Concatenate operands, with a space between two operands that are not text."""
    parts = []
    for position, value in enumerate(args):
        if position and not isinstance(value, str) and not isinstance(args[position - 1], str):
            parts.append(" ")
        parts.append(format_plain(value))
    return "".join(parts)


def sprintln(*args: Any) -> str:
    return " ".join(format_plain(value) for value in args) + "\n"


def index(item: Any, *keys: Any) -> Any:
    """
    Index into mappings and sequences.

    Missing mapping keys give "". Indexing text gives the byte value.

    Raises:
        IndexError: If a sequence index is out of range
        TypeError: If the item cannot be indexed
    """
    for key in keys:
        if isinstance(item, Mapping):
            item = item.get(format_plain(key), "")
        elif isinstance(item, str):
            item = item.encode("utf-8")[_as_int(key)]
        elif isinstance(item, (list, tuple)):
            item = item[_as_int(key)]
        else:
            raise TypeError(f"can't index item of type {_type_name(item)}")
    return item


def length(item: Any) -> int:
    if isinstance(item, str):
        return len(item.encode("utf-8"))
    return len(item)


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, str):
        return "string"
    return _type_name(value)


def _comparable(left: Any, right: Any) -> None:
    if _kind(left) != _kind(right):
        raise TypeError(f"incompatible types for comparison: {_type_name(left)} and {_type_name(right)}")


def equal(first: Any, *others: Any) -> bool:
    if not others:
        raise TypeError("missing argument for comparison")
    for other in others:
        _comparable(first, other)
        if first == other:
            return True
    return False


def not_equal(left: Any, right: Any) -> bool:
    return not equal(left, right)


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(left: Any, right: Any) -> bool:
        _comparable(left, right)
        if isinstance(left, bool):
            raise TypeError("invalid type for comparison")
        return compare(left, right)
    return check


def all_of(first: Any, *rest: Any) -> Any:
    """First falsy operand, or the last one."""
    value = first
    for value in (first,) + rest:
        if not value:
            return value
    return value


def any_of(first: Any, *rest: Any) -> Any:
    """First truthy operand, or the last one."""
    value = first
    for value in (first,) + rest:
        if value:
            return value
    return value


def negate(value: Any) -> bool:
    return not value


def build_builtins() -> Dict[str, Callable]:
    """Builtins keyed by their dialect names."""
    return {
        "index": index,
        "printf": sprintf,
        "print": sprint,
        "println": sprintln,
        "len": length,
        "eq": equal,
        "ne": not_equal,
        "lt": _ordered(lambda a, b: a < b),
        "le": _ordered(lambda a, b: a <= b),
        "gt": _ordered(lambda a, b: a > b),
        "ge": _ordered(lambda a, b: a >= b),
        "and": all_of,
        "or": any_of,
        "not": negate,
        "urlquery": lambda *args: quote_plus(sprint(*args)),
    }
