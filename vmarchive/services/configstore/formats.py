"""
Conversions between Python values and their textual profile form.

Integer conversions keep the historical failure policy: anything that does
not parse, or that overflows the target width, is reported as -1. Callers
that must tell a stored "-1" apart from a failure use ``is_minus_one`` or the
``can_be_int``/``can_be_long`` helpers.
"""
from typing import Optional

from vmarchive.services.configstore import grammar

INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1
INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

UNIT_SUFFIXES = ("", "K", "M", "G", "T", "P")
UNIT_FACTORS = {suffix.lower(): 1024 ** i for i, suffix in enumerate(UNIT_SUFFIXES) if suffix}


# ---------------------------------------------------------------------------
# Strings
# ---------------------------------------------------------------------------

def to_quoted_string(value: str) -> str:
    """Wrap a value in double quotes, escaping embedded quotes."""
    return '"' + value.replace('"', '\\"') + '"'


def to_unquoted_string(value: str) -> str:
    """Inverse of ``to_quoted_string``; other values are returned unchanged."""
    result = grammar.parse_quoted_string(value, 0)
    if result is not None and grammar.is_end(value, result[1]):
        return result[0]
    return value


def can_be_quoted(value: str) -> bool:
    """
    Whether ``to_quoted_string`` output reads back as ``value``.

    Only quotes are escaped, so a trailing backslash would swallow the
    closing quote. Control characters other than tab are never accepted.
    """
    return not value.endswith("\\") and all(ch == '"' or grammar.is_quoted_char(ch) for ch in value)


def is_representable(value: str) -> bool:
    return grammar.is_basic_string(value) or grammar.is_normal_string(value) or can_be_quoted(value)


def to_string_auto(value: str) -> str:
    """
    Render a value for output.

    Basic and normal strings are written as they are; anything else,
    including the empty string, is quoted. A leading "[" is quoted too,
    otherwise the line would read back as a group header.
    """
    if value.startswith("["):
        return to_quoted_string(value)
    if grammar.is_basic_string(value) or grammar.is_normal_string(value):
        return value
    return to_quoted_string(value)


# ---------------------------------------------------------------------------
# Integers
# ---------------------------------------------------------------------------

def is_integer(value: Optional[str]) -> bool:
    if value is None:
        return False
    result = grammar.parse_integer(value, 0)
    return result is not None and grammar.is_end(value, result[1])


def is_minus_one(value: Optional[str]) -> bool:
    return value == "-1"


def to_long(value: Optional[str]) -> int:
    """
    Convert an integer literal such as ``"512"`` or ``"16G"``.

    Returns:
        The value, or -1 when it does not parse or overflows 64 bits
    """
    if not is_integer(value):
        return -1
    (number, unit), _ = grammar.parse_integer(value, 0)
    result = int(number)
    if unit is not None:
        result *= UNIT_FACTORS[unit.lower()]
    if result < INT64_MIN or result > INT64_MAX:
        return -1
    return result


def to_int(value: Optional[str]) -> int:
    """Like ``to_long`` but also reports -1 outside the 32-bit range."""
    result = to_long(value)
    if result < INT32_MIN or result > INT32_MAX:
        return -1
    return result


def can_be_long(value: Optional[str]) -> bool:
    return is_integer(value) and (is_minus_one(value) or to_long(value) != -1)


def can_be_int(value: Optional[str]) -> bool:
    return is_integer(value) and (is_minus_one(value) or to_int(value) != -1)


def int_to_string(value: int) -> str:
    """Render an integer with the largest unit that divides it exactly."""
    if value == 0:
        return "0"
    index = 0
    while index < len(UNIT_SUFFIXES) - 1 and value % 1024 == 0:
        value //= 1024
        index += 1
    return f"{value}{UNIT_SUFFIXES[index]}"


# ---------------------------------------------------------------------------
# Booleans
# ---------------------------------------------------------------------------

def is_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    result = grammar.parse_bool(value, 0)
    return result is not None and grammar.is_end(value, result[1])


def to_bool(value: Optional[str]) -> Optional[bool]:
    """Parse ``true|1|on`` or ``false|0|off``; anything else gives None."""
    if not is_bool(value):
        return None
    return grammar.parse_bool(value, 0)[0]


def bool_to_string(value: bool) -> str:
    return "true" if value else "false"
