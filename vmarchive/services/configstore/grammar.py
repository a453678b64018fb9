"""
Grammar of the profile text format.

Every rule is a pure function ``rule(text, pos)`` that returns
``(value, new_pos)`` on success or ``None`` on failure. A failing rule never
consumes input, so callers backtrack simply by keeping their own position.

Line constructs:
    comment:  [blanks] ('#' | ';') anything
    group:    [blanks] '[' [blanks] BASIC [blanks] [QUOTED [blanks]] ']' [blanks]
    entry:    [blanks] STRING [blanks] '=' [blanks] [STRING]
"""
import enum
import string
from typing import Callable, NamedTuple, Optional, Tuple, TypeVar, Union

T = TypeVar("T")
Result = Optional[Tuple[T, int]]
Rule = Callable[[str, int], Result]

ALPHA_DIGIT = frozenset(string.ascii_letters + string.digits)
BASIC_CHARS = ALPHA_DIGIT | frozenset("_-")
CODE_CHARS = frozenset("+-!@$%^&*()_|~[]{}:,.<>/?")
NORMAL_CHARS = ALPHA_DIGIT | CODE_CHARS
BLANKS = frozenset(" \t")
UNIT_CHARS = frozenset("kmgtpKMGTP")

TRUE_WORDS = ("true", "1", "on")
FALSE_WORDS = ("false", "0", "off")


class StringType(str, enum.Enum):
    """Class of a string value in the profile format."""
    BASIC = "basic"
    NORMAL = "normal"
    QUOTED = "quoted"
    NULL = "null"


class LineContext(str, enum.Enum):
    """Kind of construct a single line holds."""
    GROUP = "group"
    ENTRY = "entry"
    COMMENT = "comment"


class GroupToken(NamedTuple):
    name: str
    sub_name: Optional[str]


class EntryToken(NamedTuple):
    key: str
    value: str


# ---------------------------------------------------------------------------
# Primitive rules
# ---------------------------------------------------------------------------

def parse_char(text: str, pos: int, chars) -> Result[str]:
    if pos < len(text) and text[pos] in chars:
        return text[pos], pos + 1
    return None


def parse_literal(text: str, pos: int, literal: str) -> Result[str]:
    if text.startswith(literal, pos):
        return literal, pos + len(literal)
    return None


def parse_run(text: str, pos: int, chars) -> Result[str]:
    """One or more characters from ``chars``."""
    end = pos
    while end < len(text) and text[end] in chars:
        end += 1
    if end == pos:
        return None
    return text[pos:end], end


def skip_blanks(text: str, pos: int) -> int:
    """Zero or more blanks. Always succeeds."""
    while pos < len(text) and text[pos] in BLANKS:
        pos += 1
    return pos


def is_end(text: str, pos: int) -> bool:
    return pos >= len(text)


# ---------------------------------------------------------------------------
# Strings
# ---------------------------------------------------------------------------

def parse_basic_string(text: str, pos: int) -> Result[str]:
    return parse_run(text, pos, BASIC_CHARS)


def parse_normal_string(text: str, pos: int) -> Result[str]:
    """Normal characters with interior blanks, never leading or trailing."""
    first = parse_run(text, pos, NORMAL_CHARS)
    if first is None:
        return None
    end = first[1]
    while True:
        after_blanks = skip_blanks(text, end)
        if after_blanks == end:
            break
        word = parse_run(text, after_blanks, NORMAL_CHARS)
        if word is None:
            break
        end = word[1]
    return text[pos:end], end


def is_quoted_char(ch: str) -> bool:
    return ch != '"' and (ch == "\t" or ch.isprintable())


def parse_quoted_string(text: str, pos: int) -> Result[str]:
    """Double-quoted string where ``\\"`` stands for a quote character."""
    if parse_literal(text, pos, '"') is None:
        return None
    chars = []
    cur = pos + 1
    while cur < len(text):
        if text.startswith('\\"', cur):
            chars.append('"')
            cur += 2
        elif text[cur] == '"':
            return "".join(chars), cur + 1
        elif is_quoted_char(text[cur]):
            chars.append(text[cur])
            cur += 1
        else:
            return None
    return None


def parse_string(text: str, pos: int) -> Result[str]:
    """Quoted string first, then normal string."""
    return parse_quoted_string(text, pos) or parse_normal_string(text, pos)


def _matches_whole(rule: Rule, value: str) -> bool:
    result = rule(value, 0)
    return result is not None and is_end(value, result[1])


def is_basic_string(value: str) -> bool:
    return _matches_whole(parse_basic_string, value)


def is_normal_string(value: str) -> bool:
    return _matches_whole(parse_normal_string, value)


def is_quoted_string(value: str) -> bool:
    return _matches_whole(parse_quoted_string, value)


def classify_string(value: str) -> StringType:
    """
    Classify a raw token.

    Args:
        value: Text as it would appear in a profile line

    Returns:
        The first matching class in priority order basic, normal, quoted;
        NULL when the value matches none of them (including the empty string)
    """
    if is_basic_string(value):
        return StringType.BASIC
    if is_normal_string(value):
        return StringType.NORMAL
    if is_quoted_string(value):
        return StringType.QUOTED
    return StringType.NULL


# ---------------------------------------------------------------------------
# Integers and booleans
# ---------------------------------------------------------------------------

def parse_plain_integer(text: str, pos: int) -> Result[str]:
    """Optional sign followed by decimal digits."""
    cur = pos
    sign = parse_char(text, cur, "+-")
    if sign is not None:
        cur = sign[1]
    digits = parse_run(text, cur, string.digits)
    if digits is None:
        return None
    return text[pos:digits[1]], digits[1]


def parse_integer(text: str, pos: int) -> Result[Tuple[str, Optional[str]]]:
    """Plain integer with an optional unit suffix; yields (number, unit)."""
    number = parse_plain_integer(text, pos)
    if number is None:
        return None
    unit = parse_char(text, number[1], UNIT_CHARS)
    if unit is not None:
        return (number[0], unit[0]), unit[1]
    return (number[0], None), number[1]


def parse_bool(text: str, pos: int) -> Result[bool]:
    for word in TRUE_WORDS:
        if parse_literal(text, pos, word) is not None:
            return True, pos + len(word)
    for word in FALSE_WORDS:
        if parse_literal(text, pos, word) is not None:
            return False, pos + len(word)
    return None


# ---------------------------------------------------------------------------
# Line constructs
# ---------------------------------------------------------------------------

def parse_comment(text: str, pos: int) -> Result[str]:
    cur = skip_blanks(text, pos)
    if parse_char(text, cur, "#;") is None:
        return None
    return text[cur + 1:], len(text)


def parse_group(text: str, pos: int) -> Result[GroupToken]:
    cur = skip_blanks(text, pos)
    if parse_literal(text, cur, "[") is None:
        return None
    cur = skip_blanks(text, cur + 1)
    name = parse_basic_string(text, cur)
    if name is None:
        return None
    cur = skip_blanks(text, name[1])
    sub_name = parse_quoted_string(text, cur)
    if sub_name is not None:
        cur = skip_blanks(text, sub_name[1])
    if parse_literal(text, cur, "]") is None:
        return None
    cur = skip_blanks(text, cur + 1)
    return GroupToken(name[0], sub_name[0] if sub_name else None), cur


def parse_entry(text: str, pos: int) -> Result[EntryToken]:
    cur = skip_blanks(text, pos)
    key = parse_string(text, cur)
    if key is None:
        return None
    cur = skip_blanks(text, key[1])
    if parse_literal(text, cur, "=") is None:
        return None
    cur = skip_blanks(text, cur + 1)
    value = parse_string(text, cur)
    if value is None:
        if not is_end(text, cur):
            return None
        # "key =" alone is a flag that is switched off
        return EntryToken(key[0], "false"), cur
    return EntryToken(key[0], value[0]), value[1]


LineToken = Union[GroupToken, EntryToken, str]


def classify_line(line: str) -> Optional[Tuple[LineContext, LineToken]]:
    """
    Classify one line of a profile file.

    Rules are tried in the order group, entry, comment.

    Args:
        line: A single line without its terminator

    Returns:
        (context, token) or None when the line holds none of the constructs
    """
    group = parse_group(line, 0)
    if group is not None:
        return LineContext.GROUP, group[0]
    entry = parse_entry(line, 0)
    if entry is not None:
        return LineContext.ENTRY, entry[0]
    comment = parse_comment(line, 0)
    if comment is not None:
        return LineContext.COMMENT, comment[0]
    return None
