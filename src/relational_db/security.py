"""Security utilities for the relational database layer.

This module provides security-focused utilities including:
- Textual validation of raw SQL (forbidden DDL, empty input, NUL bytes)
- Enforcement of parameterized-query usage
- Identifier and savepoint name validation
- Log sanitization

The SQL checks are textual, not a parser. Comments, string literals, quoted
identifiers and dollar-quoted blocks are blanked out first so keyword and
placeholder searches only look at executable text.
"""

import re
import logging
from typing import Any, List, Optional, Tuple, Union

from .exceptions import QueryInjectionError, ValidationError
from .vendors.base import Vendor

logger = logging.getLogger(__name__)

DANGEROUS_STATEMENT_PATTERN = re.compile(r'^(create|drop|truncate|alter)\b', re.IGNORECASE)
NUMBERED_PLACEHOLDER_PATTERN = re.compile(r'\$(\d+)')
NAMED_PLACEHOLDER_PATTERN = re.compile(r'(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)')
PARAMETER_REQUIRED_PATTERN = re.compile(r'^(insert|update|delete)\b', re.IGNORECASE)
MUTATION_PATTERN = re.compile(r'\b(insert|update|delete)\b', re.IGNORECASE)
WITH_PREFIX_PATTERN = re.compile(r'^with\b', re.IGNORECASE)
DOLLAR_TAG_PATTERN = re.compile(r'\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$')

IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z0-9_]+$')
QUALIFIED_IDENTIFIER_PATTERN = re.compile(r'^[a-zA-Z0-9_]+(\.[a-zA-Z0-9_]+)?$')
SAVEPOINT_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

# Keywords after which a PostgreSQL ``?`` stands for a value, not an operator
VALUE_KEYWORDS = frozenset({
    'ALL', 'AND', 'ANY', 'BETWEEN', 'BY', 'CASE', 'DISTINCT', 'ELSE', 'ESCAPE', 'FETCH', 'HAVING',
    'ILIKE', 'IN', 'IS', 'LIKE', 'LIMIT', 'NOT', 'OFFSET', 'ON', 'OR', 'RETURNING', 'SELECT', 'SET',
    'SIMILAR', 'SOME', 'THEN', 'TO', 'USING', 'VALUES', 'WHEN', 'WHERE',
})
OPERAND_END_CHARS = frozenset(')]\'"$')

# Region kinds produced by the scanner
CODE = 'code'
COMMENT = 'comment'
LITERAL = 'literal'
QUOTED_IDENTIFIER = 'identifier'
DOLLAR_QUOTED = 'dollar'

Segment = Tuple[int, int, str]
VendorLike = Optional[Union[Vendor, str]]


def _vendor_value(vendor: VendorLike) -> Optional[str]:
    if vendor is None:
        return None
    return Vendor(vendor).value


def _scan_quoted(sql: str, start: int, quote: str, backslash_escapes: bool) -> int:
    """Return the index just past a quoted region opened at ``start``."""
    i = start + 1
    length = len(sql)
    while i < length:
        ch = sql[i]
        if backslash_escapes and ch == '\\' and i + 1 < length:
            i += 2
            continue
        if ch == quote:
            if i + 1 < length and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return length


def scan_sql_segments(sql: str, backslash_escapes: bool = False) -> List[Segment]:
    """Split SQL text into executable and opaque regions.

    A single left-to-right pass. Line comments, block comments, single-quoted
    literals, double-quoted identifiers and ``$tag$`` blocks are opaque.

    Args:
        sql: Raw SQL text
        backslash_escapes: Treat backslash as an escape inside quotes (MySQL)

    Returns:
        List of ``(start, end, kind)`` tuples covering the whole text
    """
    segments: List[Segment] = []
    length = len(sql)
    code_start = 0
    i = 0

    def push(start: int, end: int, kind: str) -> None:
        if code_start < start:
            segments.append((code_start, start, CODE))
        segments.append((start, end, kind))

    while i < length:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < length else ''

        if ch == '-' and nxt == '-':
            end = sql.find('\n', i)
            end = length if end == -1 else end
            push(i, end, COMMENT)
            i = code_start = end
            continue

        if ch == '/' and nxt == '*':
            end = sql.find('*/', i + 2)
            end = length if end == -1 else end + 2
            push(i, end, COMMENT)
            i = code_start = end
            continue

        if ch == "'":
            end = _scan_quoted(sql, i, "'", backslash_escapes)
            push(i, end, LITERAL)
            i = code_start = end
            continue

        if ch == '"':
            end = _scan_quoted(sql, i, '"', backslash_escapes)
            push(i, end, QUOTED_IDENTIFIER)
            i = code_start = end
            continue

        if ch == '$':
            match = DOLLAR_TAG_PATTERN.match(sql, i)
            if match:
                tag = match.group(0)
                close = sql.find(tag, match.end())
                end = length if close == -1 else close + len(tag)
                push(i, end, DOLLAR_QUOTED)
                i = code_start = end
                continue

        i += 1

    if code_start < length:
        segments.append((code_start, length, CODE))
    return segments


def neutralize_sql(sql: str, backslash_escapes: bool = False) -> str:
    """Blank out comments, literals and quoted regions.

    The result has the same length as the input so positions found in it
    map straight back onto the original text. Quote delimiters survive,
    their contents become spaces, comments become spaces.
    """
    parts = []
    for start, end, kind in scan_sql_segments(sql, backslash_escapes):
        chunk = sql[start:end]
        if kind == CODE:
            parts.append(chunk)
        elif kind == COMMENT or len(chunk) < 2:
            parts.append(' ' * len(chunk))
        else:
            parts.append(chunk[0] + ' ' * (len(chunk) - 2) + chunk[-1])
    return ''.join(parts)


def _neutralize_for(sql: str, vendor: VendorLike) -> str:
    return neutralize_sql(sql, backslash_escapes=_vendor_value(vendor) == Vendor.MYSQL.value)


def _previous_token(text: str, index: int) -> Optional[str]:
    """The word or single character closest before ``index``, skipping whitespace."""
    i = index - 1
    while i >= 0 and text[i].isspace():
        i -= 1
    if i < 0:
        return None
    end = i + 1
    while i >= 0 and (text[i].isalnum() or text[i] == '_'):
        i -= 1
    if i + 1 < end:
        return text[i + 1:end]
    return text[end - 1]


def is_postgres_question_placeholder(text: str, index: int) -> bool:
    """Decide whether the ``?`` at ``index`` is a bind placeholder.

    PostgreSQL uses ``?``, ``?|`` and ``?&`` as JSONB operators, which always
    follow an operand: an identifier, a closing bracket or a quoted value. A
    ``?`` after an operator, an opening bracket, a comma or a keyword stands
    where a value belongs and is a placeholder.
    """
    previous = _previous_token(text, index)
    if previous is None:
        return True
    if previous[0].isalnum() or previous[0] == '_':
        return previous.upper() in VALUE_KEYWORDS
    return previous not in OPERAND_END_CHARS


def find_question_placeholders(neutralized: str, vendor: VendorLike = None) -> List[int]:
    """Positions of ``?`` bind placeholders in already-neutralized text."""
    positions = [i for i, ch in enumerate(neutralized) if ch == '?']
    if _vendor_value(vendor) == Vendor.POSTGRESQL.value:
        positions = [i for i in positions if is_postgres_question_placeholder(neutralized, i)]
    return positions


def _placeholders_in(neutralized: str, vendor: VendorLike) -> bool:
    if NUMBERED_PLACEHOLDER_PATTERN.search(neutralized):
        return True
    if NAMED_PLACEHOLDER_PATTERN.search(neutralized):
        return True
    return bool(find_question_placeholders(neutralized, vendor))


def has_placeholders(sql: str, vendor: VendorLike = None) -> bool:
    """Check raw SQL for ``$n``, ``?`` or ``:name`` placeholders outside literals."""
    return _placeholders_in(_neutralize_for(sql, vendor), vendor)


def _has_parameters(params: Any) -> bool:
    if params is None:
        return False
    return len(params) > 0


def validate_sql_string(sql: str, vendor: VendorLike = None) -> None:
    """Validate raw SQL before it reaches a driver.

    Args:
        sql: Raw SQL text
        vendor: Vendor tag, enables MySQL backslash escapes

    Raises:
        ValidationError: If the SQL is empty or contains NUL bytes
        QueryInjectionError: If any statement is CREATE, DROP, TRUNCATE or ALTER
    """
    if not isinstance(sql, str) or not sql.strip():
        raise ValidationError("SQL query must not be empty")

    if '\0' in sql:
        raise ValidationError("SQL query contains null bytes")

    neutralized = _neutralize_for(sql, vendor)
    statements = [part.strip() for part in neutralized.split(';')]
    for statement in statements:
        if statement and DANGEROUS_STATEMENT_PATTERN.search(statement):
            logger.warning("Rejected raw SQL containing a DDL statement")
            raise QueryInjectionError(
                "Detected dangerous SQL operation. CREATE, DROP, TRUNCATE, and ALTER are not allowed."
            )


def enforce_parameterized_query_usage(sql: str, params: Any = None, vendor: VendorLike = None) -> None:
    """Require bound parameters where the SQL needs them.

    Placeholders without parameters are rejected. INSERT, UPDATE and DELETE
    statements (also behind a leading WITH) must always carry parameters.

    Raises:
        ValidationError: If parameters are missing
    """
    neutralized = _neutralize_for(sql, vendor)
    normalized = neutralized.strip()
    supplied = _has_parameters(params)

    if _placeholders_in(neutralized, vendor) and not supplied:
        raise ValidationError(
            "Missing parameters: SQL query contains placeholders but no params were provided"
        )

    if WITH_PREFIX_PATTERN.match(normalized):
        requires_params = bool(MUTATION_PATTERN.search(normalized))
    else:
        requires_params = bool(PARAMETER_REQUIRED_PATTERN.match(normalized))

    if requires_params and not supplied:
        raise ValidationError(
            "Parameters are required for INSERT/UPDATE/DELETE queries. "
            "Use parameterized placeholders instead of embedding values directly."
        )


def validate_identifier(name: str, kind: str = "Column") -> str:
    """Validate a column (or other single-part) identifier.

    Args:
        name: Identifier to validate
        kind: Label used in the error message

    Returns:
        Validated identifier

    Raises:
        ValidationError: If the identifier contains anything but [A-Za-z0-9_]
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise ValidationError(
            f"{kind} name '{name}' contains invalid characters. "
            "Only alphanumeric characters and underscores are allowed."
        )
    return name


def validate_qualified_identifier(name: str) -> str:
    """Validate a table name, optionally schema-qualified (``schema.table``)."""
    if not isinstance(name, str) or not name:
        raise ValidationError("Table name is required")
    if not QUALIFIED_IDENTIFIER_PATTERN.match(name):
        raise ValidationError(
            "Table name contains invalid characters. Only alphanumeric characters, "
            "underscores, and dots (for schema qualification) are allowed."
        )
    return name


def validate_savepoint_name(name: str) -> str:
    if not isinstance(name, str) or not SAVEPOINT_NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid savepoint name '{name}'. Savepoint names must start with a letter "
            "or underscore and contain only letters, digits, and underscores."
        )
    return name


def sanitize_log_message(message: str) -> str:
    """Remove sensitive data from log messages.

    Args:
        message: Log message to sanitize

    Returns:
        Sanitized message
    """
    # Credentials embedded in connection URLs
    message = re.sub(
        r'([a-zA-Z][a-zA-Z0-9+.-]*://[^:/@\s]+):[^@\s]+@',
        r'\1:***@',
        message
    )

    message = re.sub(
        r'(api_key|password|passwd|pwd|token|secret)\s*[=:]\s*[^\s,;]+',
        r'\1=***REDACTED***',
        message,
        flags=re.IGNORECASE
    )

    return message


def _sanitize_arg(arg: Any) -> Any:
    return sanitize_log_message(arg) if isinstance(arg, str) else arg


class SensitiveDataFilter(logging.Filter):
    """Logging filter that removes sensitive data."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Sanitize the record in place and always let it through."""
        if hasattr(record, 'msg'):
            record.msg = sanitize_log_message(str(record.msg))
        if hasattr(record, 'args') and record.args:
            if isinstance(record.args, dict):
                record.args = {k: _sanitize_arg(v) for k, v in record.args.items()}
            else:
                record.args = tuple(_sanitize_arg(arg) for arg in record.args)
        return True
