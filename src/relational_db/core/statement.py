"""
Statements and execution results.

A ``Statement`` is finished SQL text using named binds (``:p1`` .. ``:pn``)
plus the values in bind order. Raw SQL written with ``$n``, ``?`` or
``:name`` placeholders is normalized onto the same shape by
``compile_raw_statement`` before it reaches SQLAlchemy.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..exceptions import ValidationError
from ..security import (
    CODE,
    NAMED_PLACEHOLDER_PATTERN,
    NUMBERED_PLACEHOLDER_PATTERN,
    find_question_placeholders,
    neutralize_sql,
    scan_sql_segments,
)
from ..vendors import Vendor

Params = Union[Sequence[Any], Mapping[str, Any], None]


@dataclass(frozen=True)
class Statement:
    """Parameterized SQL ready for execution."""
    sql: str
    params: Tuple[Any, ...] = ()
    named_params: Optional[Mapping[str, Any]] = None

    @property
    def bind_params(self) -> Dict[str, Any]:
        if self.named_params is not None:
            return dict(self.named_params)
        return {f"p{index}": value for index, value in enumerate(self.params, start=1)}

    def __str__(self) -> str:
        return self.sql


@dataclass
class ExecutionResult:
    """Rows returned (or affected) by one statement."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    last_insert_id: Optional[int] = None
    columns: List[str] = field(default_factory=list)


def _code_segments(sql: str, backslash_escapes: bool) -> List[Tuple[int, int, bool]]:
    return [(start, end, kind == CODE) for start, end, kind in scan_sql_segments(sql, backslash_escapes)]


def compile_raw_statement(sql: str, params: Params = None,
                          vendor: Optional[Union[Vendor, str]] = None) -> Statement:
    """
    Normalize raw SQL placeholders onto named binds.

    ``$n`` becomes ``:pn``, each ``?`` becomes the next ``:pk``, and ``:name``
    is kept when params is a mapping. Colons inside literals, comments and
    quoted identifiers are escaped so they are never read as binds.

    Args:
        sql: Raw SQL text
        params: Positional sequence or mapping of named values
        vendor: Vendor tag (MySQL escapes, PostgreSQL ``?`` operators)

    Returns:
        Statement ready for execution

    Raises:
        ValidationError: If placeholder style and params do not line up
    """
    backslash_escapes = vendor is not None and Vendor(vendor) == Vendor.MYSQL
    neutralized = neutralize_sql(sql, backslash_escapes)
    numbered = list(NUMBERED_PLACEHOLDER_PATTERN.finditer(neutralized))
    questions = find_question_placeholders(neutralized, vendor)
    named = list(NAMED_PLACEHOLDER_PATTERN.finditer(neutralized))

    if isinstance(params, Mapping):
        if numbered or questions:
            raise ValidationError("Positional placeholders require a sequence of parameters")
        missing = [m.group(1) for m in named if m.group(1) not in params]
        if missing:
            raise ValidationError(f"Missing values for named parameters: {', '.join(sorted(set(missing)))}")
        return Statement(_rewrite(sql, backslash_escapes, {}), named_params=dict(params))

    values = tuple(params or ())
    if named:
        raise ValidationError("Named placeholders require a mapping of parameters")
    if numbered and questions:
        raise ValidationError("Cannot mix $n and ? placeholders in one query")

    replacements: Dict[int, Tuple[int, str]] = {}
    if numbered:
        highest = max(int(m.group(1)) for m in numbered)
        if highest > len(values) or min(int(m.group(1)) for m in numbered) < 1:
            raise ValidationError(
                f"Query references parameter ${highest} but {len(values)} parameters were provided"
            )
        for m in numbered:
            replacements[m.start()] = (m.end() - m.start(), f":p{m.group(1)}")
    elif questions:
        if len(questions) != len(values):
            raise ValidationError(
                f"Query has {len(questions)} placeholders but {len(values)} parameters were provided"
            )
        for index, position in enumerate(questions, start=1):
            replacements[position] = (1, f":p{index}")

    return Statement(_rewrite(sql, backslash_escapes, replacements), params=values)


def _rewrite(sql: str, backslash_escapes: bool, replacements: Dict[int, Tuple[int, str]]) -> str:
    out = []
    for start, end, is_code in _code_segments(sql, backslash_escapes):
        if not is_code:
            out.append(sql[start:end].replace(':', '\\:'))
            continue
        i = start
        while i < end:
            if i in replacements:
                width, token = replacements[i]
                out.append(token)
                i += width
            else:
                out.append(sql[i])
                i += 1
    return ''.join(out)
