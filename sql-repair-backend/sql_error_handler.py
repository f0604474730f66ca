"""
SQL error classification and user-facing error messages.

classify_sql_error() decides which repair the retry loop may attempt:

    GROUP_BY        "... is not contained in either an aggregate function or the GROUP BY clause"
    SYNTAX          "Incorrect syntax near ..." / "syntax error"
    SCOPE           "The multi-part identifier ... could not be bound"
    INVALID_OBJECT  "Invalid object name ..."          (not fixable)
    INVALID_COLUMN  "Invalid column name ..."          (not fixable)
    UNFIXABLE       anything else
"""

import re
import logging
from enum import Enum
from typing import Iterable, List, Optional, Union

logger = logging.getLogger(__name__)


class SqlValidationError(ValueError):
    """Raised for input that no repair pass can work with (empty, non-string)."""
    pass


class ErrorClass(Enum):
    GROUP_BY = "group_by"
    SYNTAX = "syntax"
    SCOPE = "scope"
    INVALID_OBJECT = "invalid_object"
    INVALID_COLUMN = "invalid_column"
    UNFIXABLE = "unfixable"

    @property
    def is_fixable(self) -> bool:
        return self in (ErrorClass.GROUP_BY, ErrorClass.SYNTAX, ErrorClass.SCOPE)


_GROUP_BY_PATTERNS = (
    re.compile(r'column.*invalid in the select list because it is not contained in.*group by', re.IGNORECASE | re.DOTALL),
    re.compile(r'must appear in the group by clause', re.IGNORECASE),
)
_SYNTAX_PATTERNS = (
    re.compile(r'syntax error', re.IGNORECASE),
    re.compile(r'incorrect syntax', re.IGNORECASE),
)
_SCOPE_PATTERN = re.compile(r'multi-part identifier .* could not be bound', re.IGNORECASE | re.DOTALL)
_INVALID_OBJECT_PATTERN = re.compile(r'invalid (?:object|table) name', re.IGNORECASE)
_INVALID_COLUMN_PATTERN = re.compile(r'invalid column name', re.IGNORECASE)
_QUOTED_NAME_RE = re.compile(r"""['"\[]([^\]'"]+)['"\]]""")


def error_message(error: Union[BaseException, str, None]) -> str:
    """Best-effort database message text, unwrapping SQLAlchemy's DBAPI errors."""
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    original = getattr(error, "orig", None)
    if original is not None:
        return str(original)
    return str(error)


def classify_sql_error(error: Union[BaseException, str, None]) -> ErrorClass:
    message = error_message(error)
    if not message:
        return ErrorClass.UNFIXABLE
    if any(p.search(message) for p in _GROUP_BY_PATTERNS):
        return ErrorClass.GROUP_BY
    if _SCOPE_PATTERN.search(message):
        return ErrorClass.SCOPE
    if any(p.search(message) for p in _SYNTAX_PATTERNS):
        return ErrorClass.SYNTAX
    if _INVALID_OBJECT_PATTERN.search(message):
        return ErrorClass.INVALID_OBJECT
    if _INVALID_COLUMN_PATTERN.search(message):
        return ErrorClass.INVALID_COLUMN
    return ErrorClass.UNFIXABLE


def find_similar_tables(name: str, available_tables: Iterable[str]) -> List[str]:
    """Tables sharing at least three consecutive characters with name."""
    target = name.lower().split('.')[-1]
    similar = []
    for table in available_tables:
        candidate = table.lower()
        for i in range(len(candidate) - 2):
            if candidate[i:i + 3] in target:
                similar.append(table)
                break
    return similar


def handle_sql_error_message(error: Union[BaseException, str, None],
                             available_tables: Optional[Iterable[str]] = None) -> str:
    """Turn a database error into a message an end user can act on."""
    if error is None:
        return "An unknown SQL error occurred."

    message = error_message(error)
    enhanced = f"SQL Error: {message}"
    error_class = classify_sql_error(message)
    lower = message.lower()

    if error_class == ErrorClass.INVALID_OBJECT:
        match = _QUOTED_NAME_RE.search(message)
        if match:
            table = match.group(1)
            similar = find_similar_tables(table, available_tables or [])
            if similar:
                enhanced += (
                    f'\n\nThe table "{table}" doesn\'t exist. Did you mean one of these tables?\n- '
                    + '\n- '.join(similar)
                )
            else:
                enhanced += f'\n\nThe table "{table}" doesn\'t exist. Check the table name and try again.'

    elif error_class == ErrorClass.INVALID_COLUMN:
        match = _QUOTED_NAME_RE.search(message)
        column = match.group(1) if match else "the column"
        enhanced += (
            f'\n\nThe column "{column}" was not found. Check that it belongs to one of the tables '
            "in the FROM clause and qualify it with the table alias if several tables share it."
        )

    elif error_class == ErrorClass.SCOPE:
        enhanced += (
            "\n\nAn outer query refers to a table that is hidden inside a subquery or CTE. "
            "Reference the subquery alias instead of the original table name."
        )

    elif error_class == ErrorClass.GROUP_BY:
        enhanced += (
            "\n\nEvery column in the SELECT list must either be aggregated or listed in GROUP BY."
        )

    elif error_class == ErrorClass.SYNTAX:
        enhanced += (
            "\n\nThis appears to be a syntax error. Common causes include:\n"
            "- Missing or mismatched parentheses\n"
            "- Incorrect JOIN syntax\n"
            "- Using LIMIT instead of TOP\n"
            "- Backticks instead of square brackets around identifiers"
        )

    elif 'aggregate' in lower and 'subquery' in lower:
        enhanced += (
            "\n\nSQL Server cannot aggregate over an expression containing an aggregate or a subquery. "
            "Compute the inner value in a CTE or derived table first."
        )

    logger.debug(f"[SQL_ERROR] {error_class.value}: {message}")
    return enhanced
