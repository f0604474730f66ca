"""
Table/Alias Formatter - canonical SQL Server table references
=============================================================

    Orders                -> [Orders]
    dbo.Orders            -> dbo.[Orders]
    [dbo].[Order Details] -> dbo.[Order Details]
    my-schema.Orders      -> [my-schema].[Orders]

The table segment is always bracketed. A schema (or database) segment is
bracketed only when it is not a plain identifier. Aliases are never touched.

The JOIN repairer expands dotted chains into the fully bracketed
[dbo].[Order Details] form; running this formatter afterwards turns that
into dbo.[Order Details].
"""

import re
import logging
from typing import List

from sql_lexer import is_keyword, is_placeholder, rewrite_masked, strip_brackets

logger = logging.getLogger(__name__)

_PLAIN_IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_@$#]*$')
_NAME_PART_RE = re.compile(r'\[[^\]]*\]|[^.\[\]]+')

_NAME = r'(?:\[[^\]]+\]|[A-Za-z_][\w$#]*)'
TABLE_REFERENCE_RE = re.compile(
    r'(\b(?:FROM|JOIN)\s+)'
    rf'({_NAME}(?:\s*\.\s*{_NAME}){{0,2}})'
    r'(?![\w$#.\[\]])(?!\s*\()',
    re.IGNORECASE
)


def split_table_name(name: str) -> List[str]:
    """[dbo].[Order Details] -> ['dbo', 'Order Details']"""
    parts = [strip_brackets(p.strip()) for p in _NAME_PART_RE.findall(name.strip())]
    return [p for p in parts if p]


def format_table_name(name: str) -> str:
    """Canonical bracketed form of a (schema-qualified) table name."""
    parts = split_table_name(name)
    if not parts:
        return name

    prefix = [p if _PLAIN_IDENTIFIER_RE.match(p) else f'[{p}]' for p in parts[:-1]]
    return '.'.join(prefix + [f'[{parts[-1]}]'])


def format_table_names_in_query(sql: str) -> str:
    """
    Rewrite every FROM/JOIN table reference in sql into canonical form.

    Derived tables, table-valued function calls, variables and anything
    inside string literals or comments are left alone.
    """
    if not sql:
        return sql

    def _replace(m: re.Match) -> str:
        name = m.group(2)
        if is_keyword(name) or is_placeholder(name):
            return m.group(0)
        formatted = format_table_name(name)
        if formatted != name:
            logger.debug(f"[FORMATTER] {name} -> {formatted}")
        return m.group(1) + formatted

    return rewrite_masked(sql, lambda masked: TABLE_REFERENCE_RE.sub(_replace, masked))
