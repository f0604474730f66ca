"""
GROUP BY / Aggregation Fixer
============================

PROBLEM:
    SQL Server rejects a SELECT list that mixes aggregates and bare columns
    without a GROUP BY:

        SELECT CustomerID, SUM(Amount) FROM Orders
        -- Column 'Orders.CustomerID' is invalid in the select list because it
        -- is not contained in either an aggregate function or the GROUP BY clause

TWO REPAIR TIERS:
    Simple (retry path, after the database complained):
        SELECT CustomerID, SUM(Amount) FROM Orders GROUP BY CustomerID

    CTE restructuring (proactive, before execution). The aggregate is taken
    over the whole result set, so no GROUP BY column set has to be guessed:

        WITH SourceData AS (
            SELECT CustomerID AS [CustomerID]
            FROM Orders
        ),
        AggregatedData AS (
            SELECT SUM(Amount) AS [SUM_Amount]
            FROM Orders
        )
        SELECT SourceData.[CustomerID], AggregatedData.[SUM_Amount]
        FROM SourceData
        CROSS JOIN AggregatedData

COLUMN PARSING:
    The final top-level SELECT list is split on depth-zero commas. Each column
    gets an alias from AS, from T-SQL "alias = expr", from a trailing bare
    identifier, or from the last dotted part of a plain column reference.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from repair_models import FixResult
from sql_lexer import (
    SQL_KEYWORDS,
    blank_nested,
    find_matching_paren,
    is_placeholder,
    mask_literals,
    split_top_level,
    strip_brackets,
    unmask_literals,
)

logger = logging.getLogger(__name__)

AGGREGATE_FUNCTIONS = (
    'AVG', 'SUM', 'MAX', 'MIN', 'COUNT', 'COUNT_BIG',
    'STDEV', 'STDEVP', 'VAR', 'VARP', 'STRING_AGG',
)

_AGGREGATE_CALL_RE = re.compile(rf"\b({'|'.join(AGGREGATE_FUNCTIONS)})\s*\(", re.IGNORECASE)
_WINDOW_RE = re.compile(r'\bOVER\s*\(', re.IGNORECASE)
_SUBQUERY_RE = re.compile(r'\(\s*SELECT\b', re.IGNORECASE)
_STAR_RE = re.compile(r'^(?:(?:\[[^\]]+\]|\w+)\.)*\*$')
_CONSTANT_RE = re.compile(r'^(?:[-+]?\d+(?:\.\d+)?|__STRL\d{4,}__|NULL)$', re.IGNORECASE)
_IDENTIFIER_RE = re.compile(r'\[[^\]]+\]|(?<![\w@#$.])[A-Za-z_][\w$#]*(?![\w$#])(?!\s*\()')
_COLUMN_PATH_RE = re.compile(r'^(?:(?:\[[^\]]+\]|[A-Za-z_]\w*)\s*\.\s*)*(\[[^\]]+\]|[A-Za-z_]\w*)$')
_FUNCTION_CALL_RE = re.compile(r'^([A-Za-z_]\w*)\s*\((.*)\)$', re.DOTALL)

_EXPLICIT_ALIAS_RE = re.compile(r'\s+AS\s+(\[[^\]]+\]|[A-Za-z_]\w*|__STRL\d{4,}__)\s*$', re.IGNORECASE)
_EQUALS_ALIAS_RE = re.compile(r'^\s*(\[[^\]]+\]|[A-Za-z_]\w*)\s*=(?![=<>])\s*(.+)$', re.DOTALL)
_TRAILING_ALIAS_RE = re.compile(r'^(.*[\w\)\]])\s+(\[[^\]]+\]|[A-Za-z_]\w*)\s*$', re.DOTALL)

_SELECT_RE = re.compile(r'\bSELECT\b', re.IGNORECASE)
_MODIFIERS_RE = re.compile(
    r'\s+((?:(?:DISTINCT|ALL)\s+)?(?:TOP\s*(?:\([^()]*\)|\d+)(?:\s+PERCENT)?(?:\s+WITH\s+TIES)?\s+)?)',
    re.IGNORECASE
)
_FROM_RE = re.compile(r'\bFROM\b', re.IGNORECASE)
_SET_OPERATOR_RE = re.compile(r'\b(?:UNION|EXCEPT|INTERSECT)\b', re.IGNORECASE)
_CLAUSE_PATTERNS = (
    ('where', re.compile(r'\bWHERE\b', re.IGNORECASE)),
    ('group_by', re.compile(r'\bGROUP\s+BY\b', re.IGNORECASE)),
    ('having', re.compile(r'\bHAVING\b', re.IGNORECASE)),
    ('order_by', re.compile(r'\bORDER\s+BY\b', re.IGNORECASE)),
    ('tail', re.compile(r'\b(?:OFFSET|OPTION|FOR\s+(?:XML|JSON|BROWSE))\b|;', re.IGNORECASE)),
)
_ORDER_ITEM_RE = re.compile(r'^(.*?)(\s+(?:ASC|DESC))?$', re.IGNORECASE | re.DOTALL)

# Words that look like identifiers but never name a column
_NON_COLUMN_WORDS = SQL_KEYWORDS | {
    'INT', 'BIGINT', 'SMALLINT', 'TINYINT', 'FLOAT', 'REAL', 'DECIMAL', 'NUMERIC',
    'MONEY', 'VARCHAR', 'NVARCHAR', 'CHAR', 'NCHAR', 'TEXT', 'DATE', 'DATETIME',
    'DATETIME2', 'TIME', 'BIT', 'MAX',
    'YEAR', 'QUARTER', 'MONTH', 'WEEK', 'DAY', 'DAYOFYEAR', 'WEEKDAY', 'HOUR',
    'MINUTE', 'SECOND', 'YY', 'YYYY', 'QQ', 'MM', 'DD', 'WK', 'HH', 'MI', 'SS',
    'CAST', 'CONVERT', 'TRY_CAST',
}


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class ColumnExpression:
    """One entry of a SELECT list."""
    expression: str
    alias: Optional[str] = None
    has_explicit_alias: bool = False
    is_aggregate: bool = False


@dataclass
class SQLFixOptions:
    auto_fix_group_by: bool = True
    use_cte_restructuring: bool = True
    verbose: bool = False


@dataclass
class _FinalSelect:
    """Clause boundaries of the final top-level SELECT (masked text)."""
    prefix: str
    modifiers: str
    select_list: str
    from_clause: str
    clauses: dict = field(default_factory=dict)
    clause_spans: dict = field(default_factory=dict)
    insert_pos: int = 0
    columns: List[ColumnExpression] = field(default_factory=list)


# =============================================================================
# COLUMN PARSING
# =============================================================================

def is_aggregate_column(expression: str) -> bool:
    """
    True if expression calls an aggregate outside a window.

    SUM(x) -> True, SUM(x) OVER (PARTITION BY y) -> False
    """
    masked, _ = mask_literals(expression)
    for m in _AGGREGATE_CALL_RE.finditer(masked):
        open_pos = m.end() - 1
        close_pos = find_matching_paren(masked, open_pos)
        if close_pos is None:
            return True
        if not re.match(r'\s*OVER\b', masked[close_pos + 1:], re.IGNORECASE):
            return True
    return False


def _default_alias(expression: str) -> Optional[str]:
    path = _COLUMN_PATH_RE.match(expression.strip())
    if path:
        return strip_brackets(path.group(1))
    call = _FUNCTION_CALL_RE.match(expression.strip())
    if call and call.group(1).upper() in AGGREGATE_FUNCTIONS:
        argument = re.sub(r'\W+', '_', strip_brackets(call.group(2).strip())).strip('_')
        return f"{call.group(1).upper()}_{argument or 'all'}"
    return None


def _parse_column(part: str) -> ColumnExpression:
    """Parse one masked SELECT-list entry."""
    view = blank_nested(part)

    explicit = _EXPLICIT_ALIAS_RE.search(view)
    if explicit:
        expression = part[:explicit.start()].strip()
        alias = strip_brackets(part[explicit.start(1):explicit.end(1)])
        return ColumnExpression(expression, alias, True, is_aggregate_column(expression))

    equals = _EQUALS_ALIAS_RE.match(view)
    if equals and equals.group(1).upper() not in SQL_KEYWORDS:
        expression = part[equals.start(2):].strip()
        return ColumnExpression(expression, strip_brackets(equals.group(1)), True,
                                is_aggregate_column(expression))

    trailing = _TRAILING_ALIAS_RE.match(view)
    if trailing and trailing.group(2).upper() not in SQL_KEYWORDS and not is_placeholder(trailing.group(2)):
        expression = part[:trailing.end(1)].strip()
        alias = strip_brackets(part[trailing.start(2):trailing.end(2)])
        return ColumnExpression(expression, alias, True, is_aggregate_column(expression))

    expression = part.strip()
    return ColumnExpression(expression, _default_alias(expression), False, is_aggregate_column(expression))


def parse_select_columns(select_clause: str) -> List[ColumnExpression]:
    """Split a SELECT list on depth-zero commas and parse each column."""
    masked, saved = mask_literals(select_clause)
    columns = []
    for part in split_top_level(masked):
        column = _parse_column(part)
        column.expression = unmask_literals(column.expression, saved)
        if column.alias is not None:
            column.alias = strip_brackets(unmask_literals(column.alias, saved).strip("'"))
        columns.append(column)
    return columns


def _column_role(column: ColumnExpression) -> str:
    """aggregate | star | constant | window | subquery | plain"""
    masked, _ = mask_literals(column.expression)
    expression = masked.strip()
    if _STAR_RE.match(expression):
        return 'star'
    if column.is_aggregate:
        return 'aggregate'
    inner = expression
    while inner.startswith('(') and find_matching_paren(inner, 0) == len(inner) - 1:
        inner = inner[1:-1].strip()
    if _CONSTANT_RE.match(inner):
        return 'constant'
    if _WINDOW_RE.search(expression):
        return 'window'
    if _SUBQUERY_RE.search(expression):
        return 'subquery'
    identifiers = [
        token for token in _IDENTIFIER_RE.findall(expression)
        if not is_placeholder(token) and token.upper() not in _NON_COLUMN_WORDS
    ]
    return 'plain' if identifiers else 'constant'


# =============================================================================
# QUERY STRUCTURE
# =============================================================================

def _parse_final_select(masked: str) -> Optional[_FinalSelect]:
    view = blank_nested(masked)
    if _SET_OPERATOR_RE.search(view):
        return None

    selects = list(_SELECT_RE.finditer(view))
    if not selects:
        return None
    select = selects[-1]

    modifiers = _MODIFIERS_RE.match(view, select.end())
    list_start = modifiers.end() if modifiers else select.end()
    from_match = _FROM_RE.search(view, list_start)
    if not from_match:
        return None

    boundaries = []
    for name, pattern in _CLAUSE_PATTERNS:
        m = pattern.search(view, from_match.end())
        if m:
            boundaries.append((m.start(), m.end(), name))
    boundaries.sort()

    clauses = {}
    clause_spans = {}
    for index, (start, end, name) in enumerate(boundaries):
        stop = boundaries[index + 1][0] if index + 1 < len(boundaries) else len(masked)
        if name == 'tail':
            clauses[name] = masked[start:].strip()
            clause_spans[name] = (start, len(masked))
            break
        clauses[name] = masked[end:stop].strip()
        clause_spans[name] = (start, stop)

    from_end = boundaries[0][0] if boundaries else len(masked)
    insert_pos = from_end
    if 'where' in clause_spans:
        insert_pos = clause_spans['where'][1]

    select_list = masked[list_start:from_match.start()]
    return _FinalSelect(
        prefix=masked[:select.start()],
        modifiers=(modifiers.group(1) if modifiers else '').strip(),
        select_list=select_list,
        from_clause=masked[from_match.end():from_end].strip(),
        clauses=clauses,
        clause_spans=clause_spans,
        insert_pos=insert_pos,
        columns=[_parse_column(part) for part in split_top_level(select_list)],
    )


def _normalize(expression: str) -> str:
    return re.sub(r'\s+', '', expression).lower()


def _has_issue(parsed: _FinalSelect) -> bool:
    if 'group_by' in parsed.clauses:
        return False
    roles = [_column_role(c) for c in parsed.columns]
    return 'aggregate' in roles and 'plain' in roles


def has_group_by_aggregation_issue(sql: str) -> bool:
    """An aggregate and a bare column share the final SELECT with no GROUP BY."""
    if not sql or not sql.strip():
        return False
    masked, _ = mask_literals(sql)
    parsed = _parse_final_select(masked)
    return parsed is not None and _has_issue(parsed)


# =============================================================================
# SIMPLE TIER: ADD / EXTEND GROUP BY
# =============================================================================

def add_missing_group_by(sql: str) -> FixResult:
    """
    Add the non-aggregate SELECT expressions to GROUP BY.

    Extends an existing GROUP BY with missing expressions, otherwise inserts a
    new one after FROM/WHERE. Returns the input unchanged when the SELECT list
    contains * or a scalar subquery.
    """
    if not sql or not sql.strip():
        return FixResult(fixed_query=sql or "", original_query=sql)

    masked, saved = mask_literals(sql)
    parsed = _parse_final_select(masked)
    if parsed is None:
        return FixResult(fixed_query=sql, original_query=sql)

    roles = [_column_role(c) for c in parsed.columns]
    has_group_by = 'group_by' in parsed.clauses
    if 'aggregate' not in roles and not has_group_by:
        return FixResult(fixed_query=sql, original_query=sql)
    if 'star' in roles or 'subquery' in roles:
        logger.debug("[AGG_FIX] SELECT list has * or a scalar subquery, GROUP BY not added")
        return FixResult(fixed_query=sql, original_query=sql)

    existing = []
    if has_group_by:
        existing = [_normalize(item) for item in split_top_level(parsed.clauses['group_by'])]

    missing: List[str] = []
    for column, role in zip(parsed.columns, roles):
        if role != 'plain':
            continue
        key = _normalize(column.expression)
        if key not in existing and key not in [_normalize(m) for m in missing]:
            missing.append(column.expression)

    if not missing:
        return FixResult(fixed_query=sql, original_query=sql)

    items = ', '.join(missing)
    if has_group_by:
        start, stop = parsed.clause_spans['group_by']
        clause_end = start + len(masked[start:stop].rstrip())
        text = masked[:clause_end] + f", {items}" + masked[clause_end:]
        warning = f"Extended GROUP BY with: {unmask_literals(items, saved)}"
    else:
        before = masked[:parsed.insert_pos].rstrip()
        after = masked[parsed.insert_pos:].lstrip()
        joiner = ' ' if after and not after.startswith(';') else ''
        text = f"{before} GROUP BY {items}{joiner}{after}"
        warning = f"Added missing GROUP BY clause: GROUP BY {unmask_literals(items, saved)}"

    logger.info(f"[AGG_FIX] {warning}")
    return FixResult(fixed_query=unmask_literals(text, saved), warnings=[warning], original_query=sql)


# =============================================================================
# CTE TIER: SourceData / AggregatedData
# =============================================================================

def _unique_aliases(columns: List[ColumnExpression]) -> List[str]:
    aliases: List[str] = []
    seen = set()
    for index, column in enumerate(columns, start=1):
        base = column.alias or f"Column{index}"
        alias = base
        suffix = 2
        while alias.lower() in seen:
            alias = f"{base}_{suffix}"
            suffix += 1
        seen.add(alias.lower())
        aliases.append(alias)
    return aliases


def _map_order_by(order_by: str, columns: List[ColumnExpression], aliases: List[str],
                  sources: List[str]) -> Optional[str]:
    mapped = []
    for item in split_top_level(order_by):
        m = _ORDER_ITEM_RE.match(item.strip())
        expression, direction = m.group(1).strip(), (m.group(2) or '')
        key = _normalize(expression)
        target = None
        if expression.isdigit() and 0 < int(expression) <= len(columns):
            target = int(expression) - 1
        else:
            for index, column in enumerate(columns):
                if key in (_normalize(column.expression), _normalize(strip_brackets(aliases[index])),
                           _normalize(f'[{aliases[index]}]')):
                    target = index
                    break
        if target is None:
            return None
        mapped.append(f"{sources[target]}.[{aliases[target]}]{direction.upper()}")
    return ', '.join(mapped)


def restructure_with_cte(sql: str) -> FixResult:
    """Split a mixed aggregate query into SourceData and AggregatedData CTEs."""
    if not sql or not sql.strip():
        return FixResult(fixed_query=sql or "", original_query=sql)

    masked, saved = mask_literals(sql)
    parsed = _parse_final_select(masked)
    if parsed is None or not _has_issue(parsed) or 'having' in parsed.clauses:
        return FixResult(fixed_query=sql, original_query=sql)

    roles = [_column_role(c) for c in parsed.columns]
    if 'star' in roles:
        return FixResult(fixed_query=sql, original_query=sql)

    aliases = _unique_aliases(parsed.columns)
    sources = ['AggregatedData' if role == 'aggregate' else 'SourceData' for role in roles]
    warnings: List[str] = []

    order_clause = ''
    tail = parsed.clauses.get('tail', '')
    if 'order_by' in parsed.clauses:
        mapped = _map_order_by(parsed.clauses['order_by'], parsed.columns, aliases, sources)
        if mapped is None:
            if re.match(r'OFFSET\b', tail, re.IGNORECASE):
                logger.debug("[AGG_FIX] ORDER BY with OFFSET cannot be remapped, CTE restructuring skipped")
                return FixResult(fixed_query=sql, original_query=sql)
            warnings.append(
                f"ORDER BY {unmask_literals(parsed.clauses['order_by'], saved)} "
                "was removed during CTE restructuring"
            )
        else:
            order_clause = f"\nORDER BY {mapped}"

    from_where = f"FROM {parsed.from_clause}"
    if 'where' in parsed.clauses:
        from_where += f"\n    WHERE {parsed.clauses['where']}"

    source_columns = [
        f"{c.expression} AS [{aliases[i]}]" for i, c in enumerate(parsed.columns) if sources[i] == 'SourceData'
    ]
    aggregate_columns = [
        f"{c.expression} AS [{aliases[i]}]" for i, c in enumerate(parsed.columns) if sources[i] == 'AggregatedData'
    ]
    outer_columns = ', '.join(f"{sources[i]}.[{aliases[i]}]" for i in range(len(parsed.columns)))

    prefix = parsed.prefix.rstrip()
    if re.search(r'\bWITH\b', blank_nested(prefix), re.IGNORECASE):
        prefix = f"{prefix},\n"
    elif prefix:
        prefix = f"{prefix}\nWITH "
    else:
        prefix = "WITH "

    modifiers = f"{parsed.modifiers} " if parsed.modifiers else ''
    tail_text = ''
    if tail:
        tail_text = tail if tail.startswith(';') else f"\n{tail}"

    text = (
        f"{prefix}SourceData AS (\n"
        f"    SELECT {', '.join(source_columns)}\n"
        f"    {from_where}\n"
        f"),\n"
        f"AggregatedData AS (\n"
        f"    SELECT {', '.join(aggregate_columns)}\n"
        f"    {from_where}\n"
        f")\n"
        f"SELECT {modifiers}{outer_columns}\n"
        f"FROM SourceData\n"
        f"CROSS JOIN AggregatedData"
        f"{order_clause}{tail_text}"
    )

    warnings.insert(0, "Restructured mixed aggregate query into SourceData/AggregatedData CTEs")
    logger.info("[AGG_FIX] Restructured query with SourceData/AggregatedData CTEs")
    return FixResult(fixed_query=unmask_literals(text, saved), warnings=warnings, original_query=sql)


def fix_sql_query(sql: str, options: Optional[SQLFixOptions] = None) -> FixResult:
    """Proactive aggregation repair driven by SQLFixOptions."""
    options = options or SQLFixOptions()
    if not has_group_by_aggregation_issue(sql):
        return FixResult(fixed_query=sql, original_query=sql)

    result = FixResult(fixed_query=sql, original_query=sql)
    if options.use_cte_restructuring:
        result = restructure_with_cte(sql)
    if not result.changed and options.auto_fix_group_by:
        result = add_missing_group_by(sql)

    if options.verbose and result.changed:
        logger.info(f"[AGG_FIX] Original query:\n{sql}\n[AGG_FIX] Fixed query:\n{result.fixed_query}")
    return result
