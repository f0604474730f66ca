"""
SQL Server Syntax Fixer - dialect conflicts the LLM keeps reproducing
=====================================================================

RULES (applied per query level; a level is the top-level statement or the
body of one parenthesised SELECT):

    1. ORDER BY in a subquery needs TOP, OFFSET or FOR XML/JSON
           (SELECT x FROM t ORDER BY x)  ->  (SELECT TOP 100 x FROM t ORDER BY x)
    2. SELECT DISTINCT ... ORDER BY without TOP/OFFSET
           SELECT DISTINCT x ... ORDER BY x  ->  SELECT DISTINCT TOP 100 x ...
    3. TOP and OFFSET/FETCH cannot share a level: TOP is dropped, paging kept
           SELECT TOP 10 * ... OFFSET 5 ROWS FETCH NEXT 10 ROWS ONLY
        -> SELECT * ... OFFSET 5 ROWS FETCH NEXT 10 ROWS ONLY
    4. OFFSET n ROW(S) FETCH FIRST|NEXT m ROW(S) ONLY
        -> OFFSET n ROWS FETCH NEXT m ROWS ONLY

Levels that contain UNION/EXCEPT/INTERSECT are skipped: their ORDER BY and
paging belong to the set operation, not to the first SELECT.
"""

import re
import logging
from typing import Callable, List, Optional, Tuple

from repair_models import FixResult
from sql_lexer import blank_nested, find_subquery_spans, mask_literals, unmask_literals

logger = logging.getLogger(__name__)

MAX_LEVEL_EDITS = 100
DEFAULT_SUBQUERY_TOP = 100

_SELECT_HEAD_RE = re.compile(r'\bSELECT\s+(?:(DISTINCT|ALL)\s+)?', re.IGNORECASE)
_TOP_CLAUSE_RE = re.compile(
    r'\bSELECT\s+(?:(?:DISTINCT|ALL)\s+)?'
    r'(TOP\s*(?:\([^()]*\)|\d+)(?:\s+PERCENT)?(?:\s+WITH\s+TIES)?\s*)',
    re.IGNORECASE
)
_TOP_RE = re.compile(r'\bSELECT\s+(?:(?:DISTINCT|ALL)\s+)?TOP\b', re.IGNORECASE)
_ORDER_BY_RE = re.compile(r'\bORDER\s+BY\b', re.IGNORECASE)
_OFFSET_RE = re.compile(r'\bOFFSET\b', re.IGNORECASE)
_FOR_XML_RE = re.compile(r'\bFOR\s+(?:XML|JSON)\b', re.IGNORECASE)
_SET_OPERATOR_RE = re.compile(r'\b(?:UNION|EXCEPT|INTERSECT)\b', re.IGNORECASE)
_FETCH_RE = re.compile(
    r'\bOFFSET\s+(\S+)\s+ROWS?\s+FETCH\s+(?:NEXT|FIRST)\s+(\S+)\s+ROWS?\s+ONLY\b',
    re.IGNORECASE
)

# (start, end, replacement) relative to the whole text
_Edit = Tuple[int, int, str]


class _QueryLevel:
    """One SELECT level with nested groups blanked out."""

    def __init__(self, text: str, start: int, end: int, is_subquery: bool):
        self.start = start
        self.end = end
        self.is_subquery = is_subquery
        self.view = blank_nested(text[start:end])

    def has(self, pattern: re.Pattern) -> bool:
        return pattern.search(self.view) is not None

    def head(self) -> Optional[re.Match]:
        return _SELECT_HEAD_RE.search(self.view)


def _query_levels(text: str) -> List[_QueryLevel]:
    levels = [_QueryLevel(text, 0, len(text), False)]
    for open_pos, close_pos in find_subquery_spans(text):
        levels.append(_QueryLevel(text, open_pos + 1, close_pos, True))
    return levels


def _apply_level_rule(text: str, rule: Callable[[_QueryLevel], Optional[_Edit]]) -> Tuple[str, int]:
    """Apply rule one edit at a time until no level needs it."""
    applied = 0
    for _ in range(MAX_LEVEL_EDITS):
        for level in _query_levels(text):
            edit = rule(level)
            if edit is not None:
                start, end, replacement = edit
                text = text[:start] + replacement + text[end:]
                applied += 1
                break
        else:
            break
    return text, applied


# =============================================================================
# RULES
# =============================================================================

def _subquery_order_by_rule(level: _QueryLevel) -> Optional[_Edit]:
    if not level.is_subquery or not level.has(_ORDER_BY_RE):
        return None
    if level.has(_TOP_RE) or level.has(_OFFSET_RE) or level.has(_FOR_XML_RE):
        return None
    if level.has(_SET_OPERATOR_RE):
        return None
    head = level.head()
    if head is None:
        return None
    pos = level.start + head.end()
    return pos, pos, f"TOP {DEFAULT_SUBQUERY_TOP} "


def _distinct_order_by_rule(level: _QueryLevel) -> Optional[_Edit]:
    head = level.head()
    if head is None or not head.group(1) or head.group(1).upper() != "DISTINCT":
        return None
    if not level.has(_ORDER_BY_RE) or level.has(_TOP_RE) or level.has(_OFFSET_RE):
        return None
    if level.has(_SET_OPERATOR_RE) or level.has(_FOR_XML_RE):
        return None
    pos = level.start + head.end()
    return pos, pos, f"TOP {DEFAULT_SUBQUERY_TOP} "


def _top_offset_rule(level: _QueryLevel) -> Optional[_Edit]:
    if not level.has(_OFFSET_RE) or level.has(_SET_OPERATOR_RE):
        return None
    top = _TOP_CLAUSE_RE.search(level.view)
    if top is None:
        return None
    return level.start + top.start(1), level.start + top.end(1), ""


# =============================================================================
# PUBLIC API
# =============================================================================

def _masked_fix(sql: str, steps: List[Tuple[Callable[[str], Tuple[str, int]], str]]) -> FixResult:
    if not sql or not sql.strip():
        return FixResult(fixed_query=sql or "", original_query=sql)

    masked, saved = mask_literals(sql)
    warnings: List[str] = []
    for step, warning in steps:
        masked, applied = step(masked)
        if applied:
            logger.info(f"[SYNTAX_FIX] {warning} ({applied}x)")
            warnings.append(warning)
    return FixResult(fixed_query=unmask_literals(masked, saved), warnings=warnings, original_query=sql)


def _normalize_fetch(text: str) -> Tuple[str, int]:
    count = 0

    def _canonical(m: re.Match) -> str:
        nonlocal count
        canonical = f"OFFSET {m.group(1)} ROWS FETCH NEXT {m.group(2)} ROWS ONLY"
        if canonical != m.group(0):
            count += 1
        return canonical

    return _FETCH_RE.sub(_canonical, text), count


def fix_top_offset_conflict(sql: str) -> FixResult:
    """Drop TOP wherever OFFSET/FETCH pages the same query level."""
    return _masked_fix(sql, [
        (lambda t: _apply_level_rule(t, _top_offset_rule),
         "Removed TOP clause that conflicts with OFFSET/FETCH"),
    ])


def fix_sql_server_syntax_issues(sql: str) -> FixResult:
    """Apply all SQL Server dialect rules in order."""
    return _masked_fix(sql, [
        (lambda t: _apply_level_rule(t, _subquery_order_by_rule),
         f"Added TOP {DEFAULT_SUBQUERY_TOP} to subquery with ORDER BY (TOP, OFFSET or FOR XML is required)"),
        (lambda t: _apply_level_rule(t, _top_offset_rule),
         "Removed TOP clause that conflicts with OFFSET/FETCH"),
        (lambda t: _apply_level_rule(t, _distinct_order_by_rule),
         f"Added TOP {DEFAULT_SUBQUERY_TOP} to SELECT DISTINCT with ORDER BY"),
        (_normalize_fetch,
         "Normalized OFFSET/FETCH syntax"),
    ])


def validate_and_fix_sql_query(sql: str) -> FixResult:
    """Exception boundary around fix_sql_server_syntax_issues()."""
    if not sql or not isinstance(sql, str) or not sql.strip():
        return FixResult(fixed_query=sql or "", warnings=["Empty SQL query"], is_valid=False, original_query=sql)

    try:
        return fix_sql_server_syntax_issues(sql)
    except Exception as e:
        logger.error(f"[SYNTAX_FIX] Failed, returning query unchanged: {e}")
        return FixResult(
            fixed_query=sql,
            warnings=[f"Error fixing SQL syntax: {e}"],
            is_valid=False,
            original_query=sql,
        )
