"""
Derived-Table / CTE Scope Fixer
===============================

PROBLEM:
    SQL Server rejects an outer query that keeps referring to a table after a
    derived table or CTE has replaced it:

        SELECT RegionData.Region, COUNT(*)
        FROM (SELECT Orders.ShipRegion AS Region FROM Orders) AS RegionData
        WHERE Orders.ShipRegion = 'WA'          <- multi-part identifier
        GROUP BY RegionData.Region                 could not be bound

SOLUTION:
    1. Collect every derived table (FROM/JOIN/APPLY (SELECT ...) alias) and
       every CTE (WITH a AS (...), b AS (...)) with its character span
    2. Collect the tables hidden behind each alias (FROM/JOIN tokens of the
       inner query). CTEs built on other CTEs inherit their tables, to a full
       transitive closure
    3. Rewrite Table.Column to Alias.Column, only after the alias is defined
       and only inside the scope that can see the alias

    References inside the derived table itself are never touched, and a table
    that the outer scope declares again is left alone.

OUTPUT:
    Every rewrite adds a warning that is surfaced to the end user:
        Fixed table reference in WHERE clause: Orders.ShipRegion -> RegionData.ShipRegion
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from repair_models import FixResult
from sql_lexer import (
    SQL_KEYWORDS,
    blank_nested,
    enclosing_scope_end,
    enclosing_scope_start,
    find_matching_paren,
    is_placeholder,
    mask_literals,
    strip_brackets,
    unmask_literals,
)
from table_formatter import TABLE_REFERENCE_RE, split_table_name

logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class DerivedTableDescriptor:
    """A derived table or CTE and the tables its alias hides."""
    alias: str
    table_references: List[str] = field(default_factory=list)
    subquery: str = ""
    start_pos: int = 0
    end_pos: int = 0
    kind: str = "derived"  # "derived" or "cte"

    @property
    def alias_name(self) -> str:
        return strip_brackets(self.alias)


@dataclass
class _Rewrite:
    start: int
    end: int
    replacement: str
    warning: str
    owner_end: int


_DERIVED_OPEN_RE = re.compile(r'\b(?:FROM|JOIN|APPLY)\s*(\()\s*SELECT\b', re.IGNORECASE)
_ALIAS_AFTER_RE = re.compile(r'\s*(?:AS\s+)?(\[[^\]]+\]|[A-Za-z_]\w*)', re.IGNORECASE)
_CTE_START_RE = re.compile(r'(?:^|;)(?:\s|__CMNT\d{4,}__)*WITH\s+(?!\()', re.IGNORECASE)
_CTE_HEAD_RE = re.compile(
    r'\s*(\[[^\]]+\]|[A-Za-z_]\w*)\s*(?:\([^()]*\)\s*)?AS\s*\(',
    re.IGNORECASE
)
_CTE_SEPARATOR_RE = re.compile(r'\s*,')
_CLAUSE_RE = re.compile(
    r'\b(GROUP\s+BY|PARTITION\s+BY|ORDER\s+BY|WHERE|HAVING|ON|SELECT|FROM|JOIN)\b',
    re.IGNORECASE
)

_CLAUSE_LABELS = {
    "GROUP BY": " in GROUP BY",
    "PARTITION BY": " in PARTITION BY",
    "WHERE": " in WHERE clause",
    "ON": " in JOIN condition",
}


# =============================================================================
# DISCOVERY
# =============================================================================

def _find_table_references(subquery: str, exclude: str = "") -> List[str]:
    """Tables named after FROM/JOIN in subquery, dotted and bracket-free."""
    references: List[str] = []
    for m in TABLE_REFERENCE_RE.finditer(subquery):
        name = m.group(2)
        if is_placeholder(name) or name.upper() in SQL_KEYWORDS:
            continue
        qualified = '.'.join(split_table_name(name))
        if qualified.lower() == exclude.lower():
            continue
        if qualified and qualified not in references:
            references.append(qualified)
    return references


def _bare_name(qualified: str) -> str:
    return qualified.split('.')[-1]


def _find_derived(sql: str) -> List[DerivedTableDescriptor]:
    descriptors = []
    for m in _DERIVED_OPEN_RE.finditer(sql):
        open_pos = m.start(1)
        close_pos = find_matching_paren(sql, open_pos)
        if close_pos is None:
            logger.debug(f"[SCOPE_FIX] Unbalanced derived table at offset {open_pos}, skipped")
            continue

        alias_match = _ALIAS_AFTER_RE.match(sql, close_pos + 1)
        if not alias_match or alias_match.group(1).upper() in SQL_KEYWORDS:
            continue

        alias = alias_match.group(1)
        subquery = sql[open_pos + 1:close_pos]
        descriptors.append(DerivedTableDescriptor(
            alias=alias,
            table_references=_find_table_references(subquery, exclude=strip_brackets(alias)),
            subquery=subquery,
            start_pos=m.start(),
            end_pos=alias_match.end(),
            kind="derived",
        ))
    return descriptors


def _find_ctes(sql: str) -> List[DerivedTableDescriptor]:
    descriptors = []
    view = blank_nested(sql)
    for start in _CTE_START_RE.finditer(view):
        pos = start.end()
        while True:
            head = _CTE_HEAD_RE.match(sql, pos)
            if not head:
                break
            open_pos = head.end() - 1
            close_pos = find_matching_paren(sql, open_pos)
            if close_pos is None:
                break

            alias = head.group(1)
            subquery = sql[open_pos + 1:close_pos]
            descriptors.append(DerivedTableDescriptor(
                alias=alias,
                table_references=_find_table_references(subquery, exclude=strip_brackets(alias)),
                subquery=subquery,
                start_pos=head.start(1),
                end_pos=close_pos + 1,
                kind="cte",
            ))

            separator = _CTE_SEPARATOR_RE.match(sql, close_pos + 1)
            if not separator:
                break
            pos = separator.end()
    return descriptors


def _propagate_cte_references(descriptors: List[DerivedTableDescriptor]) -> None:
    """Let every descriptor inherit the tables of the CTEs it selects from."""
    ctes = {d.alias_name.lower(): d for d in descriptors if d.kind == "cte"}
    changed = True
    while changed:
        changed = False
        for descriptor in descriptors:
            for reference in list(descriptor.table_references):
                source = ctes.get(_bare_name(reference).lower())
                if source is None or source is descriptor:
                    continue
                for inherited in source.table_references:
                    if (inherited not in descriptor.table_references
                            and inherited.lower() != descriptor.alias_name.lower()):
                        descriptor.table_references.append(inherited)
                        changed = True


def find_derived_tables(sql: str) -> List[DerivedTableDescriptor]:
    """
    Locate derived tables and CTEs in sql.

    Offsets refer to the text passed in. Callers that need literal safety
    pass masked text (see sql_lexer.mask_literals).
    """
    if not sql:
        return []
    descriptors = _find_ctes(sql) + _find_derived(sql)
    descriptors.sort(key=lambda d: d.start_pos)
    _propagate_cte_references(descriptors)
    return descriptors


# =============================================================================
# REWRITING
# =============================================================================

def _name_pattern(name: str) -> str:
    escaped = re.escape(name)
    if re.fullmatch(r'[A-Za-z_]\w*', name):
        return rf'(?:\[{escaped}\]|{escaped}\b)'
    return rf'\[{escaped}\]'


def _column_reference_re(table: str) -> re.Pattern:
    """Matches [schema.]table.column for one hidden table."""
    return re.compile(
        r'(?<![\w\].@#$])'
        r'((?:\[[^\]]+\]|[A-Za-z_]\w*)\.)?'
        rf'({_name_pattern(table)})\.'
        r'(\[[^\]]+\]|[A-Za-z_]\w*|\*)',
        re.IGNORECASE
    )


def _clause_context(sql: str, pos: int) -> Optional[str]:
    """Nearest clause keyword governing pos, walking out of nested groups."""
    while True:
        start = enclosing_scope_start(sql, pos)
        segment = blank_nested(sql[start + 1:pos])
        last = None
        for last in _CLAUSE_RE.finditer(segment):
            pass
        if last is not None:
            return ' '.join(last.group(1).upper().split())
        if start < 0:
            return None
        pos = start


def _declared_tables(sql: str, start: int, end: int) -> List[str]:
    """Tables the scope itself names; nested subqueries and CTE bodies do not count."""
    return [_bare_name(t).lower() for t in _find_table_references(blank_nested(sql[start:end]))]


def _declared_in_nested_group(sql: str, pos: int, scope_start: int, table: str) -> bool:
    """True when a group between pos and scope_start names table in its own FROM/JOIN."""
    start = enclosing_scope_start(sql, pos)
    while start >= scope_start:
        end = enclosing_scope_end(sql, start + 1)
        if table.lower() in _declared_tables(sql, start + 1, end):
            return True
        start = enclosing_scope_start(sql, start)
    return False


def _is_used_as_source(sql: str, alias: str, start: int, end: int) -> bool:
    pattern = re.compile(rf'\b(?:FROM|JOIN)\s+{_name_pattern(alias)}(?![\w.])', re.IGNORECASE)
    return pattern.search(sql, start, end) is not None


def _collect_rewrites(sql: str, descriptor: DerivedTableDescriptor,
                      rewrites: Dict[int, _Rewrite]) -> None:
    scope_start = descriptor.end_pos
    scope_end = enclosing_scope_end(sql, scope_start)
    if scope_start >= scope_end:
        return
    if descriptor.kind == "cte" and not _is_used_as_source(sql, descriptor.alias_name, scope_start, scope_end):
        return

    redeclared = set(_declared_tables(sql, scope_start, scope_end))
    hidden = []
    for reference in descriptor.table_references:
        bare = _bare_name(reference)
        if bare.lower() in redeclared or bare.lower() == descriptor.alias_name.lower():
            continue
        if bare not in hidden:
            hidden.append(bare)

    for table in hidden:
        for m in _column_reference_re(table).finditer(sql, scope_start, scope_end):
            existing = rewrites.get(m.start())
            if existing is not None and existing.owner_end >= descriptor.end_pos:
                continue
            if _declared_in_nested_group(sql, m.start(), scope_start, table):
                continue

            table_token, column = m.group(2), m.group(3)
            if table_token.startswith('[') and not column.startswith('[') and column != '*':
                column = f'[{column}]'
            replacement = f"{descriptor.alias}.{column}"

            context = _CLAUSE_LABELS.get(_clause_context(sql, m.start()) or "", "")
            rewrites[m.start()] = _Rewrite(
                start=m.start(),
                end=m.end(),
                replacement=replacement,
                warning=f"Fixed table reference{context}: {m.group(0)} -> {replacement}",
                owner_end=descriptor.end_pos,
            )


def fix_derived_table_scope_issues(sql: str) -> FixResult:
    """
    Rewrite outer-scope references to tables hidden behind a derived table
    or CTE alias. Returns the fixed query and one warning per rewrite.
    """
    if not sql or not sql.strip():
        return FixResult(fixed_query=sql or "", original_query=sql)

    masked, saved = mask_literals(sql)
    descriptors = find_derived_tables(masked)
    if not descriptors:
        return FixResult(fixed_query=sql, original_query=sql)

    rewrites: Dict[int, _Rewrite] = {}
    for descriptor in descriptors:
        logger.debug(
            f"[SCOPE_FIX] {descriptor.kind} '{descriptor.alias}' hides {descriptor.table_references}"
        )
        _collect_rewrites(masked, descriptor, rewrites)

    if not rewrites:
        return FixResult(fixed_query=sql, original_query=sql)

    text = masked
    for rewrite in sorted(rewrites.values(), key=lambda r: r.start, reverse=True):
        text = text[:rewrite.start] + rewrite.replacement + text[rewrite.end:]

    warnings: List[str] = []
    for rewrite in sorted(rewrites.values(), key=lambda r: r.start):
        warning = unmask_literals(rewrite.warning, saved)
        if warning not in warnings:
            warnings.append(warning)

    logger.info(f"[SCOPE_FIX] Rewrote {len(rewrites)} out-of-scope table reference(s)")
    return FixResult(fixed_query=unmask_literals(text, saved), warnings=warnings, original_query=sql)


def validate_and_fix_derived_table_issues(sql: str) -> FixResult:
    """Exception boundary around fix_derived_table_scope_issues()."""
    try:
        return fix_derived_table_scope_issues(sql)
    except Exception as e:
        logger.error(f"[SCOPE_FIX] Failed, returning query unchanged: {e}")
        return FixResult(
            fixed_query=sql,
            warnings=[f"Error fixing derived table scope issues: {e}"],
            is_valid=False,
            original_query=sql,
        )
