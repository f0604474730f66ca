"""
Query Validator - the repair chain between the LLM and the database
===================================================================

ARCHITECTURAL POSITION:
    LLM output
      -> validate_and_clean_query()      extraction and cheap text fixes
      -> table name formatting           (optional)
      -> syntax fixer                    SQL Server dialect conflicts
      -> aggregation fixer               GROUP BY / CTE restructuring
      -> scope fixer                     derived table and CTE references
      -> advisory and schema warnings
    -> QueryVerificationResult -> executor

Every stage returns the query it was given when it finds nothing to fix, so
clean SQL passes through untouched. Warnings from every stage are collected
in order and surfaced to the end user.
"""

import re
import logging
from typing import List, Optional, Set

from aggregation_fixer import AGGREGATE_FUNCTIONS, SQLFixOptions, fix_sql_query
from config import SqlRepairSettings
from join_repairer import fix_malformed_joins
from repair_models import FixResult, QueryVerificationResult
from scope_fixer import find_derived_tables, validate_and_fix_derived_table_issues
from sql_error_handler import SqlValidationError
from sql_lexer import (
    SQL_KEYWORDS,
    blank_nested,
    enclosing_scope_end,
    enclosing_scope_start,
    find_matching_paren,
    is_placeholder,
    mask_literals,
    unmask_literals,
)
from sql_sanitizer import clean_sql_query, strip_backticks
from syntax_fixer import fix_top_offset_conflict, validate_and_fix_sql_query
from table_formatter import TABLE_REFERENCE_RE, format_table_names_in_query, split_table_name

logger = logging.getLogger(__name__)

EMPTY_QUERY_ERROR = "Query is empty or contains no valid SQL statements"
NESTED_AGGREGATE_WARNING = (
    "SQL Server doesn't support nested aggregate functions or subqueries within aggregate functions. "
    "Consider restructuring the query to avoid this pattern."
)
MISSING_WHERE_WARNING = "Query doesn't contain a WHERE clause, which might return a large number of rows"
SELECT_STAR_WARNING = "Query uses SELECT *, which might be inefficient. Consider selecting only needed columns"
JOIN_WITHOUT_ON_WARNING = (
    "Query appears to have JOINs without ON conditions, which could result in a Cartesian product"
)
LIMIT_WARNING = "Consider using TOP instead of LIMIT for SQL Server compatibility"
PERCENTILE_WARNING = (
    "Replaced PERCENTILE_CONT window function with AVG(CAST(... AS FLOAT)) because the query uses GROUP BY; "
    "the value is an average, not a percentile"
)

_AGGREGATE_CALL_RE = re.compile(rf"\b(?:{'|'.join(AGGREGATE_FUNCTIONS)})\s*\(", re.IGNORECASE)
_OVER_AFTER_RE = re.compile(r'\s*OVER\s*\(', re.IGNORECASE)
_SELECT_WORD_RE = re.compile(r'\bSELECT\b', re.IGNORECASE)
_SET_OPERATOR_RE = re.compile(r'\b(UNION(?:\s+ALL)?|EXCEPT|INTERSECT)\b', re.IGNORECASE)
_ORDER_BY_RE = re.compile(r'\bORDER\s+BY\b', re.IGNORECASE)
_GROUP_BY_RE = re.compile(r'\bGROUP\s+BY\b', re.IGNORECASE)
_PERCENTILE_RE = re.compile(r'\bPERCENTILE_CONT\s*\(', re.IGNORECASE)
_WITHIN_GROUP_RE = re.compile(r'\s*WITHIN\s+GROUP\s*\(', re.IGNORECASE)
_WITHIN_ORDER_RE = re.compile(r'^\s*ORDER\s+BY\s+(.*?)(?:\s+(?:ASC|DESC))?\s*$', re.IGNORECASE | re.DOTALL)
_WHERE_RE = re.compile(r'\bWHERE\b', re.IGNORECASE)
_FROM_RE = re.compile(r'\bFROM\b', re.IGNORECASE)
_SELECT_STAR_RE = re.compile(
    r'\bSELECT\s+(?:(?:DISTINCT|ALL)\s+)?(?:TOP\s*(?:\(\s*\d+\s*\)|\d+)\s+(?:PERCENT\s+)?)?\*',
    re.IGNORECASE
)
_JOIN_RE = re.compile(r'\b(CROSS\s+)?JOIN\b', re.IGNORECASE)
_ON_RE = re.compile(r'\bON\b', re.IGNORECASE)
_LIMIT_RE = re.compile(r'\bLIMIT\s+\d+', re.IGNORECASE)
_BRACKETED_NAME_RE = re.compile(r'\[[^\[\]]*\]')


# =============================================================================
# CLEANING STEPS
# =============================================================================

def has_nested_aggregate(sql: str) -> bool:
    """True if an aggregate call contains another aggregate or a subquery."""
    masked, _ = mask_literals(sql)
    for m in _AGGREGATE_CALL_RE.finditer(masked):
        open_pos = m.end() - 1
        close_pos = find_matching_paren(masked, open_pos)
        if close_pos is None:
            continue
        # SUM(SUM(x)) OVER (...) is a window over a grouped aggregate
        if _OVER_AFTER_RE.match(masked, close_pos + 1):
            continue
        inner = masked[open_pos + 1:close_pos]
        if _AGGREGATE_CALL_RE.search(inner) or _SELECT_WORD_RE.search(inner):
            return True
    return False


def remove_order_by_before_set_operator(sql: str) -> FixResult:
    """Drop ORDER BY from every top-level branch except the last one of a UNION/EXCEPT/INTERSECT."""
    masked, saved = mask_literals(sql)
    view = blank_nested(masked)
    operators = list(_SET_OPERATOR_RE.finditer(view))
    if not operators:
        return FixResult(fixed_query=sql, original_query=sql)

    removals = []
    segment_start = 0
    for op in operators:
        order_by = None
        for order_by in _ORDER_BY_RE.finditer(view, segment_start, op.start()):
            pass
        if order_by is not None:
            removals.append((order_by.start(), op.start(), ' '.join(op.group(1).upper().split())))
        segment_start = op.end()

    if not removals:
        return FixResult(fixed_query=sql, original_query=sql)

    text = masked
    warnings = []
    for start, end, operator in reversed(removals):
        text = text[:start].rstrip() + '\n' + text[end:]
        warnings.insert(0, f"Removed ORDER BY clause before {operator} (not allowed in SQL Server)")

    logger.info(f"[VALIDATOR] Removed {len(removals)} ORDER BY clause(s) before a set operator")
    return FixResult(fixed_query=unmask_literals(text, saved), warnings=warnings, original_query=sql)


def _level_has_group_by(masked: str, pos: int) -> bool:
    start = enclosing_scope_start(masked, pos)
    end = enclosing_scope_end(masked, pos)
    return _GROUP_BY_RE.search(blank_nested(masked[start + 1:end])) is not None


def replace_percentile_window(sql: str) -> FixResult:
    """
    PERCENTILE_CONT(...) WITHIN GROUP (ORDER BY expr) OVER (...) cannot be
    mixed with GROUP BY. Replace it with AVG(CAST(expr AS FLOAT)) at levels
    that group.
    """
    masked, saved = mask_literals(sql)
    edits = []
    for m in _PERCENTILE_RE.finditer(masked):
        args_close = find_matching_paren(masked, m.end() - 1)
        if args_close is None:
            continue
        within = _WITHIN_GROUP_RE.match(masked, args_close + 1)
        if not within:
            continue
        within_close = find_matching_paren(masked, within.end() - 1)
        if within_close is None:
            continue
        over = _OVER_AFTER_RE.match(masked, within_close + 1)
        if not over:
            continue
        over_close = find_matching_paren(masked, over.end() - 1)
        if over_close is None:
            continue
        order = _WITHIN_ORDER_RE.match(masked[within.end():within_close])
        if not order or not _level_has_group_by(masked, m.start()):
            continue
        edits.append((m.start(), over_close + 1, f"AVG(CAST({order.group(1).strip()} AS FLOAT))"))

    if not edits:
        return FixResult(fixed_query=sql, original_query=sql)

    text = masked
    for start, end, replacement in reversed(edits):
        text = text[:start] + replacement + text[end:]
    logger.info(f"[VALIDATOR] Replaced {len(edits)} PERCENTILE_CONT window function(s)")
    return FixResult(fixed_query=unmask_literals(text, saved), warnings=[PERCENTILE_WARNING], original_query=sql)


def validate_and_clean_query(raw: str, merge_split_names: bool = True) -> FixResult:
    """
    Extract SQL from raw LLM output and apply the cheap text repairs.

    Raises:
        SqlValidationError: raw is not a string, or is empty
    """
    if not isinstance(raw, str):
        raise SqlValidationError(f"Invalid SQL query: expected a string, got {type(raw).__name__}")
    if not raw.strip():
        raise SqlValidationError(EMPTY_QUERY_ERROR)

    warnings: List[str] = []
    query = clean_sql_query(raw)
    if not query:
        logger.warning("[VALIDATOR] No SQL statement could be extracted")
        return FixResult(fixed_query="", warnings=warnings, original_query=raw)

    repaired = fix_malformed_joins(query, merge_split_names=merge_split_names)
    if repaired != query:
        warnings.append("Repaired malformed JOIN syntax")
        query = repaired

    result = fix_top_offset_conflict(query)
    warnings.extend(result.warnings)
    query = result.fixed_query

    if has_nested_aggregate(query):
        logger.warning("[VALIDATOR] Nested aggregate detected")
        warnings.append(NESTED_AGGREGATE_WARNING)

    for step in (remove_order_by_before_set_operator, replace_percentile_window):
        result = step(query)
        warnings.extend(result.warnings)
        query = result.fixed_query

    query = strip_backticks(query).strip()
    return FixResult(fixed_query=query, warnings=warnings, original_query=raw)


# =============================================================================
# VALIDATOR
# =============================================================================

class QueryValidator:
    """
    Runs the full repair chain and the advisory checks.

    schema_provider is any object with get_all_tables() returning TableRef
    items (see database.DatabaseManager). Without one, the schema existence
    warnings are skipped.
    """

    def __init__(self, schema_provider=None, settings: Optional[SqlRepairSettings] = None):
        self.schema_provider = schema_provider
        self.settings = settings or SqlRepairSettings()

    def validate(self, raw: str) -> QueryVerificationResult:
        try:
            try:
                cleaned = validate_and_clean_query(raw, merge_split_names=self.settings.merge_split_table_names)
            except SqlValidationError as e:
                return QueryVerificationResult(is_valid=False, errors=[str(e)])

            query = cleaned.fixed_query
            if not query or not query.strip():
                return QueryVerificationResult(is_valid=False, errors=[EMPTY_QUERY_ERROR],
                                               warnings=list(cleaned.warnings))

            warnings = list(cleaned.warnings)
            if self.settings.format_table_names:
                query = format_table_names_in_query(query)

            for result in self._repair_passes(query):
                warnings.extend(result.warnings)
                query = result.fixed_query

            warnings.extend(self._advisory_warnings(query))
            warnings.extend(self._schema_warnings(query))

            if self.settings.verbose_logging:
                logger.info(f"[VALIDATOR] Raw input:\n{raw}\n[VALIDATOR] Final query:\n{query}")

            return QueryVerificationResult(is_valid=True, fixed_query=query, errors=[],
                                           warnings=_dedupe(warnings))
        except Exception as e:
            logger.error(f"[VALIDATOR] Verification failed: {e}", exc_info=True)
            return QueryVerificationResult(is_valid=False, errors=[f"Query verification failed: {e}"])

    verify = validate

    def _repair_passes(self, query: str):
        """Yield each pass result in order, feeding each the previous output."""
        result = validate_and_fix_sql_query(query)
        yield result

        result = self._fix_aggregation(result.fixed_query)
        yield result

        yield validate_and_fix_derived_table_issues(result.fixed_query)

    def _fix_aggregation(self, query: str) -> FixResult:
        options = SQLFixOptions(
            auto_fix_group_by=self.settings.auto_fix_group_by,
            use_cte_restructuring=self.settings.use_cte_restructuring,
            verbose=self.settings.verbose_logging,
        )
        if not options.auto_fix_group_by and not options.use_cte_restructuring:
            return FixResult(fixed_query=query, original_query=query)
        try:
            return fix_sql_query(query, options)
        except Exception as e:
            logger.error(f"[AGG_FIX] Failed, returning query unchanged: {e}")
            return FixResult(fixed_query=query, warnings=[f"Error fixing aggregation: {e}"],
                             is_valid=False, original_query=query)

    # -------------------------------------------------------------------------
    # Advisory checks
    # -------------------------------------------------------------------------

    @staticmethod
    def _advisory_warnings(query: str) -> List[str]:
        masked, _ = mask_literals(query)
        masked = _BRACKETED_NAME_RE.sub('[]', masked)
        warnings = []

        if _FROM_RE.search(masked) and not _WHERE_RE.search(masked):
            warnings.append(MISSING_WHERE_WARNING)

        if _SELECT_STAR_RE.search(masked):
            warnings.append(SELECT_STAR_WARNING)

        joins = [m for m in _JOIN_RE.finditer(masked) if not m.group(1)]
        if len(joins) > len(_ON_RE.findall(masked)):
            warnings.append(JOIN_WITHOUT_ON_WARNING)

        if has_nested_aggregate(query):
            warnings.append(NESTED_AGGREGATE_WARNING)

        if _LIMIT_RE.search(masked):
            warnings.append(LIMIT_WARNING)

        return warnings

    def _schema_warnings(self, query: str) -> List[str]:
        if self.schema_provider is None:
            return []
        try:
            tables = self.schema_provider.get_all_tables()
        except Exception as e:
            logger.warning(f"[VALIDATOR] Schema lookup failed, table check skipped: {e}")
            return []

        qualified_names = {t.qualified_name.lower() for t in tables}
        bare_names = {t.name.lower() for t in tables}
        default_schema = self.settings.default_schema

        masked, _ = mask_literals(query)
        local_names: Set[str] = {d.alias_name.lower() for d in find_derived_tables(masked)}

        warnings = []
        for m in TABLE_REFERENCE_RE.finditer(masked):
            name = m.group(2)
            if is_placeholder(name) or name.upper() in SQL_KEYWORDS:
                continue
            parts = split_table_name(name)
            if not parts:
                continue
            table = parts[-1]
            if len(parts) == 1 and table.lower() in local_names:
                continue

            if len(parts) == 1:
                full_name = f"{default_schema}.{table}"
                known = table.lower() in bare_names
            else:
                full_name = f"{parts[-2]}.{table}"
                known = full_name.lower() in qualified_names
            if not known:
                warnings.append(f"Table '{full_name}' may not exist in the database schema")
        return warnings


def _dedupe(items: List[str]) -> List[str]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen
