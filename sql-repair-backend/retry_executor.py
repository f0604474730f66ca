"""
Retrying SQL Executor - execute, classify the failure, fix, try again
=====================================================================

STATE MACHINE:

    PENDING --execute--> SUCCEEDED
       |
       +--error--> FIXING --fix changed the query--> RETRYING --execute--> ...
                      |
                      +--unfixable class / no change / budget spent--> FAILED

apply_error_fix() is the only transition that touches the query. It is a pure
function of (query, error class), so the repair decisions can be tested
without a database.

Attempts are strictly sequential: attempt N+1 starts after attempt N's
round-trip has resolved.
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aggregation_fixer import add_missing_group_by, restructure_with_cte
from join_repairer import fix_malformed_joins
from repair_models import FixResult
from scope_fixer import validate_and_fix_derived_table_issues
from sql_error_handler import ErrorClass, classify_sql_error, error_message
from sql_lexer import blank_nested, mask_literals, unmask_literals
from sql_sanitizer import strip_backticks
from syntax_fixer import validate_and_fix_sql_query

logger = logging.getLogger(__name__)

ExecuteFn = Callable[[str], List[Dict[str, Any]]]

_LIMIT_TAIL_RE = re.compile(r'\s+LIMIT\s+(\d+)\s*(;?)\s*$', re.IGNORECASE)
_SELECT_HEAD_RE = re.compile(r'\bSELECT\s+(?:(?:DISTINCT|ALL)\s+)?', re.IGNORECASE)
_TOP_AT_RE = re.compile(r'TOP\b', re.IGNORECASE)


class RetryState(Enum):
    PENDING = "pending"
    FIXING = "fixing"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RetryOutcome:
    state: RetryState
    rows: Optional[List[Dict[str, Any]]] = None
    final_query: str = ""
    attempts: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    error_class: Optional[ErrorClass] = None

    @property
    def succeeded(self) -> bool:
        return self.state == RetryState.SUCCEEDED


class SqlExecutionFailed(Exception):
    """Raised when throw_on_failure is set; the database error is the __cause__."""

    def __init__(self, outcome: RetryOutcome):
        super().__init__(error_message(outcome.error))
        self.outcome = outcome


# =============================================================================
# TRANSITION
# =============================================================================

def convert_limit_to_top(sql: str) -> FixResult:
    """SELECT ... LIMIT n  ->  SELECT TOP n ... on the final top-level SELECT."""
    masked, saved = mask_literals(sql)
    limit = _LIMIT_TAIL_RE.search(masked)
    if not limit or blank_nested(masked)[limit.start():limit.end()] != masked[limit.start():limit.end()]:
        return FixResult(fixed_query=sql, original_query=sql)

    head = None
    for head in _SELECT_HEAD_RE.finditer(blank_nested(masked[:limit.start()])):
        pass
    if head is None or _TOP_AT_RE.match(masked, head.end()):
        return FixResult(fixed_query=sql, original_query=sql)

    text = (
        masked[:head.end()] + f"TOP {limit.group(1)} " + masked[head.end():limit.start()] + limit.group(2)
    )
    warning = f"Replaced LIMIT {limit.group(1)} with TOP {limit.group(1)}"
    logger.info(f"[RETRY] {warning}")
    return FixResult(fixed_query=unmask_literals(text, saved), warnings=[warning], original_query=sql)


def _fix_syntax(query: str) -> FixResult:
    warnings: List[str] = []
    fixed = strip_backticks(query)
    if fixed != query:
        warnings.append("Replaced backtick identifiers with square brackets")

    repaired = fix_malformed_joins(fixed)
    if repaired != fixed:
        warnings.append("Repaired malformed JOIN syntax")
        fixed = repaired

    for step in (convert_limit_to_top, validate_and_fix_sql_query):
        result = step(fixed)
        warnings.extend(result.warnings)
        fixed = result.fixed_query

    return FixResult(fixed_query=fixed, warnings=warnings, original_query=query)


def _fix_group_by(query: str) -> FixResult:
    result = add_missing_group_by(query)
    if result.changed:
        return result
    return restructure_with_cte(query)


def apply_error_fix(query: str, error_class: ErrorClass) -> FixResult:
    """
    Targeted repair for one classified database error.

    Returns the query unchanged for classes that cannot be fixed.
    """
    if error_class == ErrorClass.GROUP_BY:
        return _fix_group_by(query)
    if error_class == ErrorClass.SYNTAX:
        return _fix_syntax(query)
    if error_class == ErrorClass.SCOPE:
        return validate_and_fix_derived_table_issues(query)
    return FixResult(fixed_query=query, original_query=query)


# =============================================================================
# EXECUTOR
# =============================================================================

class RetryingSqlExecutor:
    """
    Drives execute_fn through the retry state machine.

    execute_fn(sql) must return rows and raise on a database error.
    max_retries bounds the total number of executions.
    """

    def __init__(self, execute_fn: ExecuteFn, max_retries: int = 3,
                 throw_on_failure: bool = True, verbose: bool = False):
        self.execute_fn = execute_fn
        self.max_retries = max(1, max_retries)
        self.throw_on_failure = throw_on_failure
        self.verbose = verbose

    def execute(self, sql: str) -> RetryOutcome:
        outcome = RetryOutcome(state=RetryState.PENDING, final_query=sql)

        while outcome.state not in (RetryState.SUCCEEDED, RetryState.FAILED):
            if outcome.state in (RetryState.PENDING, RetryState.RETRYING):
                self._attempt(outcome)
            elif outcome.state == RetryState.FIXING:
                self._fix(outcome)

        if outcome.state == RetryState.FAILED:
            logger.error(
                f"[RETRY] Giving up after {outcome.attempts} attempt(s) "
                f"({outcome.error_class.value if outcome.error_class else 'unknown'})"
            )
            if self.throw_on_failure:
                raise SqlExecutionFailed(outcome) from outcome.error
        return outcome

    def _attempt(self, outcome: RetryOutcome):
        outcome.attempts += 1
        if self.verbose:
            logger.info(f"[RETRY] Executing SQL (attempt {outcome.attempts}/{self.max_retries})")
        try:
            outcome.rows = self.execute_fn(outcome.final_query)
        except Exception as e:
            outcome.error = e
            outcome.error_class = classify_sql_error(e)
            logger.warning(
                f"[RETRY] Attempt {outcome.attempts}/{self.max_retries} failed "
                f"({outcome.error_class.value}): {error_message(e)}"
            )
            outcome.state = RetryState.FIXING
            return

        outcome.error = None
        outcome.error_class = None
        outcome.state = RetryState.SUCCEEDED
        logger.info(f"[RETRY] Succeeded after {outcome.attempts} attempt(s)")

    def _fix(self, outcome: RetryOutcome):
        if not outcome.error_class.is_fixable:
            logger.info(f"[RETRY] {outcome.error_class.value} errors are not automatically fixable")
            outcome.state = RetryState.FAILED
            return
        if outcome.attempts >= self.max_retries:
            outcome.state = RetryState.FAILED
            return

        fix = apply_error_fix(outcome.final_query, outcome.error_class)
        if not fix.changed:
            logger.info("[RETRY] No fix applies to this query, stopping")
            outcome.state = RetryState.FAILED
            return

        if self.verbose:
            logger.info(f"[RETRY] Fixed query:\n{fix.fixed_query}")
        outcome.warnings.extend(w for w in fix.warnings if w not in outcome.warnings)
        outcome.final_query = fix.fixed_query
        outcome.state = RetryState.RETRYING
