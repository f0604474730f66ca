"""
SqlRepairPipeline - Validation and Execution Orchestrator

Takes one LLM completion through:
- Extraction and text repair (QueryValidator)
- Execution with classified-error retries (RetryingSqlExecutor)
- Conversion of the final database error into a user-facing message

Contains no repair logic of its own.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field

from config import SqlRepairSettings
from query_validator import QueryValidator
from retry_executor import ExecuteFn, RetryOutcome, RetryingSqlExecutor, SqlExecutionFailed
from sql_error_handler import handle_sql_error_message

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class PipelineResult:
    """Result from pipeline."""
    success: bool
    execution_time: float
    sql_query: Optional[str] = None
    data: Optional[List[Dict[str, Any]]] = None
    row_count: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "sql_query": self.sql_query,
            "data": self.data,
            "row_count": self.row_count,
            "warnings": list(self.warnings),
            "error": self.error,
            "attempts": self.attempts,
            "execution_time": self.execution_time,
        }


# =============================================================================
# PIPELINE
# =============================================================================

class SqlRepairPipeline:
    """
    FLOW:
    1. Validate and repair the raw completion
    2. If invalid -> return the validation errors, nothing is executed
    3. Execute with retry (fix per error class between attempts)
    4. On final failure -> enhanced error message with table suggestions

    Warnings from validation and from every retry fix are always returned.
    """

    def __init__(
        self,
        execute_fn: ExecuteFn,
        validator: Optional[QueryValidator] = None,
        settings: Optional[SqlRepairSettings] = None,
        table_names_fn: Optional[Callable[[], List[str]]] = None,
    ):
        self.settings = settings or SqlRepairSettings()
        self.execute_fn = execute_fn
        self.validator = validator or QueryValidator(settings=self.settings)
        self.table_names_fn = table_names_fn

    def run(self, raw_sql: str) -> PipelineResult:
        start = datetime.now()

        verification = self.validator.validate(raw_sql)
        warnings = list(verification.warnings)
        if not verification.is_valid:
            error = "; ".join(verification.errors) or "Query validation failed"
            logger.warning(f"[PIPELINE] Validation failed: {error}")
            return PipelineResult(
                success=False,
                execution_time=self._elapsed(start),
                sql_query=verification.fixed_query,
                warnings=warnings,
                error=error,
            )

        executor = RetryingSqlExecutor(
            self.execute_fn,
            max_retries=self.settings.max_retries,
            throw_on_failure=self.settings.throw_on_failure,
            verbose=self.settings.verbose_logging,
        )
        try:
            outcome = executor.execute(verification.fixed_query)
        except SqlExecutionFailed as e:
            outcome = e.outcome

        warnings.extend(w for w in outcome.warnings if w not in warnings)

        if not outcome.succeeded:
            return self._failure(outcome, warnings, start)

        rows = outcome.rows or []
        logger.info(f"[PIPELINE] {len(rows)} row(s) after {outcome.attempts} attempt(s)")
        return PipelineResult(
            success=True,
            execution_time=self._elapsed(start),
            sql_query=outcome.final_query,
            data=rows,
            row_count=len(rows),
            warnings=warnings,
            attempts=outcome.attempts,
        )

    def _failure(self, outcome: RetryOutcome, warnings: List[str], start: datetime) -> PipelineResult:
        error = handle_sql_error_message(outcome.error, self._known_tables())
        return PipelineResult(
            success=False,
            execution_time=self._elapsed(start),
            sql_query=outcome.final_query,
            warnings=warnings,
            error=error,
            attempts=outcome.attempts,
        )

    def _known_tables(self) -> List[str]:
        if self.table_names_fn is None:
            return []
        try:
            return list(self.table_names_fn())
        except Exception as e:
            logger.warning(f"[PIPELINE] Could not list tables for suggestions: {e}")
            return []

    def _elapsed(self, start: datetime) -> float:
        return (datetime.now() - start).total_seconds()


def create_pipeline(settings: Optional[SqlRepairSettings] = None, database: Any = None) -> SqlRepairPipeline:
    """
    Wire the pipeline against a DatabaseManager.

    Settings default to the environment; the database defaults to one built
    from DATABASE_URL.
    """
    from database import DatabaseManager

    settings = settings or SqlRepairSettings.from_env()
    database = database or DatabaseManager.from_settings(settings)
    validator = QueryValidator(schema_provider=database, settings=settings)
    return SqlRepairPipeline(
        execute_fn=database.execute_query,
        validator=validator,
        settings=settings,
        table_names_fn=database.get_table_names,
    )
