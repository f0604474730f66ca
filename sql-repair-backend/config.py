"""
Environment configuration and logging setup for the SQL repair backend.

All settings come from environment variables (optionally loaded from a .env
file). SqlRepairSettings.from_env() is the only place that reads them; every
other module receives a settings object.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning(f"[CONFIG] Unrecognised boolean '{value}', using default {default}")
    return default


def parse_int(value: Optional[str], default: int, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        logger.warning(f"[CONFIG] Invalid integer '{value}', using default {default}")
        return default
    if parsed < minimum:
        logger.warning(f"[CONFIG] {parsed} is below the minimum {minimum}, using {minimum}")
        return minimum
    return parsed


@dataclass
class SqlRepairSettings:
    """
    Runtime settings for validation, retry and schema lookups.

    Environment variables:
        DATABASE_URL                  SQLAlchemy URL (mssql+pyodbc://...)
        SQL_MAX_RETRIES               execution attempts per query, fixes included
        SQL_THROW_ON_FAILURE          re-raise the last database error
        SQL_AUTO_FIX_GROUP_BY         add missing GROUP BY columns
        SQL_USE_CTE_RESTRUCTURING     prefer SourceData/AggregatedData CTEs
        SQL_VERBOSE_LOGGING           log full before/after queries
        SQL_MERGE_SPLIT_TABLE_NAMES   merge "[Order] Details]" style splits
        SQL_FORMAT_TABLE_NAMES        bracket table names after FROM/JOIN
        SCHEMA_CACHE_TTL              seconds a cached table schema stays valid
        SCHEMA_CACHE_MAX_SIZE         cached table schemas kept at most
        DEFAULT_SCHEMA                schema assumed for unqualified tables
        LOG_LEVEL                     root log level
    """
    database_url: Optional[str] = None
    max_retries: int = 3
    throw_on_failure: bool = True
    auto_fix_group_by: bool = True
    use_cte_restructuring: bool = True
    verbose_logging: bool = False
    merge_split_table_names: bool = True
    format_table_names: bool = False
    schema_cache_ttl: int = 3600
    schema_cache_max_size: int = 500
    default_schema: str = "dbo"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "SqlRepairSettings":
        if load_env_file:
            load_dotenv()

        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            max_retries=parse_int(os.getenv("SQL_MAX_RETRIES"), defaults.max_retries, minimum=1),
            throw_on_failure=parse_bool(os.getenv("SQL_THROW_ON_FAILURE"), defaults.throw_on_failure),
            auto_fix_group_by=parse_bool(os.getenv("SQL_AUTO_FIX_GROUP_BY"), defaults.auto_fix_group_by),
            use_cte_restructuring=parse_bool(os.getenv("SQL_USE_CTE_RESTRUCTURING"), defaults.use_cte_restructuring),
            verbose_logging=parse_bool(os.getenv("SQL_VERBOSE_LOGGING"), defaults.verbose_logging),
            merge_split_table_names=parse_bool(
                os.getenv("SQL_MERGE_SPLIT_TABLE_NAMES"), defaults.merge_split_table_names
            ),
            format_table_names=parse_bool(os.getenv("SQL_FORMAT_TABLE_NAMES"), defaults.format_table_names),
            schema_cache_ttl=parse_int(os.getenv("SCHEMA_CACHE_TTL"), defaults.schema_cache_ttl, minimum=1),
            schema_cache_max_size=parse_int(
                os.getenv("SCHEMA_CACHE_MAX_SIZE"), defaults.schema_cache_max_size, minimum=1
            ),
            default_schema=os.getenv("DEFAULT_SCHEMA") or defaults.default_schema,
            log_level=(os.getenv("LOG_LEVEL") or defaults.log_level).upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Root logging for scripts and services embedding the pipeline."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
