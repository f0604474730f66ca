"""
Database collaborator: schema discovery and raw query execution.

DatabaseManager is the bundled implementation of the two interfaces the
repair pipeline depends on:

    schema provider   get_all_tables() / get_table_schema(schema, table)
    executor          execute_query(sql) -> List[dict], raises on error

SQL Server is reached through SQLAlchemy's mssql+pyodbc dialect; any other
SQLAlchemy URL works for tests and local runs.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from config import SqlRepairSettings
from schema_cache import SchemaCache
from sql_sanitizer import strip_backticks

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = {
    'information_schema', 'sys', 'guest', 'db_owner', 'db_accessadmin', 'db_securityadmin',
    'db_ddladmin', 'db_backupoperator', 'db_datareader', 'db_datawriter', 'db_denydatareader',
    'db_denydatawriter', 'pg_catalog', 'pg_toast', 'mysql', 'performance_schema',
}


@dataclass(frozen=True)
class TableRef:
    schema: str
    name: str

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool


class DatabaseManager:
    """Manages the engine, table discovery and the injected schema cache"""

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        schema_cache: Optional[SchemaCache] = None,
        default_schema: str = "dbo",
        **engine_kwargs: Any,
    ):
        if engine is None:
            if not database_url:
                raise ValueError("DATABASE_URL is not configured")
            engine = create_engine(database_url, **engine_kwargs)
        self.engine = engine
        self.schema_cache = schema_cache if schema_cache is not None else SchemaCache()
        self.default_schema = default_schema
        logger.info(f"[DB] Engine ready (dialect: {self.engine.dialect.name})")

    @classmethod
    def from_settings(cls, settings: SqlRepairSettings, **engine_kwargs: Any) -> "DatabaseManager":
        cache = SchemaCache(max_size=settings.schema_cache_max_size, default_ttl=settings.schema_cache_ttl)
        return cls(
            database_url=settings.database_url,
            schema_cache=cache,
            default_schema=settings.default_schema,
            **engine_kwargs,
        )

    # -------------------------------------------------------------------------
    # Schema provider
    # -------------------------------------------------------------------------

    def get_all_tables(self) -> List[TableRef]:
        """All user tables, system schemas excluded"""
        inspector = inspect(self.engine)
        tables: List[TableRef] = []
        for schema in inspector.get_schema_names():
            if schema.lower() in SYSTEM_SCHEMAS:
                continue
            for name in inspector.get_table_names(schema=schema):
                tables.append(TableRef(schema=schema, name=name))
        logger.debug(f"[DB] Discovered {len(tables)} tables")
        return tables

    def get_table_names(self) -> List[str]:
        """Qualified names for error suggestions"""
        return [t.qualified_name for t in self.get_all_tables()]

    def get_table_schema(self, schema: Optional[str], table: str) -> List[ColumnInfo]:
        """
        Columns of schema.table, served from the schema cache.

        Lookup failures return an empty list and are not cached, so the next
        call retries the database.
        """
        schema = schema or self.default_schema

        def _load() -> List[ColumnInfo]:
            columns = inspect(self.engine).get_columns(table, schema=schema)
            return [
                ColumnInfo(name=col["name"], data_type=str(col["type"]), nullable=bool(col.get("nullable", True)))
                for col in columns
            ]

        try:
            return self.schema_cache.get_or_load(schema, table, _load)
        except SQLAlchemyError as e:
            logger.warning(f"[DB] Could not load columns for {schema}.{table}: {e}")
            return []

    def invalidate_table(self, schema: Optional[str], table: str):
        self.schema_cache.invalidate(schema or self.default_schema, table)

    # -------------------------------------------------------------------------
    # Executor
    # -------------------------------------------------------------------------

    def execute_query(self, sql: str) -> List[Dict[str, Any]]:
        """
        Execute sql as-is and return rows as dictionaries.

        The text goes to the driver without bind-parameter parsing, so colons
        and percent signs inside LLM output are never treated as parameters.

        Raises:
            SQLAlchemyError: on any database error (the DBAPI error is on .orig)
        """
        sql = strip_backticks(sql)
        try:
            with self.engine.connect() as conn:
                result = conn.exec_driver_sql(sql)
                if not result.returns_rows:
                    return []
                data = [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            logger.error(f"[DB] Query execution failed: {getattr(e, 'orig', None) or e}")
            raise

        logger.info(f"[DB] Query executed: {len(data)} rows returned")
        return data

    def dispose(self):
        self.engine.dispose()
