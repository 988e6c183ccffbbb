"""
Relational accessor collaborator.

Executes generated SQL against the active datasource through SQLAlchemy.
Drivers are blocking, so statements run on the shared worker pool.
"""

import datetime
import decimal
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from pydantic import BaseModel, Field
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..core.database import build_engine
from ..core.executor import run_blocking
from ..core.logging import get_logger
from ..workflow.errors import SqlExecutionError
from .datasource_service import DatasourceConfig

logger = get_logger("services.sql_executor")


class ResultSet(BaseModel):
    """Column headers plus rows of a query result; ``truncated`` when rows were cut at the row limit."""
    columns: List[str] = Field(default_factory=list)
    rows: List[List[Any]] = Field(default_factory=list)
    truncated: bool = False

    def to_records(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, decimal.Decimal):
        return float(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class SqlExecutor(ABC):

    @abstractmethod
    async def execute(self, datasource: DatasourceConfig, sql: str) -> ResultSet:
        """
        Run ``sql`` on ``datasource``.

        Raises:
            SqlExecutionError: If the database rejects the statement
        """


class SqlAlchemySqlExecutor(SqlExecutor):
    """Executes statements with one cached engine per datasource URL."""

    def __init__(self, max_rows: int = 1000):
        self.max_rows = max_rows
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()

    def _engine(self, url: str) -> Engine:
        with self._lock:
            engine = self._engines.get(url)
            if engine is None:
                engine = build_engine(url)
                self._engines[url] = engine
            return engine

    def _execute_blocking(self, datasource: DatasourceConfig, sql: str) -> ResultSet:
        engine = self._engine(datasource.url)
        with engine.connect() as conn:
            # Passed to the driver verbatim: ":name" and "%" in generated SQL are not parameters
            result = conn.exec_driver_sql(sql, execution_options={"no_parameters": True})
            if not result.returns_rows:
                return ResultSet()
            columns = list(result.keys())
            fetched = result.fetchmany(self.max_rows + 1)
        rows = [[_json_safe(v) for v in row] for row in fetched[:self.max_rows]]
        return ResultSet(columns=columns, rows=rows, truncated=len(fetched) > self.max_rows)

    async def execute(self, datasource, sql):
        try:
            result = await run_blocking(self._execute_blocking, datasource, sql)
        except SQLAlchemyError as e:
            detail = getattr(e, "orig", None) or e
            logger.warning(f"SQL execution failed on {datasource.name}: {detail}")
            raise SqlExecutionError(str(detail)) from e
        if result.truncated:
            logger.warning(f"SQL result on {datasource.name} cut at {self.max_rows} rows")
        logger.info(f"SQL executed on {datasource.name}: {len(result.rows)} rows")
        return result

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
