"""
Execution backend: the warehouse that runs load and transform statements.

The pipeline never parses or optimizes statements; it renders the load
command for a file and hands derived-object definitions through verbatim.
"""

from abc import ABC, abstractmethod
from typing import Optional
import asyncio
import logging

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from core.config import settings
from core.exceptions import BackendError, BackendUnavailable
from schemas.pipeline import FileFormat, FileFormatType, SourceLocation

logger = logging.getLogger(__name__)


class ExecutionBackend(ABC):
    """Interface to the warehouse; all calls may block for a long time"""

    @abstractmethod
    async def load(self, location: SourceLocation, file_path: str) -> int:
        """
        Load one file into the location's target table.

        Returns:
            Number of rows loaded

        Raises:
            BackendUnavailable: transient failure, safe to retry
            BackendError: the load was rejected
        """
        pass

    @abstractmethod
    async def execute(self, statement: str) -> None:
        """
        Run an arbitrary transform or maintenance statement.

        Raises:
            BackendUnavailable: transient failure, safe to retry
            BackendError: the statement was rejected
        """
        pass

    async def close(self) -> None:
        pass


def render_file_format(file_format: FileFormat) -> str:
    """Render a FILE_FORMAT clause for a COPY statement"""
    options = [f"TYPE = '{file_format.type.value}'"]
    if file_format.type == FileFormatType.CSV:
        options.append(f"FIELD_DELIMITER = '{file_format.field_delimiter}'")
        if file_format.skip_header:
            options.append(f"SKIP_HEADER = {file_format.skip_header}")
    return f"FILE_FORMAT = ({' '.join(options)})"


def render_copy_statement(location: SourceLocation, file_path: str) -> str:
    """
    Render the COPY INTO statement loading a single file.

    Column mappings become a transforming SELECT over the staged file;
    otherwise columns are matched by name when requested.
    """
    file_format = location.file_format
    source = f"'{file_path}'"

    if file_format.column_mapping:
        if file_format.type == FileFormatType.CSV:
            projections = ", ".join(
                f"{src} AS {column}" for column, src in file_format.column_mapping.items()
            )
        else:
            projections = ", ".join(
                f"$1:{src} AS {column}" for column, src in file_format.column_mapping.items()
            )
        columns = ", ".join(file_format.column_mapping)
        statement = (
            f"COPY INTO {location.target_table} ({columns}) "
            f"FROM (SELECT {projections} FROM {source}) "
            f"{render_file_format(file_format)}"
        )
    else:
        statement = (
            f"COPY INTO {location.target_table} FROM {source} "
            f"{render_file_format(file_format)}"
        )
        if file_format.match_by_column_name:
            statement += " MATCH_BY_COLUMN_NAME = CASE_INSENSITIVE"

    return statement


class SQLBackend(ExecutionBackend):
    """
    Execution backend over an async SQLAlchemy engine.

    Error mapping:
    - connection errors, invalidated connections, timeouts -> BackendUnavailable
    - any other database error -> BackendError
    """

    def __init__(
        self,
        engine: Optional[AsyncEngine] = None,
        timeout: Optional[float] = None
    ):
        self.engine = engine or create_async_engine(settings.WAREHOUSE_URL, echo=False)
        self.timeout = timeout if timeout is not None else settings.BACKEND_TIMEOUT_SECONDS

    async def load(self, location: SourceLocation, file_path: str) -> int:
        statement = render_copy_statement(location, file_path)
        logger.info(f"Loading {file_path} into {location.target_table}")
        rowcount = await self._run(statement, operation="load")
        return max(rowcount, 0)

    async def execute(self, statement: str) -> None:
        await self._run(statement, operation="execute")

    async def close(self) -> None:
        await self.engine.dispose()

    async def _run(self, statement: str, operation: str) -> int:
        context = {"operation": operation, "statement": statement[:500]}
        try:
            return await asyncio.wait_for(self._execute(statement), timeout=self.timeout)

        except asyncio.TimeoutError as e:
            raise BackendUnavailable(
                f"Backend {operation} timed out after {self.timeout}s",
                context=context,
                original_exception=e
            )

        except (OperationalError, InterfaceError) as e:
            raise BackendUnavailable(
                f"Backend unavailable during {operation}",
                context=context,
                original_exception=e
            )

        except DBAPIError as e:
            if e.connection_invalidated:
                raise BackendUnavailable(
                    f"Backend connection lost during {operation}",
                    context=context,
                    original_exception=e
                )
            raise BackendError(
                f"Backend rejected {operation} statement",
                context=context,
                original_exception=e
            )

        except SQLAlchemyError as e:
            raise BackendError(
                f"Backend {operation} failed",
                context=context,
                original_exception=e
            )

    async def _execute(self, statement: str) -> int:
        async with self.engine.begin() as conn:
            # Statements are opaque: no bind parameter parsing
            result = await conn.exec_driver_sql(statement)
            return result.rowcount
