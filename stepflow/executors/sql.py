"""
SQL Executor - Runs one templated SQL statement per step.

Connection string resolution: step database_url, then the `database_url`
variable, then the DATABASE_URL environment variable. Each step opens its
own engine without pooling and disposes it when done.

Without save directives the statement runs inside a transaction and the
driver's row count is the affected count. With save directives the
statement is treated as a query: every row is fetched, the row count is the
affected count and the first row feeds the saved variables.

The rendered statement goes to the driver as written (no bind-parameter
parsing). The step timeout bounds the statement itself: PostgreSQL gets a
server-side statement_timeout, and for every driver a watchdog interrupts
the DBAPI connection once the deadline passes.
"""

import logging
import threading
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.pool import NullPool

from .. import config
from ..engine.executor_interface import (
    ConfigurationError, ProtocolError, StepContext, StepExecutor,
    ensure_expected_affected_rows, run_cancellable,
)
from ..engine.extraction import extract_row_values, trim_long_string
from ..models.flow import StepKind

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Accept libpq-style postgres:// URLs."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


class StatementGuard:
    """
    Interrupts the statement running on a DBAPI connection.

    sqlite3 connections expose interrupt() and psycopg2 connections expose
    cancel(); both are safe to call from another thread. The guard fires
    either when the step deadline passes or when the run is cancelled.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self.timed_out = False
        self._dbapi_connection: Any = None
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def attach(self, conn: Connection) -> None:
        """Bind to a checked-out connection and start the deadline timer."""
        with self._lock:
            self._dbapi_connection = conn.connection.dbapi_connection
        self._timer = threading.Timer(self.timeout, self._expire)
        self._timer.daemon = True
        self._timer.start()

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()

    def interrupt(self) -> None:
        with self._lock:
            connection = self._dbapi_connection
        if connection is None:
            return
        if hasattr(connection, "interrupt"):
            connection.interrupt()
        elif hasattr(connection, "cancel"):
            connection.cancel()
        else:
            logger.warning(f"[sql] driver connection {type(connection).__name__} cannot be interrupted")

    def _expire(self) -> None:
        self.timed_out = True
        self.interrupt()


class SQLExecutor(StepExecutor):
    """
    SQL step executor.

    Step fields:
        - sql: Statement (templated)
        - database_url: Connection string (templated, optional)
        - expect_affected_rows: Required affected/returned row count (0 disables)
        - save: Variable name -> column name ("" means the variable's name)
    """

    @property
    def kind(self) -> StepKind:
        return StepKind.SQL

    def resolve_database_url(self, context: StepContext) -> str:
        """
        Resolve the connection string for a step.

        Raises:
            ConfigurationError: If no source provides one
        """
        url = context.render(context.step.database_url).strip()
        if not url:
            url = context.variables.get("database_url").strip()
        if not url:
            url = config.get_database_url()
        if not url:
            raise ConfigurationError(
                context.name,
                "requires database_url (var, step override, or DATABASE_URL env)",
            )
        return normalize_database_url(url)

    def create_engine(self, url: str, timeout: int) -> Engine:
        """Create an unpooled engine for a single step."""
        try:
            parsed = make_url(url)
        except ArgumentError as e:
            raise ValueError(f"invalid database url: {e}") from e

        connect_args: Dict[str, Any] = {}
        if parsed.get_backend_name() == "postgresql":
            connect_args["connect_timeout"] = timeout
            connect_args["options"] = f"-c statement_timeout={timeout * 1000}"
        elif parsed.get_backend_name() == "sqlite":
            connect_args["timeout"] = timeout

        return create_engine(url, poolclass=NullPool, connect_args=connect_args)

    def execute(self, context: StepContext) -> None:
        """Run the statement, check the affected rows and save values."""
        step = context.step
        statement = context.render(step.sql).strip()
        if not statement:
            raise ConfigurationError(step.name, "sql statement rendered to an empty string")

        url = self.resolve_database_url(context)
        context.log.set_request(statement=statement, database=self._redacted(url))

        try:
            engine = self.create_engine(url, context.timeout)
        except (ValueError, SQLAlchemyError) as e:
            raise ConfigurationError(step.name, f"open database: {e}", e) from e

        logger.info(f"[sql] {step.name}: {trim_long_string(statement)}")

        guard = StatementGuard(context.timeout)
        try:
            if step.save:
                affected, values = run_cancellable(
                    context,
                    lambda: self._query_and_extract(context, engine, statement, guard),
                    on_cancel=guard.interrupt,
                )
            else:
                affected = run_cancellable(
                    context,
                    lambda: self._execute_statement(context, engine, statement, guard),
                    on_cancel=guard.interrupt,
                )
                values = {}
        finally:
            guard.stop()
            engine.dispose()

        context.log.set_response(affected_rows=affected)
        logger.info(f"[sql] {step.name}: {affected} row(s)")

        ensure_expected_affected_rows(step, affected)

        for var_name, value in values.items():
            context.variables.set(var_name, value)
            logger.info(f"[{step.name}] saved {var_name} = {trim_long_string(value)}")

    def _execute_statement(self, context: StepContext, engine: Engine, statement: str,
                           guard: StatementGuard) -> int:
        try:
            with engine.begin() as conn:
                guard.attach(conn)
                result = conn.exec_driver_sql(statement, execution_options={"no_parameters": True})
                return max(result.rowcount, 0)
        except SQLAlchemyError as e:
            raise self._failure(context, guard, "execute sql", e) from e

    def _query_and_extract(self, context: StepContext, engine: Engine, statement: str,
                           guard: StatementGuard) -> Tuple[int, Dict[str, str]]:
        try:
            with engine.begin() as conn:
                guard.attach(conn)
                result = conn.exec_driver_sql(statement, execution_options={"no_parameters": True})
                if not result.returns_rows:
                    raise ProtocolError(context.name, "statement returned no result set to save from")
                columns = list(result.keys())
                rows = result.fetchall()
        except SQLAlchemyError as e:
            raise self._failure(context, guard, "query sql", e) from e

        if not rows:
            raise ProtocolError(context.name, "no rows returned to save")

        values = extract_row_values(context.name, columns, tuple(rows[0]), context.step.save)
        return len(rows), values

    @staticmethod
    def _failure(context: StepContext, guard: StatementGuard, action: str,
                 error: SQLAlchemyError) -> ProtocolError:
        if guard.timed_out:
            return ProtocolError(context.name, f"{action}: statement timed out after {context.timeout}s", error)
        return ProtocolError(context.name, f"{action}: {error}", error)

    @staticmethod
    def _redacted(url: str) -> str:
        try:
            return make_url(url).render_as_string(hide_password=True)
        except ArgumentError:
            return "<invalid url>"
