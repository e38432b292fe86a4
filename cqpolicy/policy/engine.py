"""
Policy execution engine.

Walks a policy tree depth-first, checks each node's provider requirements,
runs its queries in declaration order on a single database connection and
aggregates the outcomes into an ExecutionResult.
"""

import inspect
import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

import anyio
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from cqpolicy.config import settings
from cqpolicy.policy.errors import QueryAssertionError, QueryExecutionError, VersionConstraintError
from cqpolicy.policy.models import ExecutionResult, Policy, Query, QueryResult, UpdateCallback
from cqpolicy.policy.versions import check_provider_versions


logger = logging.getLogger(__name__)


class PolicyExecutor:
    """
    Executes a policy tree against a database connection.

    The connection belongs to the caller: the executor issues statements on
    it but never commits, rolls back or closes it. Queries run strictly one
    at a time.
    """

    def __init__(
        self,
        conn: Connection,
        provider_versions: Optional[Dict[str, str]] = None,
        stop_on_failure: bool = False,
        update_callback: Optional[UpdateCallback] = None,
        callback_timeout: float = settings.CALLBACK_TIMEOUT,
        cancel_timeout: float = settings.CANCEL_TIMEOUT,
    ):
        """
        Initialize the executor.

        Args:
            conn: Open SQLAlchemy connection to the provider database
            provider_versions: Provider name to version used for requirement checks
            stop_on_failure: Abort on the first failed check, assertion or statement
            update_callback: Optional progress sink called with (key, result) after each query
            callback_timeout: Upper bound in seconds for awaiting an async callback
            cancel_timeout: How long a canceled run waits for the interrupted statement to stop
        """
        self.conn = conn
        self.provider_versions = provider_versions or {}
        self.stop_on_failure = stop_on_failure
        self.update_callback = update_callback
        self.callback_timeout = callback_timeout
        self.cancel_timeout = cancel_timeout

        self._results: Dict[str, QueryResult] = {}
        self._errors: List[str] = []
        self._passed = True

    async def execute(self, policy: Policy) -> ExecutionResult:
        """
        Run every reachable query of the policy tree.

        Args:
            policy: Root of the tree to execute

        Returns:
            ExecutionResult keyed by fully-qualified query path

        Raises:
            VersionConstraintError: Under stop_on_failure, on the first failed requirement check
            QueryExecutionError: Under stop_on_failure, on the first statement error
            QueryAssertionError: Under stop_on_failure, on the first failed assertion
        """
        self._results = {}
        self._errors = []
        self._passed = True

        logger.info("Executing policy %s (%d queries)", policy.name, policy.query_count())
        await self._execute_policy(policy, prefix="")

        result = ExecutionResult(passed=self._passed, results=dict(self._results), errors=list(self._errors))
        logger.info(
            "Policy %s finished: passed=%s executed=%d failed=%d skipped_subtrees=%d",
            policy.name, result.passed, len(result.results), len(result.failed_keys()), len(result.errors),
        )
        return result

    async def _execute_policy(self, policy: Policy, prefix: str) -> None:
        path = f"{prefix}/{policy.name}" if prefix else policy.name

        try:
            check_provider_versions(policy, self.provider_versions, label=path)
        except VersionConstraintError as e:
            if self.stop_on_failure:
                raise
            logger.warning("Skipping policy %s: %s", path, e)
            self._errors.append(str(e))
            if policy.query_count() > 0:
                self._passed = False
            return

        for query in policy.queries:
            key = f"{path}/{query.name}"
            result = await self._execute_query(key, query)
            self._results[key] = result
            if not result.passed:
                self._passed = False
            await self._notify(key, result)
            if not result.passed and self.stop_on_failure:
                raise QueryAssertionError(key)

        for child in policy.policies:
            await self._execute_policy(child, path)

    async def _execute_query(self, key: str, query: Query) -> QueryResult:
        logger.debug("Running query %s", key)
        finished = threading.Event()
        try:
            columns, rows = await anyio.to_thread.run_sync(
                self._run_statement, query.statement, finished, abandon_on_cancel=True
            )
        except anyio.get_cancelled_exc_class():
            # The worker thread keeps running until the driver aborts the statement
            with anyio.CancelScope(shield=True):
                stopped = await anyio.to_thread.run_sync(self._interrupt_until_finished, finished)
            if stopped:
                logger.info("Query %s interrupted", key)
            else:
                logger.warning("Query %s still running %.1fs after cancellation", key, self.cancel_timeout)
            raise
        except SQLAlchemyError as e:
            message = str(getattr(e, "orig", None) or e).strip()
            if self.stop_on_failure:
                raise QueryExecutionError(key, message) from e
            logger.warning("Query %s failed to execute: %s", key, message)
            return QueryResult(
                key=key,
                name=query.name,
                description=query.description,
                passed=False,
                error=message,
            )

        passed = query.evaluate(len(rows))
        logger.debug("Query %s returned %d rows, passed=%s", key, len(rows), passed)
        return QueryResult(
            key=key,
            name=query.name,
            description=query.description,
            passed=passed,
            columns=columns,
            rows=rows,
        )

    def _run_statement(self, statement: str, finished: threading.Event) -> Tuple[List[str], List[list]]:
        try:
            result = self.conn.exec_driver_sql(statement)
            if not result.returns_rows:
                return [], []
            columns = list(result.keys())
            rows = [list(row) for row in result.fetchall()]
            return columns, rows
        finally:
            finished.set()

    def _interrupt_until_finished(self, finished: threading.Event) -> bool:
        """Keep interrupting the running statement until its worker returns or cancel_timeout passes."""
        deadline = time.monotonic() + self.cancel_timeout
        while not finished.is_set():
            interrupt_statement(self.conn)
            if finished.wait(0.05):
                break
            if time.monotonic() >= deadline:
                return False
        return True

    async def _notify(self, key: str, result: QueryResult) -> None:
        if self.update_callback is None:
            return
        try:
            with anyio.move_on_after(self.callback_timeout) as scope:
                outcome = self.update_callback(key, result)
                if inspect.isawaitable(outcome):
                    await outcome
            if scope.cancelled_caught:
                logger.warning("Progress callback for %s timed out after %.1fs", key, self.callback_timeout)
        except Exception:
            logger.exception("Progress callback failed for %s", key)


def interrupt_statement(conn: Connection) -> bool:
    """
    Ask the driver to abort the statement running on a connection.

    Uses ``interrupt()`` (sqlite3) or ``cancel()`` (psycopg, psycopg2) of the
    underlying DBAPI connection. Both are safe to call from another thread.

    Returns:
        True if the driver supports interruption
    """
    try:
        driver_conn = conn.connection.driver_connection
    except (SQLAlchemyError, AttributeError) as e:
        logger.debug("Cannot reach DBAPI connection to interrupt: %s", e)
        return False

    for name in ("interrupt", "cancel"):
        method = getattr(driver_conn, name, None)
        if callable(method):
            try:
                method()
            except Exception as e:
                logger.debug("Interrupting statement via %s() failed: %s", name, e)
                return False
            return True
    return False
