"""
Policy manager.

Entry point tying together hub path parsing, bundle fetching, policy
loading and execution.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

import anyio
from sqlalchemy.engine import Connection, Engine

from cqpolicy.config import settings
from cqpolicy.policy.engine import PolicyExecutor
from cqpolicy.policy.errors import CanceledError, ParseError
from cqpolicy.policy.fetcher import BundleFetcher
from cqpolicy.policy.hub import parse_policy_hub_path
from cqpolicy.policy.loader import PolicyLoader
from cqpolicy.policy.models import ExecuteRequest, ExecutionResult, HubReference, LocalBundle, Policy


logger = logging.getLogger(__name__)


class PolicyManager:
    """
    Resolves, downloads, loads and runs policies.

    Args:
        cache_dir: Cache root for downloaded bundles
        engine: SQLAlchemy engine used when a request carries no connection
        fetcher: Bundle fetcher, built from cache_dir when omitted
        loader: Policy loader, strictness taken from settings when omitted
        callback_timeout: Bound for async progress callbacks
    """

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        engine: Optional[Engine] = None,
        fetcher: Optional[BundleFetcher] = None,
        loader: Optional[PolicyLoader] = None,
        callback_timeout: float = settings.CALLBACK_TIMEOUT,
    ):
        self.cache_dir = Path(cache_dir or settings.CACHE_DIR)
        self.engine = engine
        self.fetcher = fetcher or BundleFetcher(self.cache_dir)
        self.loader = loader or PolicyLoader(strict=settings.STRICT_POLICIES)
        self.callback_timeout = callback_timeout

    def parse_policy_hub_path(self, segments: Sequence[str], default_ref: str = "") -> HubReference:
        """Parse hub path segments into a HubReference."""
        return parse_policy_hub_path(segments, default_ref)

    async def download_policy(self, reference: HubReference, timeout: Optional[float] = None) -> LocalBundle:
        """Fetch a policy bundle into the cache. Safe to call repeatedly."""
        return await self.fetcher.ensure(reference, timeout=timeout)

    def load_policy(self, reference: HubReference) -> Policy:
        """
        Load the policy tree of a previously downloaded reference.

        Raises:
            ParseError: If the bundle is not cached or its definitions are invalid
        """
        bundle_path = self.fetcher.bundle_path(reference)
        if not bundle_path.is_dir():
            raise ParseError(str(bundle_path), f"policy {reference} has not been downloaded")
        return self.loader.load(bundle_path, reference.subpath or "")

    async def run_policy(self, request: ExecuteRequest) -> ExecutionResult:
        """
        Execute a policy tree.

        Uses request.conn when given, otherwise opens one connection from the
        manager's engine for the duration of the run.

        Raises:
            ValueError: If no connection and no engine are available
            CanceledError: If request.timeout expires
            PolicyError: Under stop_on_failure, the first failure of the run
        """
        if request.conn is None and self.engine is None:
            raise ValueError("no database connection available: pass ExecuteRequest.conn or configure an engine")

        try:
            with anyio.fail_after(request.timeout):
                if request.conn is not None:
                    return await self._execute(request, request.conn)

                conn = await anyio.to_thread.run_sync(self.engine.connect)
                try:
                    conn.execution_options(isolation_level="AUTOCOMMIT")
                    return await self._execute(request, conn)
                finally:
                    await self._close(conn)
        except TimeoutError as e:
            raise CanceledError(f"policy run {request.policy.name}") from e

    async def _close(self, conn: Connection) -> None:
        # Closing blocks while a statement is still running on the connection
        with anyio.CancelScope(shield=True):
            with anyio.move_on_after(settings.CANCEL_TIMEOUT) as scope:
                await anyio.to_thread.run_sync(conn.close, abandon_on_cancel=True)
            if scope.cancelled_caught:
                logger.warning("Database connection still busy after %.1fs, closing in background", settings.CANCEL_TIMEOUT)

    async def _execute(self, request: ExecuteRequest, conn: Connection) -> ExecutionResult:
        executor = PolicyExecutor(
            conn,
            provider_versions=request.provider_versions,
            stop_on_failure=request.stop_on_failure,
            update_callback=request.update_callback,
            callback_timeout=self.callback_timeout,
        )
        return await executor.execute(request.policy)
