"""
End-to-end tests for the policy manager: hub path, download, load and run.
"""
import asyncio
import time

import httpx
import pytest
import respx

from cqpolicy.policy.errors import (
    CanceledError, InvalidReferenceError, ParseError, UnknownProviderVersionError, UnsatisfiedConstraintError
)
from cqpolicy.policy.loader import load_policy
from cqpolicy.policy.manager import PolicyManager
from cqpolicy.policy.models import ExecuteRequest, Policy, Query

from tests.conftest import EXPECTED_KEYS, HUB_URL

ZIPBALL = "/repos/cloudquery/cq-policy-core/zipball"
LONG_RUNNING = (
    "WITH RECURSIVE counter(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM counter WHERE x < 50000000) "
    "SELECT x FROM counter WHERE x < 0"
)


@pytest.fixture
def hub(policy_zip):
    with respx.mock(base_url=HUB_URL) as router:
        router.get(ZIPBALL).mock(return_value=httpx.Response(200, content=policy_zip))
        yield router


async def _load(manager):
    reference = manager.parse_policy_hub_path(["cloudquery/cq-policy-core", "test"])
    await manager.download_policy(reference)
    return manager.load_policy(reference)


class TestPolicyManager:
    """Test the full download, load and run flow."""

    @pytest.mark.asyncio
    async def test_run_passes(self, manager, hub):
        policy = await _load(manager)
        result = await manager.run_policy(ExecuteRequest(policy=policy, provider_versions={"aws": "1.0.0"}))

        assert result.passed
        assert set(result.results) == EXPECTED_KEYS
        assert all(r.passed for r in result.results.values())

    @pytest.mark.asyncio
    async def test_unsatisfied_root_requirement(self, manager, hub):
        policy = await _load(manager)
        with pytest.raises(UnsatisfiedConstraintError) as exc_info:
            await manager.run_policy(ExecuteRequest(
                policy=policy, provider_versions={"aws": "0.5"}, stop_on_failure=True,
            ))
        assert str(exc_info.value) == "test-policy: provider aws does not satisfy version requirement >= 1.0"

    @pytest.mark.asyncio
    async def test_unsatisfied_root_requirement_without_stop(self, manager, hub):
        policy = await _load(manager)
        result = await manager.run_policy(ExecuteRequest(policy=policy, provider_versions={"aws": "0.5"}))

        assert not result.passed
        assert result.results == {}
        assert result.errors == ["test-policy: provider aws does not satisfy version requirement >= 1.0"]

    @pytest.mark.asyncio
    async def test_unknown_provider_version(self, manager, hub):
        policy = await _load(manager)
        with pytest.raises(UnknownProviderVersionError) as exc_info:
            await manager.run_policy(ExecuteRequest(policy=policy, stop_on_failure=True))
        assert str(exc_info.value) == "test-policy: provider aws version is unknown"

    @pytest.mark.asyncio
    async def test_malformed_path_fails_before_network(self, manager):
        with respx.mock(base_url=HUB_URL, assert_all_called=False) as router:
            route = router.get(ZIPBALL).mock(return_value=httpx.Response(200))
            with pytest.raises(InvalidReferenceError):
                manager.parse_policy_hub_path(["cq-policy-core"])
        assert not route.called

    def test_load_before_download(self, manager):
        reference = manager.parse_policy_hub_path(["cloudquery/cq-policy-core", "test"])
        with pytest.raises(ParseError, match="has not been downloaded"):
            manager.load_policy(reference)

    @pytest.mark.asyncio
    async def test_run_requires_connection_or_engine(self, cache_dir, fetcher, bundle_dir):
        manager = PolicyManager(cache_dir=cache_dir, fetcher=fetcher)
        with pytest.raises(ValueError, match="no database connection"):
            await manager.run_policy(ExecuteRequest(policy=load_policy(bundle_dir, "test")))

    @pytest.mark.asyncio
    async def test_run_uses_request_connection(self, cache_dir, fetcher, db_conn, bundle_dir):
        manager = PolicyManager(cache_dir=cache_dir, fetcher=fetcher)
        result = await manager.run_policy(ExecuteRequest(
            policy=load_policy(bundle_dir, "test"),
            provider_versions={"aws": "1.2.0"},
            conn=db_conn,
        ))
        assert result.passed
        assert not db_conn.closed

    @pytest.mark.asyncio
    async def test_run_timeout_raises_canceled(self, manager, hub):
        async def slow_callback(key, result):
            await asyncio.sleep(10)

        manager.callback_timeout = 30
        policy = await _load(manager)
        with pytest.raises(CanceledError, match="policy run test-policy canceled"):
            await manager.run_policy(ExecuteRequest(
                policy=policy,
                provider_versions={"aws": "1.0.0"},
                update_callback=slow_callback,
                timeout=0.1,
            ))

    @pytest.mark.asyncio
    async def test_download_is_repeatable(self, manager, hub):
        reference = manager.parse_policy_hub_path(["cloudquery/cq-policy-core", "test"])
        first = await manager.download_policy(reference)
        second = await manager.download_policy(reference)

        assert first.path == second.path
        assert first.digest == second.digest
        assert set(manager.load_policy(reference).query_keys()) == EXPECTED_KEYS

    @pytest.mark.asyncio
    async def test_run_timeout_interrupts_query_on_owned_connection(self, manager, db_engine):
        policy = Policy(name="slow-policy", queries=[Query(name="slow", statement=LONG_RUNNING)])

        start = time.monotonic()
        with pytest.raises(CanceledError, match="policy run slow-policy canceled"):
            await manager.run_policy(ExecuteRequest(policy=policy, timeout=0.2))
        assert time.monotonic() - start < 3

        with db_engine.connect() as conn:
            assert conn.exec_driver_sql("SELECT count(*) FROM test_policy_table").scalar() == 2

    @pytest.mark.asyncio
    async def test_run_timeout_frees_caller_connection(self, cache_dir, fetcher, db_conn):
        manager = PolicyManager(cache_dir=cache_dir, fetcher=fetcher)
        policy = Policy(name="slow-policy", queries=[Query(name="slow", statement=LONG_RUNNING)])

        start = time.monotonic()
        with pytest.raises(CanceledError):
            await manager.run_policy(ExecuteRequest(policy=policy, conn=db_conn, timeout=0.2))
        assert time.monotonic() - start < 3

        start = time.monotonic()
        assert db_conn.exec_driver_sql("SELECT 1").scalar() == 1
        assert time.monotonic() - start < 1
