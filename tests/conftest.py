import io
import zipfile
from pathlib import Path
from typing import Dict

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from cqpolicy.policy.fetcher import BundleFetcher
from cqpolicy.policy.manager import PolicyManager

HUB_URL = "https://hub.test"

# Skip integration tests unless explicitly enabled
def pytest_addoption(parser):
    parser.addoption("--integration", action="store_true", default=False, help="Run integration tests")

def pytest_collection_modifyitems(config, items):
    if not config.getoption("--integration"):
        skip_integration = pytest.mark.skip(reason="need --integration option to run")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


TEST_POLICY_FILES: Dict[str, str] = {
    "README.md": "# cq-policy-core\n",
    "test/policy.yaml": """\
name: test-policy
description: Policy used by the policy manager tests
configuration:
  providers:
    aws: ">= 1.0"
queries:
  - name: top-level-query
    description: All buckets are encrypted
    query: SELECT id, name FROM test_policy_table WHERE encrypted = 0
policies:
  - name: sub-policy-1
    queries:
      - name: sub-level-query
        query: SELECT 1 WHERE 1 = 0
  - include: sub-policy-2
""",
    "test/sub-policy-2/policy.yaml": """\
name: sub-policy-2
queries:
  - name: sub-level-query
    query_file: queries/public.sql
""",
    "test/sub-policy-2/queries/public.sql": "SELECT id FROM test_policy_table WHERE public = 1\n",
}

EXPECTED_KEYS = {
    "test-policy/top-level-query",
    "test-policy/sub-policy-1/sub-level-query",
    "test-policy/sub-policy-2/sub-level-query",
}


def build_zip(files: Dict[str, str], top: str = "cloudquery-cq-policy-core-1a2b3c4") -> bytes:
    """Build a hub-style zipball with every file under a single top-level directory."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in sorted(files.items()):
            path = f"{top}/{name}" if top else name
            info = zipfile.ZipInfo(path, date_time=(2024, 1, 1, 0, 0, 0))
            zf.writestr(info, content)
    return buf.getvalue()


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def policy_zip() -> bytes:
    return build_zip(TEST_POLICY_FILES)


@pytest.fixture
def bundle_dir(tmp_path) -> Path:
    return write_tree(tmp_path / "bundle", TEST_POLICY_FILES)


@pytest.fixture
def cache_dir(tmp_path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def fetcher(cache_dir) -> BundleFetcher:
    return BundleFetcher(cache_dir, hub_url=HUB_URL, token=None, timeout_s=5.0)


@pytest.fixture
def db_engine():
    """In-memory provider database with a single resource table."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.begin() as conn:
        conn.exec_driver_sql(
            "CREATE TABLE test_policy_table (id INTEGER PRIMARY KEY, name TEXT, encrypted INTEGER, public INTEGER)"
        )
        conn.exec_driver_sql(
            "INSERT INTO test_policy_table (id, name, encrypted, public) VALUES "
            "(1, 'logs', 1, 0), (2, 'backups', 1, 0)"
        )
    yield engine
    engine.dispose()


@pytest.fixture
def db_conn(db_engine):
    with db_engine.connect() as conn:
        yield conn


@pytest.fixture
def manager(cache_dir, fetcher, db_engine) -> PolicyManager:
    return PolicyManager(cache_dir=cache_dir, engine=db_engine, fetcher=fetcher)
