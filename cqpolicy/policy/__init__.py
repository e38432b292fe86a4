"""
Policy System for cqpolicy.

This package provides the complete policy system implementation including:
- Hub path parsing and bundle fetching
- Policy definition loading and validation
- Provider version requirement checks
- Runtime execution engine
"""

from .errors import (
    PolicyError, InvalidReferenceError, DownloadError, ParseError,
    MissingQueryError, CyclicReferenceError, VersionConstraintError,
    UnknownProviderVersionError, UnsatisfiedConstraintError,
    QueryExecutionError, QueryAssertionError, CanceledError
)
from .models import (
    HubReference, LocalBundle, Policy, Query, ExecuteRequest,
    ExecutionResult, QueryResult
)
from .hub import parse_policy_hub_path
from .fetcher import BundleFetcher
from .loader import PolicyLoader, load_policy
from .versions import check_provider_versions, satisfies
from .engine import PolicyExecutor
from .manager import PolicyManager

__all__ = [
    "PolicyError", "InvalidReferenceError", "DownloadError", "ParseError",
    "MissingQueryError", "CyclicReferenceError", "VersionConstraintError",
    "UnknownProviderVersionError", "UnsatisfiedConstraintError",
    "QueryExecutionError", "QueryAssertionError", "CanceledError",
    "HubReference", "LocalBundle", "Policy", "Query", "ExecuteRequest",
    "ExecutionResult", "QueryResult", "parse_policy_hub_path", "BundleFetcher",
    "PolicyLoader", "load_policy", "check_provider_versions", "satisfies",
    "PolicyExecutor", "PolicyManager"
]
