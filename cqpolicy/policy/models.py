"""
Policy System Models.

This module defines the policy definition models parsed from bundle files,
the in-memory policy tree, hub references, execution requests and the
result models returned by a policy run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.engine import Connection


# ===== Hub Models =====

@dataclass(frozen=True)
class HubReference:
    """A policy bundle location on the hub."""
    organization: str
    repository: str
    ref: Optional[str] = None
    subpath: Optional[str] = None

    @property
    def repo_path(self) -> str:
        return f"{self.organization}/{self.repository}"

    def __str__(self) -> str:
        value = self.repo_path
        if self.ref:
            value += f"@{self.ref}"
        if self.subpath:
            value += f" ({self.subpath})"
        return value


@dataclass(frozen=True)
class LocalBundle:
    """On-disk copy of a fetched hub reference."""
    reference: HubReference
    path: Path
    digest: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ===== Policy Definition Models (bundle YAML) =====

class ConfigurationSpec(BaseModel):
    """Policy configuration block."""
    model_config = ConfigDict(extra="forbid")

    providers: Dict[str, str] = Field(default_factory=dict, description="Provider name to version constraint")


class QuerySpec(BaseModel):
    """Query definition as written in a policy file."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, description="Query name")
    description: Optional[str] = Field(default=None, description="Free text description")
    query: Optional[str] = Field(default=None, description="Inline SQL statement")
    query_file: Optional[str] = Field(default=None, description="SQL file relative to the policy file")
    expect_output: bool = Field(default=False, description="Pass when the query returns rows")

    @model_validator(mode="after")
    def check_statement_source(self) -> "QuerySpec":
        if (self.query is None) == (self.query_file is None):
            raise ValueError("exactly one of 'query' or 'query_file' must be set")
        return self


class PolicySpec(BaseModel):
    """Policy definition as written in a policy file."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, description="Policy name; on an include entry, renames the included policy")
    description: Optional[str] = Field(default=None, description="Free text description")
    include: Optional[str] = Field(default=None, description="Directory or file defining this policy")
    configuration: ConfigurationSpec = Field(default_factory=ConfigurationSpec)
    queries: List[QuerySpec] = Field(default_factory=list)
    policies: List["PolicySpec"] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_name_or_include(self) -> "PolicySpec":
        if self.include is not None:
            if self.queries or self.policies or self.configuration.providers:
                raise ValueError("an 'include' entry cannot define queries, policies or configuration")
        elif not self.name:
            raise ValueError("policy name is required")
        return self


PolicySpec.model_rebuild()


# ===== Policy Tree =====

class Query(BaseModel):
    """A single assertion executed against the database."""
    model_config = ConfigDict(frozen=True)

    name: str
    statement: str
    description: Optional[str] = None
    expect_output: bool = False

    def evaluate(self, row_count: int) -> bool:
        """Return whether a result of row_count rows satisfies this query."""
        if self.expect_output:
            return row_count > 0
        return row_count == 0


class Policy(BaseModel):
    """A node of the policy tree. Each node owns its queries and children."""

    name: str
    source: str = ""
    description: Optional[str] = None
    queries: List[Query] = Field(default_factory=list)
    policies: List["Policy"] = Field(default_factory=list)
    provider_requirements: Dict[str, str] = Field(default_factory=dict)

    def query_count(self) -> int:
        """Total number of queries in this subtree."""
        return len(self.queries) + sum(child.query_count() for child in self.policies)

    def walk(self, prefix: str = "") -> Iterator[tuple[str, "Policy"]]:
        """Yield (path, policy) pairs depth-first in declaration order."""
        path = f"{prefix}/{self.name}" if prefix else self.name
        yield path, self
        for child in self.policies:
            yield from child.walk(path)

    def query_keys(self) -> List[str]:
        """Fully-qualified keys of every query in this subtree."""
        return [f"{path}/{q.name}" for path, node in self.walk() for q in node.queries]


Policy.model_rebuild()


# ===== Execution Models =====

UpdateCallback = Callable[[str, "QueryResult"], Union[None, Awaitable[None]]]


class QueryResult(BaseModel):
    """Outcome of one executed query."""
    key: str = Field(description="Fully-qualified query key")
    name: str = Field(description="Query name")
    description: Optional[str] = Field(default=None, description="Query description")
    passed: bool = Field(description="Whether the assertion held")
    columns: List[str] = Field(default_factory=list, description="Result column names")
    rows: List[List[Any]] = Field(default_factory=list, description="Result rows")
    error: Optional[str] = Field(default=None, description="Execution error, if the statement failed")


class ExecutionResult(BaseModel):
    """Aggregated result of a policy run."""
    passed: bool = Field(description="True iff every executed query passed and nothing was skipped")
    results: Dict[str, QueryResult] = Field(default_factory=dict, description="Results keyed by query path")
    errors: List[str] = Field(default_factory=list, description="Version check errors for skipped subtrees")

    def failed_keys(self) -> List[str]:
        return [key for key, result in self.results.items() if not result.passed]


@dataclass
class ExecuteRequest:
    """Parameters of a single policy run."""
    policy: Policy
    provider_versions: Dict[str, str] = field(default_factory=dict)
    stop_on_failure: bool = False
    update_callback: Optional[UpdateCallback] = None
    conn: Optional[Connection] = None
    timeout: Optional[float] = None
