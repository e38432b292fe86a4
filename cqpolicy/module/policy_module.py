"""
Policy manager exposed as a host module.

Configuration block::

    policy:
      - name: aws-cis
        source: cloudquery/cq-policy-core@v0.1.0
        subpath: aws/cis
"""
import logging
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from cqpolicy.module.base import Module, ModuleExecuteRequest, ModuleExecutionResult
from cqpolicy.policy.errors import ParseError, PolicyError
from cqpolicy.policy.manager import PolicyManager
from cqpolicy.policy.models import ExecuteRequest, HubReference

logger = logging.getLogger(__name__)

EXAMPLE_CONFIG = """\
policy:
  # Policies are fetched from the hub as <organization>/<repository>[@<ref>]
  - name: aws-cis
    source: cloudquery/cq-policy-core@v0.1.0
    subpath: aws/cis
"""


class PolicyEntry(BaseModel):
    """A named policy in the module configuration."""
    name: str = Field(min_length=1, description="Name used to select the policy")
    source: str = Field(description="Hub path: <organization>/<repository>[@<ref>]")
    subpath: Optional[str] = Field(default=None, description="Directory inside the repository")


class PolicyModuleConfig(BaseModel):
    policies: List[PolicyEntry] = Field(default_factory=list, alias="policy")


class PolicyRunParams(BaseModel):
    """Run parameters accepted by PolicyModule.configure."""
    policy_names: Optional[List[str]] = Field(default=None, description="Run only these policies")
    stop_on_failure: bool = Field(default=False, description="Abort on the first failure")
    no_download: bool = Field(default=False, description="Use cached bundles only")


class PolicyModule(Module):
    """Runs configured policies through a PolicyManager."""

    def __init__(self, manager: PolicyManager):
        self.manager = manager
        self.config = PolicyModuleConfig()
        self.params = PolicyRunParams()
        self._references: Dict[str, HubReference] = {}

    def id(self) -> str:
        return "policy"

    def configure(self, config: Any, params: Any = None) -> None:
        """
        Validate the configuration block and resolve every policy source.

        Raises:
            ParseError: If the block is malformed
            InvalidReferenceError: If a source is not a valid hub path
        """
        if isinstance(config, str):
            try:
                config = yaml.safe_load(config) or {}
            except yaml.YAMLError as e:
                raise ParseError("policy module configuration", f"invalid YAML: {e}") from e
        if isinstance(config, list):
            config = {"policy": config}

        try:
            self.config = PolicyModuleConfig.model_validate(config or {})
            if isinstance(params, PolicyRunParams):
                self.params = params
            else:
                self.params = PolicyRunParams.model_validate(params or {})
        except ValidationError as e:
            raise ParseError("policy module configuration", str(e)) from e

        references = {}
        for entry in self.config.policies:
            if entry.name in references:
                raise ParseError("policy module configuration", f"duplicate policy name {entry.name}")
            references[entry.name] = self.manager.parse_policy_hub_path([entry.source, entry.subpath or ""])
        self._references = references
        logger.info("Configured policy module with %d policies", len(references))

    async def execute(self, request: ModuleExecuteRequest) -> ModuleExecutionResult:
        names = self.params.policy_names or list(self._references)
        unknown = [name for name in names if name not in self._references]
        if unknown:
            return ModuleExecutionResult(error=ValueError(f"unknown policies: {', '.join(unknown)}"))

        provider_versions = request.provider_versions()
        results: Dict[str, Any] = {}
        for name in names:
            reference = self._references[name]
            try:
                if not self.params.no_download:
                    await self.manager.download_policy(reference)
                policy = self.manager.load_policy(reference)
                outcome = await self.manager.run_policy(ExecuteRequest(
                    policy=policy,
                    provider_versions=provider_versions,
                    stop_on_failure=self.params.stop_on_failure,
                    conn=request.conn,
                ))
            except PolicyError as e:
                logger.error("Policy %s failed: %s", name, e)
                return ModuleExecutionResult(result=results, error=e)
            results[name] = outcome.model_dump(mode="json")

        return ModuleExecutionResult(result=results)

    def example_config(self) -> str:
        return EXAMPLE_CONFIG
