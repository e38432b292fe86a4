"""
Module capability consumed by the module host.

A module is configured once from its configuration block and then executed
with the providers and database connection of the current run.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Connection


@dataclass(frozen=True)
class ProviderInfo:
    """A provider available to the run."""
    name: str
    version: str


@dataclass
class ModuleExecuteRequest:
    """Invocation of a module."""
    params: Any = None
    providers: List[ProviderInfo] = field(default_factory=list)
    conn: Optional[Connection] = None

    def provider_versions(self) -> Dict[str, str]:
        return {p.name: p.version for p in self.providers}


@dataclass
class ModuleExecutionResult:
    """Outcome of a module invocation."""
    result: Any = None
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"result": self.result}
        if self.error is not None:
            data["error"] = str(self.error)
        return data


class Module(ABC):
    @abstractmethod
    def id(self) -> str:
        """Returns the name of the module."""
        pass

    @abstractmethod
    def configure(self, config: Any, params: Any = None) -> None:
        """
        Configures the module to run.

        :param config: The module's configuration block.
        :param params: Run parameters specific to the module.
        """
        pass

    @abstractmethod
    async def execute(self, request: ModuleExecuteRequest) -> ModuleExecutionResult:
        """Executes the module using the given request."""
        pass

    @abstractmethod
    def example_config(self) -> str:
        """Returns an example configuration block."""
        pass
