"""
Module capability and the policy module adapter.
"""

from cqpolicy.module.base import Module, ModuleExecuteRequest, ModuleExecutionResult, ProviderInfo
from cqpolicy.module.policy_module import PolicyModule

__all__ = ["Module", "ModuleExecuteRequest", "ModuleExecutionResult", "ProviderInfo", "PolicyModule"]
