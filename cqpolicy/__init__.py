"""
cqpolicy: compliance policy manager for cloud asset databases.

Resolves policy bundles from the policy hub, checks provider version
requirements and runs policy queries against the provider database.
"""

__version__ = "0.1.0"
