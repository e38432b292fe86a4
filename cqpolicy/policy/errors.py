"""
Policy system exceptions.

Every error raised by the policy manager derives from PolicyError. The string
form of each error is a stable, user-facing message that callers match on.
"""


class PolicyError(Exception):
    """Base exception for policy manager errors."""
    pass


class InvalidReferenceError(PolicyError):
    """Raised when a policy hub path cannot be parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"invalid policy hub path '{path}': {reason}")


class DownloadError(PolicyError):
    """Raised when a policy bundle cannot be fetched from the hub."""

    def __init__(self, reference: str, message: str, status_code: int | None = None):
        self.reference = reference
        self.status_code = status_code
        super().__init__(f"failed to download policy {reference}: {message}")


class ParseError(PolicyError):
    """Raised when a policy definition is malformed."""

    def __init__(self, source: str, message: str):
        self.source = source
        self.message = message
        super().__init__(f"{source}: {message}")


class MissingQueryError(PolicyError):
    """Raised in strict mode for a policy with neither queries nor sub-policies."""

    def __init__(self, policy: str, source: str):
        self.policy = policy
        self.source = source
        super().__init__(f"{source}: policy {policy} declares no queries and no sub-policies")


class CyclicReferenceError(PolicyError):
    """Raised when an included policy would re-enter one of its ancestors."""

    def __init__(self, chain: list[str]):
        self.chain = chain
        super().__init__("cyclic policy reference: " + " -> ".join(chain))


class VersionConstraintError(PolicyError):
    """Base class for provider version requirement failures."""

    def __init__(self, policy: str, provider: str, message: str):
        self.policy = policy
        self.provider = provider
        super().__init__(f"{policy}: provider {provider} {message}")


class UnknownProviderVersionError(VersionConstraintError):
    """Raised when no version was supplied for a required provider."""

    def __init__(self, policy: str, provider: str):
        super().__init__(policy, provider, "version is unknown")


class UnsatisfiedConstraintError(VersionConstraintError):
    """Raised when a provider version does not meet the declared constraint."""

    def __init__(self, policy: str, provider: str, constraint: str):
        self.constraint = constraint
        super().__init__(policy, provider, f"does not satisfy version requirement {constraint}")


class QueryExecutionError(PolicyError):
    """Raised when a query statement fails to execute."""

    def __init__(self, key: str, message: str):
        self.key = key
        self.message = message
        super().__init__(f"{key}: query execution failed: {message}")


class QueryAssertionError(PolicyError):
    """Raised on a failed assertion when the run stops on failure."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"{key}: query did not pass")


class CanceledError(PolicyError):
    """Raised when an operation exceeds its caller-supplied deadline."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} canceled")
