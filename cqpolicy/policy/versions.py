"""
Provider version requirement checks.

Constraints are comma-separated clauses such as ``">= 1.0, < 2.0"`` or
``"~> 0.7"``. Supported operators: ``=``, ``!=``, ``>``, ``>=``, ``<``,
``<=`` and ``~>``; a clause without an operator is an exact pin.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

import semver

from cqpolicy.policy.errors import UnknownProviderVersionError, UnsatisfiedConstraintError
from cqpolicy.policy.models import Policy


logger = logging.getLogger(__name__)

_CLAUSE_RE = re.compile(r"^\s*(~>|>=|<=|!=|=|>|<)?\s*v?(\S+)\s*$")


def parse_version(value: str) -> semver.Version:
    """Parse a possibly short (``1``, ``1.0``) or ``v``-prefixed version."""
    text = str(value).strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    return semver.Version.parse(text, optional_minor_and_patch=True)


@dataclass(frozen=True)
class _Clause:
    op: str
    version: semver.Version
    segments: int

    def allows(self, version: semver.Version) -> bool:
        # A pre-release only matches clauses naming a pre-release of the same release.
        if version.prerelease:
            if not self.version.prerelease:
                return False
            if version.finalize_version() != self.version.finalize_version():
                return False

        cmp = version.compare(self.version)
        if self.op == "=":
            return cmp == 0
        if self.op == "!=":
            return cmp != 0
        if self.op == ">":
            return cmp > 0
        if self.op == ">=":
            return cmp >= 0
        if self.op == "<":
            return cmp < 0
        if self.op == "<=":
            return cmp <= 0
        # ~>: allow the rightmost specified segment to grow
        if cmp < 0:
            return False
        if self.segments <= 2:
            upper = self.version.bump_major()
        else:
            upper = self.version.bump_minor()
        return version.finalize_version().compare(upper) < 0


class VersionConstraint:
    """A parsed provider version constraint."""

    def __init__(self, text: str):
        self.text = text
        self._clauses: List[_Clause] = []
        for part in text.split(","):
            match = _CLAUSE_RE.match(part)
            if not match:
                raise ValueError(f"malformed version constraint: {text!r}")
            op, raw = match.groups()
            self._clauses.append(_Clause(
                op=op or "=",
                version=parse_version(raw),
                segments=len(raw.split("+")[0].split("-")[0].split(".")),
            ))

    def check(self, version: semver.Version) -> bool:
        return all(clause.allows(version) for clause in self._clauses)

    def __str__(self) -> str:
        return self.text


def satisfies(version: str, constraint: str) -> bool:
    """Return whether a version string satisfies a constraint string."""
    return VersionConstraint(constraint).check(parse_version(version))


def check_provider_versions(
    policy: Policy,
    provider_versions: Dict[str, str],
    label: Optional[str] = None,
) -> None:
    """
    Check the provider requirements declared directly on a policy node.

    Args:
        policy: Policy node to check; children are not inspected
        provider_versions: Provider name to supplied version
        label: Name used in error messages, defaults to the policy name

    Raises:
        UnknownProviderVersionError: If a required provider has no version
        UnsatisfiedConstraintError: If a supplied version does not satisfy its constraint
    """
    label = label or policy.name
    for provider, constraint in policy.provider_requirements.items():
        supplied = provider_versions.get(provider)
        if supplied is None:
            raise UnknownProviderVersionError(label, provider)
        try:
            ok = satisfies(str(supplied), constraint)
        except ValueError as e:
            logger.warning("Cannot compare %s version %s with %r: %s", provider, supplied, constraint, e)
            ok = False
        if not ok:
            raise UnsatisfiedConstraintError(label, provider, constraint)
        logger.debug("%s: provider %s %s satisfies %s", label, provider, supplied, constraint)
