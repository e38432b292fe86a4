"""
Policy hub path parsing.

A hub path is a list of one or two segments: ``"org/repo[@ref]"`` and an
optional subpath inside the repository, e.g. ``["cloudquery/cq-policy-core", "test"]``.
"""

import re
from typing import Optional, Sequence

from cqpolicy.policy.errors import InvalidReferenceError
from cqpolicy.policy.models import HubReference

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def parse_policy_hub_path(segments: Sequence[str], default_ref: str = "") -> HubReference:
    """
    Parse hub path segments into a HubReference.

    Args:
        segments: ``["org/repo[@ref]"]`` optionally followed by a subpath
        default_ref: Ref used when the path carries no ``@ref``

    Returns:
        HubReference; ``ref`` is None when neither the path nor default_ref names one

    Raises:
        InvalidReferenceError: If the segments are malformed
    """
    raw = " ".join(segments)
    if not segments or len(segments) > 2:
        raise InvalidReferenceError(raw, f"expected 1 or 2 segments, got {len(segments)}")

    repo_part = segments[0].strip()
    ref: Optional[str] = None
    if "@" in repo_part:
        repo_part, ref = repo_part.split("@", 1)
        if not ref:
            raise InvalidReferenceError(raw, "empty ref after '@'")

    if repo_part.count("/") != 1:
        raise InvalidReferenceError(raw, "expected <organization>/<repository>")
    organization, repository = repo_part.split("/")
    if not organization or not repository:
        raise InvalidReferenceError(raw, "organization and repository must not be empty")
    for part in (organization, repository):
        if part in (".", "..") or not _NAME_RE.match(part):
            raise InvalidReferenceError(raw, f"{part!r} is not a valid organization or repository name")

    if ref is None and default_ref:
        ref = default_ref

    subpath = None
    if len(segments) == 2:
        subpath = segments[1].strip().strip("/") or None

    return HubReference(
        organization=organization,
        repository=repository,
        ref=ref,
        subpath=subpath,
    )
