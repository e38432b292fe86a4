"""
Policy bundle loading.

Reads ``policy.yaml`` definitions from a bundle directory, validates them
against the definition models and builds the in-memory Policy tree.
Sub-policies are either inline or pulled in with ``include`` from another
directory or file of the same bundle.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError

from cqpolicy.policy.errors import CyclicReferenceError, MissingQueryError, ParseError
from cqpolicy.policy.models import Policy, PolicySpec, Query, QuerySpec


logger = logging.getLogger(__name__)

POLICY_FILE_NAMES = ("policy.yaml", "policy.yml")


class PolicyLoader:
    """
    Builds Policy trees from policy definition files.

    Args:
        strict: Reject policies that have neither queries nor sub-policies
    """

    def __init__(self, strict: bool = False):
        self.strict = strict

    def load(self, bundle_path: Path, subpath: Optional[str] = "") -> Policy:
        """
        Load the policy tree found at bundle_path/subpath.

        Args:
            bundle_path: Root directory of the bundle
            subpath: Directory or file inside the bundle, bundle root when empty

        Returns:
            Root Policy

        Raises:
            ParseError: On missing files, malformed YAML or invalid definitions
            MissingQueryError: In strict mode, for empty policies
            CyclicReferenceError: If an include re-enters one of its ancestors
        """
        root = Path(bundle_path).resolve()
        if not root.is_dir():
            raise ParseError(str(bundle_path), "policy bundle directory does not exist")

        policy_file = self._locate(root, root / (subpath or ""))
        logger.info("Loading policy definitions from %s", policy_file)
        policy = self._load_file(root, policy_file, ancestors=[])
        logger.info("Loaded policy %s with %d queries", policy.name, policy.query_count())
        return policy

    def _locate(self, root: Path, target: Path) -> Path:
        """Resolve a directory or file reference to a policy file inside root."""
        target = target.resolve()
        if target != root and root not in target.parents:
            raise ParseError(str(target), "path escapes the policy bundle")
        if target.is_file():
            return target
        if target.is_dir():
            for name in POLICY_FILE_NAMES:
                candidate = target / name
                if candidate.is_file():
                    return candidate
            raise ParseError(str(target), f"no {POLICY_FILE_NAMES[0]} found")
        raise ParseError(str(target), "policy path does not exist")

    def _load_file(self, root: Path, policy_file: Path, ancestors: List[Path]) -> Policy:
        if policy_file in ancestors:
            chain = [str(p.relative_to(root)) for p in ancestors + [policy_file]]
            raise CyclicReferenceError(chain)

        try:
            with open(policy_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ParseError(str(policy_file), f"invalid YAML: {e}") from e
        except OSError as e:
            raise ParseError(str(policy_file), f"cannot read file: {e}") from e

        if not isinstance(data, dict):
            raise ParseError(str(policy_file), "policy file must contain a mapping")

        try:
            spec = PolicySpec.model_validate(data)
        except ValidationError as e:
            issues = []
            for error in e.errors():
                path = "/" + "/".join(str(part) for part in error["loc"])
                issues.append(f"{path}: {error['msg']}")
            raise ParseError(str(policy_file), "; ".join(issues)) from e

        if spec.include is not None:
            raise ParseError(str(policy_file), "top-level policy cannot be an include")

        return self._build(root, policy_file, spec, ancestors + [policy_file])

    def _build(self, root: Path, policy_file: Path, spec: PolicySpec, ancestors: List[Path]) -> Policy:
        source = str(policy_file.relative_to(root))
        children: List[Policy] = []
        for child_spec in spec.policies:
            if child_spec.include is not None:
                child_file = self._locate(root, policy_file.parent / child_spec.include)
                child = self._load_file(root, child_file, ancestors)
                if child_spec.name:
                    child = child.model_copy(update={"name": child_spec.name})
            else:
                child = self._build(root, policy_file, child_spec, ancestors)
            children.append(child)

        queries = [self._build_query(root, policy_file, q) for q in spec.queries]

        _check_unique(source, spec.name, "query", [q.name for q in queries])
        _check_unique(source, spec.name, "sub-policy", [c.name for c in children])
        for name in [spec.name] + [q.name for q in queries] + [c.name for c in children]:
            if "/" in name:
                raise ParseError(source, f"name {name!r} must not contain '/'")

        if self.strict and not queries and not children:
            raise MissingQueryError(spec.name, source)

        return Policy(
            name=spec.name,
            source=source,
            description=spec.description,
            queries=queries,
            policies=children,
            provider_requirements=dict(spec.configuration.providers),
        )

    def _build_query(self, root: Path, policy_file: Path, spec: QuerySpec) -> Query:
        statement = spec.query
        if spec.query_file is not None:
            query_path = (policy_file.parent / spec.query_file).resolve()
            if root not in query_path.parents:
                raise ParseError(str(policy_file), f"query {spec.name}: {spec.query_file} escapes the policy bundle")
            try:
                statement = query_path.read_text(encoding="utf-8")
            except OSError as e:
                raise ParseError(str(policy_file), f"query {spec.name}: cannot read {spec.query_file}: {e}") from e

        if not statement or not statement.strip():
            raise ParseError(str(policy_file), f"query {spec.name} has an empty statement")

        return Query(
            name=spec.name,
            statement=statement.strip(),
            description=spec.description,
            expect_output=spec.expect_output,
        )


def _check_unique(source: str, policy: str, kind: str, names: Sequence[str]) -> None:
    seen: Dict[str, int] = {}
    for name in names:
        seen[name] = seen.get(name, 0) + 1
    duplicates = sorted(name for name, count in seen.items() if count > 1)
    if duplicates:
        raise ParseError(source, f"policy {policy} has duplicate {kind} names: {', '.join(duplicates)}")


def load_policy(bundle_path: Path, subpath: Optional[str] = "", strict: bool = False) -> Policy:
    """Load a policy tree with a default loader."""
    return PolicyLoader(strict=strict).load(bundle_path, subpath)
