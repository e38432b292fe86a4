"""
Unit tests for provider version requirement checks.
"""
import pytest

from cqpolicy.policy.errors import UnknownProviderVersionError, UnsatisfiedConstraintError
from cqpolicy.policy.models import Policy
from cqpolicy.policy.versions import check_provider_versions, parse_version, satisfies


@pytest.mark.parametrize("version,constraint,expected", [
    ("1.0.0", ">= 1.0", True),
    ("v1.0", ">= 1.0", True),
    ("0.5", ">= 1.0", False),
    ("1.5.0", ">= 1.0, < 2.0", True),
    ("2.0.0", ">= 1.0, < 2.0", False),
    ("1.2.3", "1.2.3", True),
    ("1.2.4", "= 1.2.3", False),
    ("1.2.4", "!= 1.2.3", True),
    ("1.2.3", "<= 1.2.3", True),
    ("1.2.3", "> 1.2.3", False),
    ("1.9.0", "~> 1.2", True),
    ("2.0.0", "~> 1.2", False),
    ("1.2.9", "~> 1.2.3", True),
    ("1.3.0", "~> 1.2.3", False),
    ("1.2.2", "~> 1.2.3", False),
    ("1.0.0-beta.1", ">= 0.9", False),
    ("1.0.0-beta.2", ">= 1.0.0-beta.1", True),
    ("1.0.0-alpha", ">= 1.0.0-beta.1", False),
    ("1.0.0", "> 1.0.0-beta.1", True),
])
def test_satisfies(version, constraint, expected):
    assert satisfies(version, constraint) is expected


def test_parse_short_and_prefixed_versions():
    assert str(parse_version("v1")) == "1.0.0"
    assert str(parse_version("0.5")) == "0.5.0"


def test_malformed_constraint_raises():
    with pytest.raises(ValueError):
        satisfies("1.0.0", ">= latest")


class TestCheckProviderVersions:
    """Test requirement checks on a single policy node."""

    @pytest.fixture
    def policy(self):
        return Policy(name="test-policy", provider_requirements={"aws": ">= 1.0"})

    def test_satisfied(self, policy):
        check_provider_versions(policy, {"aws": "1.0.0"})

    def test_unsatisfied_message(self, policy):
        with pytest.raises(UnsatisfiedConstraintError) as exc_info:
            check_provider_versions(policy, {"aws": "0.5"})
        assert str(exc_info.value) == "test-policy: provider aws does not satisfy version requirement >= 1.0"
        assert exc_info.value.constraint == ">= 1.0"

    def test_unknown_provider_message(self, policy):
        with pytest.raises(UnknownProviderVersionError) as exc_info:
            check_provider_versions(policy, {"gcp": "1.0.0"})
        assert str(exc_info.value) == "test-policy: provider aws version is unknown"

    def test_label_overrides_policy_name(self, policy):
        with pytest.raises(UnknownProviderVersionError, match="^root/test-policy: provider aws"):
            check_provider_versions(policy, {}, label="root/test-policy")

    def test_unparsable_supplied_version_does_not_satisfy(self, policy):
        with pytest.raises(UnsatisfiedConstraintError):
            check_provider_versions(policy, {"aws": "latest"})

    def test_no_requirements(self):
        check_provider_versions(Policy(name="free"), {})

    def test_children_are_not_checked(self):
        parent = Policy(
            name="parent",
            policies=[Policy(name="child", provider_requirements={"aws": ">= 9.0"})],
        )
        check_provider_versions(parent, {"aws": "1.0.0"})
