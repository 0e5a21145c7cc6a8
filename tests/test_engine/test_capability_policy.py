"""
Tests for capability policy loading and inheritance.
"""
from __future__ import annotations

import pytest

from scopeguard.capability.policy import CapabilityPolicy
from scopeguard.core.errors import CapabilityConfigError
from scopeguard.core.types import AdminLevel


def _config(**levels):
    return {
        "resource_types": ["question", "paper", "license"],
        "levels": levels,
    }


def test_packaged_policy_loads(policy):
    assert policy.is_known_resource("question")
    assert not policy.is_known_resource("whiteboard")
    assert policy.owner_actions == {"read", "update-own", "delete-own"}
    assert policy.is_reserved("activate-test-mode")
    for level in (AdminLevel.ENTITY_ADMIN, AdminLevel.SUB_ENTITY_ADMIN, AdminLevel.SCHOOL_ADMIN, AdminLevel.BRANCH_ADMIN):
        assert policy.grants(level, "question", "delete")


def test_packaged_policy_manages_hierarchy(policy):
    assert policy.manages(AdminLevel.ENTITY_ADMIN, AdminLevel.ENTITY_ADMIN)
    assert policy.manages(AdminLevel.SUB_ENTITY_ADMIN, AdminLevel.SCHOOL_ADMIN)
    assert not policy.manages(AdminLevel.SUB_ENTITY_ADMIN, AdminLevel.ENTITY_ADMIN)
    assert policy.manages(AdminLevel.SCHOOL_ADMIN, AdminLevel.BRANCH_ADMIN)
    assert not policy.manages(AdminLevel.BRANCH_ADMIN, AdminLevel.BRANCH_ADMIN)


def test_reserved_action_is_never_granted():
    policy = CapabilityPolicy.from_mapping(_config(entity_admin={"grants": {"*": ["*"]}}))

    assert policy.grants(AdminLevel.ENTITY_ADMIN, "question", "update") is True
    assert policy.grants(AdminLevel.ENTITY_ADMIN, "question", "activate-test-mode") is False


def test_specific_entry_overrides_wildcard():
    policy = CapabilityPolicy.from_mapping(
        _config(branch_admin={"grants": {"*": ["*"], "license": ["read"]}})
    )

    assert policy.grants(AdminLevel.BRANCH_ADMIN, "paper", "delete") is True
    assert policy.grants(AdminLevel.BRANCH_ADMIN, "license", "read") is True
    assert policy.grants(AdminLevel.BRANCH_ADMIN, "license", "update") is False


def test_extends_inherits_and_child_entries_win():
    policy = CapabilityPolicy.from_mapping(
        _config(
            school_admin={"grants": {"question": ["read", "update"], "paper": ["read"]}, "manages": ["branch_admin"]},
            branch_admin={"extends": "school_admin", "grants": {"question": ["read"]}},
        )
    )

    assert policy.grants(AdminLevel.BRANCH_ADMIN, "paper", "read") is True
    assert policy.grants(AdminLevel.BRANCH_ADMIN, "question", "update") is False
    assert policy.manages(AdminLevel.BRANCH_ADMIN, AdminLevel.BRANCH_ADMIN) is True


def test_undefined_level_grants_nothing():
    policy = CapabilityPolicy.from_mapping(_config(entity_admin={"grants": {"*": ["*"]}}))

    assert policy.level(AdminLevel.BRANCH_ADMIN) is None
    assert policy.grants(AdminLevel.BRANCH_ADMIN, "question", "read") is False
    assert policy.grants(AdminLevel.NONE, "question", "read") is False


def test_extends_cycle_is_rejected():
    with pytest.raises(CapabilityConfigError, match="cycle"):
        CapabilityPolicy.from_mapping(
            _config(
                school_admin={"extends": "branch_admin"},
                branch_admin={"extends": "school_admin"},
            )
        )


def test_extends_unknown_level_is_rejected():
    with pytest.raises(CapabilityConfigError, match="extends unknown level"):
        CapabilityPolicy.from_mapping(_config(branch_admin={"extends": "school_admin"}))


def test_grant_on_undeclared_resource_type_is_rejected():
    with pytest.raises(CapabilityConfigError, match="unknown resource types"):
        CapabilityPolicy.from_mapping(_config(entity_admin={"grants": {"whiteboard": ["read"]}}))


def test_invalid_shape_is_rejected():
    with pytest.raises(CapabilityConfigError):
        CapabilityPolicy.from_mapping({"resource_types": ["question"], "levels": {"headmaster": {}}})


def test_from_yaml_requires_top_level_key(tmp_path):
    path = tmp_path / "capabilities.yaml"
    path.write_text("resource_types: [question]\n", encoding="utf-8")

    with pytest.raises(CapabilityConfigError, match="capabilities"):
        CapabilityPolicy.from_yaml(path)


def test_from_yaml_reads_file(tmp_path):
    path = tmp_path / "capabilities.yaml"
    path.write_text(
        "capabilities:\n"
        "  resource_types: [question]\n"
        "  levels:\n"
        "    school_admin:\n"
        "      grants:\n"
        "        question: [READ]\n",
        encoding="utf-8",
    )

    policy = CapabilityPolicy.from_yaml(path)

    assert policy.grants(AdminLevel.SCHOOL_ADMIN, "question", "read") is True
