"""
Capability policy and YAML loader.

One ordered evaluator plus this table replaces a hand-written rule per
resource table. Key ideas:
- Load YAML once at startup (resource types, owner/reserved actions, levels).
- Resolve level inheritance (extends) and detect cycles.
- Precompute effective grants per admin level.
- At runtime, answer:
    is_known_resource(resource_type)?
    grants(admin_level, resource_type, action)?
    manages(actor_level, target_level)?

Pure Python apart from pydantic/yaml; the evaluator consumes it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError

from scopeguard.core.errors import CapabilityConfigError
from scopeguard.core.types import AdminLevel, normalize_action

logger = logging.getLogger(__name__)

WILDCARD = "*"


# ---- Raw config (validated shape) ----------------------------------------------------


class LevelModel(BaseModel):
    extends: AdminLevel | None = None
    grants: dict[str, list[str]] = Field(default_factory=dict)
    manages: list[AdminLevel] | None = None


class CapabilitiesModel(BaseModel):
    resource_types: list[str] = Field(default_factory=list)
    owner_actions: list[str] = Field(default_factory=lambda: ["read", "update-own", "delete-own"])
    reserved_actions: list[str] = Field(default_factory=lambda: ["activate-test-mode"])
    levels: dict[AdminLevel, LevelModel] = Field(default_factory=dict)


# ---- Resolved policy -----------------------------------------------------------------


@dataclass(frozen=True)
class LevelGrants:
    """Effective grants of one admin level after inheritance."""

    level: AdminLevel
    grants: Mapping[str, frozenset[str]]
    manages: frozenset[AdminLevel]

    def allows(self, resource_type: str, action: str) -> bool:
        actions = self.grants.get(resource_type)
        if actions is None:
            actions = self.grants.get(WILDCARD, frozenset())
        return WILDCARD in actions or action in actions


class CapabilityPolicy:
    """
    In-memory capability table built from a validated CapabilitiesModel.

    Usage:
        policy = CapabilityPolicy.from_yaml(Path("capabilities.yaml"))
        policy.grants(AdminLevel.SCHOOL_ADMIN, "question", "update")
    """

    def __init__(
        self,
        resource_types: frozenset[str],
        owner_actions: frozenset[str],
        reserved_actions: frozenset[str],
        levels: Mapping[AdminLevel, LevelGrants],
    ) -> None:
        self._resource_types = resource_types
        self._owner_actions = owner_actions
        self._reserved_actions = reserved_actions
        self._levels = dict(levels)

    @classmethod
    def from_yaml(cls, path: Path) -> CapabilityPolicy:
        raw_text = path.read_text(encoding="utf-8")
        raw: dict[str, Any] = yaml.safe_load(raw_text) or {}
        if "capabilities" not in raw:
            raise CapabilityConfigError(f"Missing top-level 'capabilities' key in config: {path}")
        policy = cls.from_mapping(raw["capabilities"])
        logger.info("Loaded capability policy path=%s levels=%s", path, sorted(l.value for l in policy._levels))
        return policy

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CapabilityPolicy:
        try:
            model = CapabilitiesModel.model_validate(data)
        except ValidationError as exc:
            raise CapabilityConfigError(f"invalid capability config: {exc}") from exc
        return cls.from_model(model)

    @classmethod
    def from_model(cls, model: CapabilitiesModel) -> CapabilityPolicy:
        resource_types = frozenset(t.strip() for t in model.resource_types if t.strip())
        if not resource_types:
            raise CapabilityConfigError("resource_types must list at least one type")
        if WILDCARD in resource_types:
            raise CapabilityConfigError("resource_types cannot contain the wildcard")

        for level_name, level in model.levels.items():
            unknown = set(level.grants).difference(resource_types | {WILDCARD})
            if unknown:
                raise CapabilityConfigError(
                    f"level {level_name.value!r} grants unknown resource types: {sorted(unknown)}"
                )
            if level.extends is not None and level.extends not in model.levels:
                raise CapabilityConfigError(
                    f"level {level_name.value!r} extends unknown level {level.extends.value!r}"
                )

        return cls(
            resource_types=resource_types,
            owner_actions=frozenset(normalize_action(a) for a in model.owner_actions),
            reserved_actions=frozenset(normalize_action(a) for a in model.reserved_actions),
            levels=_resolve_levels(model),
        )

    # ---- Queries ---------------------------------------------------------------------

    @property
    def resource_types(self) -> frozenset[str]:
        return self._resource_types

    @property
    def owner_actions(self) -> frozenset[str]:
        return self._owner_actions

    @property
    def reserved_actions(self) -> frozenset[str]:
        return self._reserved_actions

    def is_known_resource(self, resource_type: str) -> bool:
        return resource_type in self._resource_types

    def is_reserved(self, action: str) -> bool:
        return action in self._reserved_actions

    def level(self, admin_level: AdminLevel) -> LevelGrants | None:
        return self._levels.get(admin_level)

    def grants(self, admin_level: AdminLevel, resource_type: str, action: str) -> bool:
        """True if the level may perform `action` on `resource_type` inside its scope."""

        if action in self._reserved_actions:
            return False
        level = self._levels.get(admin_level)
        if level is None:
            return False
        return level.allows(resource_type, action)

    def manages(self, actor_level: AdminLevel, target_level: AdminLevel) -> bool:
        level = self._levels.get(actor_level)
        return level is not None and target_level in level.manages


def _resolve_levels(model: CapabilitiesModel) -> dict[AdminLevel, LevelGrants]:
    """
    Resolve level inheritance and compute effective grants per level.

    A child's grant entry for a resource type replaces the parent's entry for
    that type. Cycles in extends raise CapabilityConfigError.
    """

    effective: dict[AdminLevel, LevelGrants] = {}
    visiting: set[AdminLevel] = set()

    def dfs(name: AdminLevel) -> LevelGrants:
        if name in effective:
            return effective[name]
        if name in visiting:
            raise CapabilityConfigError(f"cycle detected in level inheritance at {name.value!r}")
        visiting.add(name)
        level = model.levels[name]

        grants: dict[str, frozenset[str]] = {}
        manages: frozenset[AdminLevel] = frozenset()
        if level.extends is not None:
            parent = dfs(level.extends)
            grants.update(parent.grants)
            manages = parent.manages

        for resource_type, actions in level.grants.items():
            grants[resource_type] = frozenset(normalize_action(a) for a in actions)
        if level.manages is not None:
            manages = frozenset(level.manages)

        result = LevelGrants(level=name, grants=grants, manages=manages)
        effective[name] = result
        visiting.remove(name)
        return result

    for name in model.levels:
        dfs(name)

    return effective
