"""
Scope resolver: principal -> organisation nodes under their authority.

Algorithm:
1. Active System Administrator -> universal scope.
2. Entity user at entity/sub-entity level flagged as company admin -> the
   whole company subtree (denormalized company_id, no tree walk).
3. Any other entity admin level -> union of the subtrees rooted at their
   scope assignments, restricted to their own company.
4. Teacher / student -> own affiliations; parent -> children's affiliations.
   These are member scopes, used for read grants only.

Missing or inactive principals resolve to the empty scope. Lookup errors
are logged and also resolve to the empty scope; this never raises.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from scopeguard.core.types import AdminLevel, RoleKind, ScopeSet
from scopeguard.directory.store import DirectoryStore
from scopeguard.scope.cache import RequestScopeCache

logger = logging.getLogger(__name__)


class ScopeResolver:
    def __init__(self, directory: DirectoryStore, cache: RequestScopeCache | None = None) -> None:
        self._directory = directory
        self._cache = cache if cache is not None else RequestScopeCache()

    @property
    def cache(self) -> RequestScopeCache:
        return self._cache

    def resolve(self, principal_id: int) -> ScopeSet:
        try:
            version = self._directory.version()
            cached = self._cache.get(principal_id, version)
            if cached is not None:
                return cached
            scope = self._compute(principal_id)
        except SQLAlchemyError:
            logger.warning("Scope lookup failed; resolving to empty scope principal_id=%s", principal_id, exc_info=True)
            return ScopeSet.empty()

        self._cache.put(principal_id, version, scope)
        return scope

    def _compute(self, principal_id: int) -> ScopeSet:
        principal = self._directory.principal(principal_id)
        if principal is None:
            logger.debug("Scope: unknown principal principal_id=%s", principal_id)
            return ScopeSet.empty()
        if not principal.is_active:
            logger.debug("Scope: inactive principal principal_id=%s", principal_id)
            return ScopeSet.empty()

        if principal.role is RoleKind.SYSTEM_ADMIN:
            return ScopeSet.everything()

        if principal.role is RoleKind.ENTITY_USER:
            return self._entity_scope(principal_id)

        if principal.role is RoleKind.PARENT:
            affiliations = []
            for child_id in self._directory.children_of(principal_id):
                child = self._directory.principal(child_id)
                if child is None or not child.is_active:
                    continue
                affiliations.extend(self._directory.affiliations(child_id))
            return _member_scope(affiliations)

        return _member_scope(self._directory.affiliations(principal_id))

    def _entity_scope(self, principal_id: int) -> ScopeSet:
        entity = self._directory.entity_user(principal_id)
        if entity is None or not entity.is_active:
            logger.debug("Scope: entity user missing or inactive principal_id=%s", principal_id)
            return ScopeSet.empty()

        if entity.admin_level is AdminLevel.NONE:
            return ScopeSet.empty()

        if entity.admin_level.is_company_level and entity.is_company_admin:
            return self._directory.company_subtree(entity.company_id)

        roots = self._directory.scope_assignments(principal_id)
        if not roots:
            return ScopeSet.empty()
        return self._directory.subtrees(entity.company_id, roots)


def _member_scope(affiliations) -> ScopeSet:
    affiliations = frozenset(affiliations)
    if not affiliations:
        return ScopeSet.empty()
    return ScopeSet(
        company_ids=frozenset(a.company_id for a in affiliations),
        school_ids=frozenset(a.school_id for a in affiliations),
        branch_ids=frozenset(a.branch_id for a in affiliations if a.branch_id is not None),
        affiliations=affiliations,
        administrative=False,
    )
