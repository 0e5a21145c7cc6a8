"""
Tests for the elevated directory read path.
"""
from __future__ import annotations

from sqlalchemy import event

from scopeguard.core.types import AdminLevel, NodeKind, NodeLineage, NodeRef, RoleKind, ScopeSet
from scopeguard.db.filters import attach_scope
from scopeguard.directory.store import ELEVATED_OPTION


def test_principal_lookup_by_id_and_subject(directory, demo):
    by_id = directory.principal(demo.school_admin_x)
    by_subject = directory.principal_by_subject("school-admin-x")

    assert by_id == by_subject
    assert by_id.role is RoleKind.ENTITY_USER
    assert by_id.is_active is True
    assert directory.principal(999_999) is None
    assert directory.principal_by_subject("nobody") is None


def test_entity_user_record(directory, demo):
    record = directory.entity_user(demo.entity_admin_a)

    assert record.company_id == demo.company_a
    assert record.admin_level is AdminLevel.ENTITY_ADMIN
    assert record.is_company_admin is True
    assert directory.entity_user(demo.teacher_x1) is None


def test_scope_assignments_and_parent_links(directory, demo):
    assert directory.scope_assignments(demo.branch_admin_x1) == [NodeRef(NodeKind.BRANCH, demo.branch_x1)]
    assert directory.scope_assignments(demo.entity_admin_a) == []
    assert directory.children_of(demo.parent_x1) == [demo.student_x1]


def test_subtrees_drop_roots_of_other_companies(directory, demo):
    scope = directory.subtrees(
        demo.company_a,
        [NodeRef(NodeKind.SCHOOL, demo.school_y), NodeRef(NodeKind.SCHOOL, demo.school_z)],
    )

    assert scope.school_ids == {demo.school_y}
    assert scope.branch_ids == {demo.branch_y1}


def test_department_root_covers_only_the_department(directory, demo):
    scope = directory.subtrees(demo.company_a, [NodeRef(NodeKind.DEPARTMENT, demo.department_x)])

    assert scope.department_ids == {demo.department_x}
    assert scope.school_ids == frozenset()
    assert scope.branch_ids == frozenset()


def test_node_lineage_for_every_node_kind(directory, demo):
    assert directory.node_lineage(NodeRef(NodeKind.COMPANY, demo.company_b)) == NodeLineage(company_id=demo.company_b)
    assert directory.node_lineage(NodeRef(NodeKind.SCHOOL, demo.school_x)) == NodeLineage(demo.company_a, demo.school_x)
    assert directory.node_lineage(NodeRef(NodeKind.BRANCH, demo.branch_x1)) == NodeLineage(
        demo.company_a, demo.school_x, demo.branch_x1
    )
    assert directory.node_lineage(NodeRef(NodeKind.DEPARTMENT, demo.department_x)) == NodeLineage(
        demo.company_a, demo.school_x, None, demo.department_x
    )
    assert directory.node_lineage(NodeRef(NodeKind.CLASS_SECTION, demo.class_x1)) == NodeLineage(
        demo.company_a, demo.school_x, demo.branch_x1
    )
    assert directory.node_lineage(NodeRef(NodeKind.BRANCH, 424_242)) is None


def test_every_directory_read_is_elevated(db_session, directory, demo):
    # Even with a restrictive scope attached, the elevated path must see the
    # whole directory and must tag every statement it runs.
    attach_scope(db_session, demo.teacher_x1, RoleKind.TEACHER, ScopeSet.empty())
    seen = []

    def capture(execute_state):
        seen.append(execute_state.execution_options.get(ELEVATED_OPTION, False))

    event.listen(db_session, "do_orm_execute", capture)
    try:
        assert directory.principal(demo.entity_admin_a) is not None
        assert directory.company_subtree(demo.company_a).school_ids == {demo.school_x, demo.school_y}
        directory.version()
    finally:
        event.remove(db_session, "do_orm_execute", capture)

    assert seen
    assert all(seen)
