from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from scopeguard.core.types import AdminLevel, NodeKind, RoleKind
from scopeguard.db.base import Base
from scopeguard.models import audit as _audit  # noqa: F401  (register audit table)
from scopeguard.models.directory import (
    Affiliation,
    DirectoryVersion,
    EntityUser,
    ParentLink,
    Principal,
    ScopeAssignment,
)
from scopeguard.models.organization import Branch, ClassSection, Company, Department, School


@dataclass(frozen=True)
class DemoDirectory:
    """Ids of the seeded demo organisation."""

    company_a: int
    company_b: int
    school_x: int
    school_y: int
    school_z: int
    branch_x1: int
    branch_x2: int
    branch_y1: int
    department_x: int
    department_x1: int
    class_x1: int
    class_x2: int

    system_admin: int
    entity_admin_a: int
    sub_entity_admin_a: int
    school_admin_x: int
    branch_admin_x1: int
    staff_a: int
    entity_admin_b: int
    teacher_x1: int
    teacher_y: int
    student_x1: int
    parent_x1: int
    inactive_admin_a: int


def init_db(engine: Engine) -> None:
    """
    Create tables + seed demo data.

    Small and deterministic so the engine can be tried without setup.
    """

    Base.metadata.create_all(bind=engine)

    with Session(engine) as db:
        if _has_seed_data(db):
            return
        seed_demo(db)
        db.commit()


def _has_seed_data(db: Session) -> bool:
    return db.execute(select(Company.id).limit(1)).first() is not None


def seed_demo(db: Session) -> DemoDirectory:
    """
    Two companies:

        Company A
          School X -> Branch X1 (Department X1, Class X1-A), Branch X2 (Class X2-A), Department X (school-wide)
          School Y -> Branch Y1
        Company B
          School Z

    Flushes but does not commit.
    """

    if db.get(DirectoryVersion, 1) is None:
        db.add(DirectoryVersion(id=1, version=0))

    company_a = Company(name="Company A", code="A")
    company_b = Company(name="Company B", code="B")
    db.add_all([company_a, company_b])
    db.flush()

    school_x = School(company_id=company_a.id, name="School X")
    school_y = School(company_id=company_a.id, name="School Y")
    school_z = School(company_id=company_b.id, name="School Z")
    db.add_all([school_x, school_y, school_z])
    db.flush()

    branch_x1 = Branch(company_id=company_a.id, school_id=school_x.id, name="Branch X1")
    branch_x2 = Branch(company_id=company_a.id, school_id=school_x.id, name="Branch X2")
    branch_y1 = Branch(company_id=company_a.id, school_id=school_y.id, name="Branch Y1")
    db.add_all([branch_x1, branch_x2, branch_y1])
    db.flush()

    department_x = Department(company_id=company_a.id, school_id=school_x.id, branch_id=None, name="Science")
    department_x1 = Department(
        company_id=company_a.id, school_id=school_x.id, branch_id=branch_x1.id, name="X1 Mathematics"
    )
    db.add_all([department_x, department_x1])
    class_x1 = ClassSection(company_id=company_a.id, school_id=school_x.id, branch_id=branch_x1.id, name="X1-A")
    class_x2 = ClassSection(company_id=company_a.id, school_id=school_x.id, branch_id=branch_x2.id, name="X2-A")
    db.add_all([class_x1, class_x2])
    db.flush()

    def principal(subject: str, role: RoleKind, *, active: bool = True) -> Principal:
        p = Principal(auth_subject=subject, email=f"{subject}@example.com", role=role, is_active=active)
        db.add(p)
        return p

    system_admin = principal("ssa", RoleKind.SYSTEM_ADMIN)
    entity_admin_a = principal("entity-admin-a", RoleKind.ENTITY_USER)
    sub_entity_admin_a = principal("sub-entity-admin-a", RoleKind.ENTITY_USER)
    school_admin_x = principal("school-admin-x", RoleKind.ENTITY_USER)
    branch_admin_x1 = principal("branch-admin-x1", RoleKind.ENTITY_USER)
    staff_a = principal("staff-a", RoleKind.ENTITY_USER)
    entity_admin_b = principal("entity-admin-b", RoleKind.ENTITY_USER)
    teacher_x1 = principal("teacher-x1", RoleKind.TEACHER)
    teacher_y = principal("teacher-y", RoleKind.TEACHER)
    student_x1 = principal("student-x1", RoleKind.STUDENT)
    parent_x1 = principal("parent-x1", RoleKind.PARENT)
    inactive_admin_a = principal("inactive-admin-a", RoleKind.ENTITY_USER, active=False)
    db.flush()

    db.add_all(
        [
            EntityUser(
                principal_id=entity_admin_a.id,
                company_id=company_a.id,
                admin_level=AdminLevel.ENTITY_ADMIN,
                is_company_admin=True,
            ),
            EntityUser(
                principal_id=sub_entity_admin_a.id,
                company_id=company_a.id,
                admin_level=AdminLevel.SUB_ENTITY_ADMIN,
                is_company_admin=True,
            ),
            EntityUser(
                principal_id=school_admin_x.id,
                company_id=company_a.id,
                admin_level=AdminLevel.SCHOOL_ADMIN,
            ),
            EntityUser(
                principal_id=branch_admin_x1.id,
                company_id=company_a.id,
                admin_level=AdminLevel.BRANCH_ADMIN,
            ),
            EntityUser(principal_id=staff_a.id, company_id=company_a.id, admin_level=AdminLevel.NONE),
            EntityUser(
                principal_id=entity_admin_b.id,
                company_id=company_b.id,
                admin_level=AdminLevel.ENTITY_ADMIN,
                is_company_admin=True,
            ),
            EntityUser(
                principal_id=inactive_admin_a.id,
                company_id=company_a.id,
                admin_level=AdminLevel.ENTITY_ADMIN,
                is_company_admin=True,
            ),
        ]
    )
    db.flush()

    db.add_all(
        [
            ScopeAssignment(
                entity_user_id=school_admin_x.id,
                node_kind=NodeKind.SCHOOL,
                node_id=school_x.id,
                assigned_by=entity_admin_a.id,
            ),
            ScopeAssignment(
                entity_user_id=branch_admin_x1.id,
                node_kind=NodeKind.BRANCH,
                node_id=branch_x1.id,
                assigned_by=entity_admin_a.id,
            ),
            Affiliation(
                principal_id=teacher_x1.id, company_id=company_a.id, school_id=school_x.id, branch_id=branch_x1.id
            ),
            Affiliation(principal_id=teacher_y.id, company_id=company_a.id, school_id=school_y.id),
            Affiliation(
                principal_id=student_x1.id, company_id=company_a.id, school_id=school_x.id, branch_id=branch_x1.id
            ),
            ParentLink(parent_id=parent_x1.id, student_id=student_x1.id),
        ]
    )
    db.flush()

    return DemoDirectory(
        company_a=company_a.id,
        company_b=company_b.id,
        school_x=school_x.id,
        school_y=school_y.id,
        school_z=school_z.id,
        branch_x1=branch_x1.id,
        branch_x2=branch_x2.id,
        branch_y1=branch_y1.id,
        department_x=department_x.id,
        department_x1=department_x1.id,
        class_x1=class_x1.id,
        class_x2=class_x2.id,
        system_admin=system_admin.id,
        entity_admin_a=entity_admin_a.id,
        sub_entity_admin_a=sub_entity_admin_a.id,
        school_admin_x=school_admin_x.id,
        branch_admin_x1=branch_admin_x1.id,
        staff_a=staff_a.id,
        entity_admin_b=entity_admin_b.id,
        teacher_x1=teacher_x1.id,
        teacher_y=teacher_y.id,
        student_x1=student_x1.id,
        parent_x1=parent_x1.id,
        inactive_admin_a=inactive_admin_a.id,
    )
