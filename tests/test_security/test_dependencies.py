"""
Tests for the FastAPI authorization dependencies.

A small app is wired with `install_authorization`; `get_db` is overridden to
hand out the rolled-back test session.
"""
from __future__ import annotations

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from scopeguard.core.types import PrincipalRecord, RoleKind
from scopeguard.db.session import get_db
from scopeguard.impersonation.session import ImpersonationRegistry
from scopeguard.models.directory import Principal
from scopeguard.security.context import RequestAuthz
from scopeguard.security.dependencies import (
    current_principal,
    end_test_mode,
    enforce,
    get_authz,
    get_registry,
    install_authorization,
    start_test_mode,
)


def _bearer(subject: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {subject}"}


def build_app(authz_engine, registry, db_session) -> FastAPI:
    app = FastAPI()
    install_authorization(app, authz_engine, registry)

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    @app.get("/me")
    def me(principal: PrincipalRecord = Depends(current_principal)):
        return {"id": principal.id, "role": principal.role.value}

    @app.get("/schools/{school_id}/questions/{question_id}")
    def read_question(school_id: int, question_id: int, authz: RequestAuthz = Depends(get_authz)):
        decision = enforce(
            authz,
            "read",
            {"resource_type": "question", "resource_id": question_id, "owner_kind": "school", "owner_id": school_id},
        )
        return {"reason": decision.reason.value, "effective": authz.effective.id, "impersonated": decision.impersonated}

    @app.get("/scope")
    def scope(authz: RequestAuthz = Depends(get_authz), db: Session = Depends(get_db)):
        return {"attached": db.info.get("scope") is authz.scope, "scope": authz.scope.to_dict()}

    @app.post("/test-mode/{target_id}")
    def activate(
        target_id: int,
        authz: RequestAuthz = Depends(get_authz),
        registry: ImpersonationRegistry = Depends(get_registry),
    ):
        session = start_test_mode(authz, registry, target_id)
        return session.to_dict()

    @app.delete("/test-mode/{session_id}")
    def deactivate(
        session_id: str,
        authz: RequestAuthz = Depends(get_authz),
        registry: ImpersonationRegistry = Depends(get_registry),
    ):
        return end_test_mode(authz, registry, session_id).to_dict()

    return app


@pytest.fixture
def registry():
    return ImpersonationRegistry()


@pytest.fixture
def client(authz_engine, registry, db_session, demo):
    return TestClient(build_app(authz_engine, registry, db_session))


def _start(client, demo, target_id):
    response = client.post(f"/test-mode/{target_id}", headers=_bearer("ssa"))
    assert response.status_code == 200
    return response.json()["session_id"]


# ---- Authentication ------------------------------------------------------------------


def test_missing_authorization_header_is_401(client):
    assert client.get("/me").status_code == 401


def test_malformed_authorization_header_is_400(client):
    assert client.get("/me", headers={"Authorization": "Basic abc"}).status_code == 400
    assert client.get("/me", headers={"Authorization": "Bearer "}).status_code == 400


def test_unknown_or_inactive_principal_is_401(client):
    assert client.get("/me", headers=_bearer("nobody")).status_code == 401
    assert client.get("/me", headers=_bearer("inactive-admin-a")).status_code == 401


def test_current_principal(client, demo):
    response = client.get("/me", headers=_bearer("teacher-x1"))

    assert response.status_code == 200
    assert response.json() == {"id": demo.teacher_x1, "role": "teacher"}


# ---- Enforcement ---------------------------------------------------------------------


def test_enforce_allows_inside_scope_and_denies_outside(client, demo):
    allowed = client.get(f"/schools/{demo.school_x}/questions/1", headers=_bearer("school-admin-x"))
    denied = client.get(f"/schools/{demo.school_y}/questions/1", headers=_bearer("school-admin-x"))

    assert allowed.status_code == 200
    assert allowed.json()["reason"] == "scope_admin"
    assert denied.status_code == 403
    assert denied.json()["detail"] == {"reason": "default_deny", "action": "read"}


def test_scope_is_attached_to_the_db_session(client, demo, db_session):
    response = client.get("/scope", headers=_bearer("branch-admin-x1"))

    body = response.json()
    assert body["attached"] is True
    assert body["scope"]["branch_ids"] == [demo.branch_x1]
    # Detached once the request is over.
    assert "scope" not in db_session.info


# ---- Test mode -----------------------------------------------------------------------


def test_test_mode_applies_effective_principal_and_audits(client, demo, audit_sink, registry):
    session_id = _start(client, demo, demo.school_admin_x)
    headers = {**_bearer("ssa"), "X-Test-Mode-Session": session_id}

    assert registry.get(session_id) is not None

    denied = client.get(f"/schools/{demo.school_y}/questions/1", headers=headers)
    allowed = client.get(f"/schools/{demo.school_x}/questions/1", headers=headers)

    assert denied.status_code == 403
    assert allowed.json() == {"reason": "scope_admin", "effective": demo.school_admin_x, "impersonated": True}

    decisions = [e for e in audit_sink.events if e.action == "read"]
    assert len(decisions) == 2
    assert {e.effective_principal_id for e in decisions} == {demo.school_admin_x}
    assert {e.actor_id for e in decisions} == {demo.system_admin}


def test_test_mode_scope_follows_effective_principal(client, demo):
    session_id = _start(client, demo, demo.branch_admin_x1)

    response = client.get("/scope", headers={**_bearer("ssa"), "X-Test-Mode-Session": session_id})

    assert response.json()["scope"]["branch_ids"] == [demo.branch_x1]


def test_only_system_admin_can_start_test_mode(client, demo, registry):
    response = client.post(f"/test-mode/{demo.teacher_x1}", headers=_bearer("entity-admin-a"))

    assert response.status_code == 403
    assert len(registry) == 0


def test_unknown_session_id_falls_back_to_own_permissions(client, demo):
    headers = {**_bearer("ssa"), "X-Test-Mode-Session": "forged-session-id"}

    response = client.get(f"/schools/{demo.school_y}/questions/1", headers=headers)

    assert response.status_code == 200
    assert response.json()["reason"] == "system_admin"


def test_session_presented_by_another_principal_is_ignored(client, demo):
    session_id = _start(client, demo, demo.teacher_x1)
    headers = {**_bearer("school-admin-x"), "X-Test-Mode-Session": session_id}

    response = client.get(f"/schools/{demo.school_x}/questions/1", headers=headers)

    assert response.json() == {"reason": "scope_admin", "effective": demo.school_admin_x, "impersonated": False}


def test_expired_session_reverts_to_admin_permissions(client, demo, clock):
    session_id = _start(client, demo, demo.school_admin_x)
    headers = {**_bearer("ssa"), "X-Test-Mode-Session": session_id}

    clock.advance(seconds=301)
    response = client.get(f"/schools/{demo.school_y}/questions/1", headers=headers)

    assert response.status_code == 200
    assert response.json()["impersonated"] is False


def test_end_test_mode(client, demo, registry, audit_sink):
    session_id = _start(client, demo, demo.school_admin_x)

    not_owner = client.delete(f"/test-mode/{session_id}", headers=_bearer("entity-admin-a"))
    ended = client.delete(f"/test-mode/{session_id}", headers=_bearer("ssa"))

    assert not_owner.status_code == 404
    assert ended.status_code == 200
    assert ended.json()["deactivated_at"] is not None
    assert registry.get(session_id) is None
    assert audit_sink.events[-1].action == "test_mode_end"
    assert client.delete(f"/test-mode/{session_id}", headers=_bearer("ssa")).status_code == 404


def test_expired_sessions_are_dropped_from_the_registry(client, demo, registry, clock):
    expired_id = _start(client, demo, demo.school_admin_x)
    clock.advance(seconds=301)
    live_id = _start(client, demo, demo.teacher_x1)

    client.get("/me", headers=_bearer("ssa"))

    assert registry.get(expired_id) is None
    assert registry.get(live_id) is not None
    assert len(registry) == 1


def test_session_whose_target_was_removed_uses_callers_identity(client, demo, db_session, audit_sink):
    target = Principal(auth_subject="temp-teacher", email="temp-teacher@example.com", role=RoleKind.TEACHER)
    db_session.add(target)
    db_session.flush()
    session_id = _start(client, demo, target.id)

    db_session.delete(target)
    db_session.flush()
    headers = {**_bearer("ssa"), "X-Test-Mode-Session": session_id}

    question = client.get(f"/schools/{demo.school_y}/questions/1", headers=headers)
    scope = client.get("/scope", headers=headers)

    assert question.json() == {"reason": "system_admin", "effective": demo.system_admin, "impersonated": False}
    assert scope.json()["attached"] is True
    assert not [e for e in audit_sink.events if e.action == "read"]
