"""
Tests for settings, logging setup, the engine facade and demo seeding.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from scopeguard.audit.sink import InMemoryAuditSink
from scopeguard.core.types import NodeKind, ResourceDescriptor
from scopeguard.db.init_db import init_db
from scopeguard.engine import AuthorizationEngine
from scopeguard.logging_config import configure_logging
from scopeguard.models.directory import DirectoryVersion, Principal
from scopeguard.models.organization import Company
from scopeguard.settings import Settings


def test_settings_defaults():
    settings = Settings()

    assert settings.resolved_db_url().startswith("sqlite:///")
    assert settings.resolved_db_url().endswith("scopeguard.db")
    assert settings.resolved_capabilities_path().name == "capabilities.yaml"
    assert settings.resolved_capabilities_path().is_file()
    assert settings.impersonation_ttl_seconds == 300
    assert settings.test_mode_header == "X-Test-Mode-Session"


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("SCOPEGUARD_DB_URL", "sqlite:///:memory:")
    monkeypatch.setenv("SCOPEGUARD_CAPABILITIES_PATH", str(tmp_path / "caps.yaml"))
    monkeypatch.setenv("SCOPEGUARD_IMPERSONATION_TTL_SECONDS", "60")

    settings = Settings()

    assert settings.resolved_db_url() == "sqlite:///:memory:"
    assert settings.resolved_capabilities_path() == Path(tmp_path / "caps.yaml")
    assert settings.impersonation_ttl_seconds == 60


def test_configure_logging_sets_package_level():
    logger = logging.getLogger("scopeguard")
    previous = logger.level
    try:
        configure_logging("debug")
        assert logger.level == logging.DEBUG
        assert logging.getLogger("scopeguard.capability.evaluator").getEffectiveLevel() == logging.DEBUG
    finally:
        logger.setLevel(previous)


def test_engine_from_settings_uses_configured_ttl():
    engine = AuthorizationEngine.from_settings(
        Settings(impersonation_ttl_seconds=120), audit_sink=InMemoryAuditSink()
    )

    assert engine.impersonation_ttl == timedelta(seconds=120)
    assert engine.policy.is_known_resource("question")


def test_request_context_is_discarded_after_request(authz_engine, db_session, demo):
    resource = ResourceDescriptor(
        resource_type="question", resource_id=1, owner_kind=NodeKind.SCHOOL, owner_id=demo.school_x
    )

    with authz_engine.request(db_session) as ctx:
        assert ctx.can(demo.school_admin_x, "read", resource) is True
        assert ctx.resolve_scope(demo.school_admin_x).school_ids == {demo.school_x}
        assert len(ctx.cache) == 1

    assert len(ctx.cache) == 0
    with authz_engine.request(db_session) as fresh:
        assert fresh.cache is not ctx.cache


def test_init_db_creates_and_seeds_once(engine):
    init_db(engine)
    init_db(engine)

    with Session(engine) as db:
        assert len(db.scalars(select(Company)).all()) == 2
        assert db.scalars(select(Principal.id).where(Principal.auth_subject == "ssa")).one()
        assert db.get(DirectoryVersion, 1).version > 0


def test_configure_logging_rejects_unknown_level():
    with pytest.raises(ValueError):
        configure_logging("chatty")
