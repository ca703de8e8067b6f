from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from averon.api.v1 import health, invitations, organizations
from averon.core.rate_limit import invite_issue_rate_limit, invite_redeem_rate_limit
from averon.db.session import get_db
from averon.main import install_exception_handlers, request_observability
from averon.models import District, DistrictAdmin, School, SchoolAdmin

from tests.factories import make_engine, make_profile


@pytest.fixture()
def engine():
    eng = make_engine()
    yield eng
    eng.dispose()


@pytest.fixture()
def SessionLocal(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def db(SessionLocal):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def org(db):
    """
    Two districts:
      d1 -> s1, s2
      d2 -> s3
    plus one admin at each level.
    """
    d1 = District(name="North District", code="NORTH")
    d2 = District(name="South District", code="SOUTH")
    db.add_all([d1, d2])
    db.commit()

    s1 = School(name="Maple Elementary", district_id=d1.id)
    s2 = School(name="Oak Middle", district_id=d1.id)
    s3 = School(name="Pine High", district_id=d2.id)
    db.add_all([s1, s2, s3])
    db.commit()

    full = make_profile(db, "root@averon.test", "full_admin")
    dadmin = make_profile(db, "north.admin@averon.test", "district_admin", district_id=d1.id)
    db.add(DistrictAdmin(district_id=d1.id, admin_id=dadmin.id, assigned_by=full.id))
    sadmin = make_profile(db, "maple.admin@averon.test", "school_admin", district_id=d1.id, school_id=s1.id)
    db.add(SchoolAdmin(school_id=s1.id, admin_id=sadmin.id, assigned_by=dadmin.id))
    teacher = make_profile(db, "teacher@averon.test", "teacher", district_id=d1.id, school_id=s1.id)
    db.commit()

    return SimpleNamespace(
        d1=d1.id,
        d2=d2.id,
        s1=s1.id,
        s2=s2.id,
        s3=s3.id,
        full_admin=full,
        district_admin=dadmin,
        school_admin=sadmin,
        teacher=teacher,
    )


@pytest.fixture()
def client(SessionLocal):
    """
    Standalone FastAPI app with the real routers, exception handlers and
    request middleware, backed by the in-memory database.
    """
    app = FastAPI()
    install_exception_handlers(app)
    app.middleware("http")(request_observability)
    app.include_router(health.router)
    app.include_router(invitations.router)
    app.include_router(organizations.router)

    def _override_get_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    async def _no_limit():
        return None

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[invite_issue_rate_limit] = _no_limit
    app.dependency_overrides[invite_redeem_rate_limit] = _no_limit

    with TestClient(app) as c:
        yield c
