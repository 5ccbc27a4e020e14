"""Pytest configuration and fixtures for PM Hub tests.

Every test gets its own in-memory SQLite database and a TestClient whose
``get_db`` dependency hands out sessions bound to it.
"""
import os
import tempfile

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("ENABLE_PUSH", "false")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "100000/minute")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="pmhub-storage-"))

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from pmhub.auth.security import create_access_token  # noqa: E402
from pmhub.config import settings  # noqa: E402
from pmhub.db import Base, build_engine, get_db, utcnow  # noqa: E402
from pmhub.main import app  # noqa: E402
from pmhub.models.models import Machine, MachinePart, PMTemplate, PMTemplateItem  # noqa: E402
from pmhub.schemas.common import RoleName  # noqa: E402
from pmhub.services import inventory, users  # noqa: E402


@pytest.fixture
def engine():
    eng = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    users.ensure_roles(session)
    session.commit()
    yield session
    session.close()


@pytest.fixture
def storage_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "storage_dir", str(tmp_path))
    return tmp_path


@pytest.fixture
def client(db, session_factory, storage_dir):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------- Factories ----------
def _make_user(db, role: str, email: str):
    user = users.create_user(db, email=email, password="secret123", role=role, first_name=role.title(), last_name="User")
    db.commit()
    return user


@pytest.fixture
def admin(db):
    return _make_user(db, RoleName.ADMIN.value, "admin@example.com")


@pytest.fixture
def technician(db):
    return _make_user(db, RoleName.TECHNICIAN.value, "tech@example.com")


@pytest.fixture
def other_technician(db):
    return _make_user(db, RoleName.TECHNICIAN.value, "tech2@example.com")


@pytest.fixture
def customer(db):
    return _make_user(db, RoleName.CUSTOMER.value, "customer@example.com")


def auth_header(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.role_name)}"}


@pytest.fixture
def admin_headers(admin):
    return auth_header(admin)


@pytest.fixture
def tech_headers(technician):
    return auth_header(technician)


@pytest.fixture
def machine(db):
    m = Machine(machine_code="CNC-01", name="CNC Lathe", category="Lathe", location="Bay 2")
    db.add(m)
    db.commit()
    return m


@pytest.fixture
def part(db, machine, admin):
    p = MachinePart(machine_id=machine.id, part_code="BRG-1", part_name="Spindle bearing", cost_per_unit=5, min_stock_level=2)
    db.add(p)
    db.flush()
    inventory.apply_transaction(db, part_id=p.id, type="ADJUST", quantity=10, reference_type="ADJUSTMENT", actor_id=admin.id)
    db.commit()
    return p


@pytest.fixture
def template(db):
    t = PMTemplate(name="Monthly lathe check", machine_type="Lathe", frequency_type="MONTHLY", frequency_value=1)
    t.items.append(PMTemplateItem(check_item="Check coolant level", step_order=1))
    t.items.append(PMTemplateItem(check_item="Inspect chuck jaws", step_order=2, has_photo=True))
    db.add(t)
    db.commit()
    return t


@pytest.fixture
def due_soon():
    return utcnow() + timedelta(days=3)
