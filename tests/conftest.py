"""
Test configuration: in-memory SQLite engine, seeded reference data, an
in-process change notifier and a FastAPI TestClient wired to all of them.
"""

import os
from datetime import date
from types import SimpleNamespace

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CHANGE_NOTIFIER_BACKEND", "memory")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from planner.auth import hash_token
from planner.database import Base, get_db
from planner.domain.events.notifier import InProcessChangeNotifier, get_change_notifier
from planner.domain.leave.service import LeaveService
from planner.domain.scheduling.locks import SlotLockArena
from planner.domain.scheduling.schemas import AssignmentCreate
from planner.domain.scheduling.service import AssignmentService
from planner.main import app
from planner.models import (
    Client,
    Employee,
    Project,
    ProjectTask,
    TaskType,
    Team,
    User,
    UserRole,
)

# 2026-03-02 is a Monday
MONDAY = date(2026, 3, 2)
TUESDAY = date(2026, 3, 3)
WEDNESDAY = date(2026, 3, 4)
FRIDAY = date(2026, 3, 6)
SATURDAY = date(2026, 3, 7)
NEXT_MONDAY = date(2026, 3, 9)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    """Two teams, three employees, one user per role and one task to assign"""
    design = Team(name="Design", code="DES")
    build = Team(name="Build", code="BLD")
    db.add_all([design, build])
    db.flush()

    alice = Employee(first_name="Alice", last_name="Archer", position="Designer", team_id=design.id)
    bob = Employee(first_name="Bob", last_name="Baker", position="Designer", team_id=design.id)
    carol = Employee(first_name="Carol", last_name="Cole", position="Engineer", team_id=build.id)
    db.add_all([alice, bob, carol])
    db.flush()

    admin = User(
        email="admin@example.com",
        full_name="Admin",
        role=UserRole.ADMIN.value,
        token_hash=hash_token("admin-token"),
    )
    manager = User(
        email="manager@example.com",
        full_name="Design Manager",
        role=UserRole.MANAGER.value,
        token_hash=hash_token("manager-token"),
    )
    manager.managed_teams.append(design)
    member = User(
        email="alice@example.com",
        full_name="Alice Archer",
        role=UserRole.TEAM_MEMBER.value,
        employee_id=alice.id,
        token_hash=hash_token("alice-token"),
    )
    db.add_all([admin, manager, member])

    client = Client(code="ACME", name="Acme Corp", color="#FF8800")
    db.add(client)
    db.flush()
    project = Project(code="ACME-01", name="Headquarters", client_id=client.id)
    task_type = TaskType(name="Drawing")
    db.add_all([project, task_type])
    db.flush()
    task = ProjectTask(title="Floor plans", project_id=project.id, task_type_id=task_type.id)
    db.add(task)
    db.commit()

    return SimpleNamespace(
        design=design,
        build=build,
        alice=alice,
        bob=bob,
        carol=carol,
        admin=admin,
        manager=manager,
        member=member,
        client=client,
        project=project,
        task_type=task_type,
        task=task,
    )


@pytest.fixture
def notifier():
    return InProcessChangeNotifier(queue_size=64)


@pytest.fixture
def locks():
    return SlotLockArena()


@pytest.fixture
def assignments(db, notifier, locks):
    return AssignmentService(db, notifier, locks)


@pytest.fixture
def leave(db, notifier, locks):
    return LeaveService(db, notifier, locks)


@pytest.fixture
def place(assignments, seed):
    """Create an assignment for an employee as the admin"""

    def _place(employee, day=MONDAY, slot="morning", **fields):
        data = AssignmentCreate(
            employeeId=employee.id, date=day, slot=slot, taskId=seed.task.id, **fields
        )
        return assignments.create_assignment(data, seed.admin)

    return _place


def slot_ranks(assignments_service, employee, day=MONDAY, slot="morning"):
    """(id, slot_order, column_start) of a slot's active items, in rank order"""
    from planner.domain.scheduling.locks import SlotKey

    items = assignments_service.repo.get_slot(assignments_service.db, SlotKey(employee.id, day, slot))
    return [(item.id, item.slot_order, item.column_start) for item in items]


@pytest.fixture
def api(session_factory, notifier, seed):
    """TestClient with the database and notifier swapped for the test ones"""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_change_notifier] = lambda: notifier
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
