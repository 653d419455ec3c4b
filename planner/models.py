import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .errors import InvariantViolation


class Slot(str, enum.Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"


class TaskPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ON_HOLD = "on_hold"


class LeaveType(str, enum.Enum):
    ANNUAL = "annual"
    SICK = "sick"
    OTHER = "other"


class LeaveStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    TEAM_MEMBER = "team_member"


# ============================================================================
# REFERENCE DATA (read by the engine, managed elsewhere)
# ============================================================================

user_managed_teams = Table(
    "user_managed_teams",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("team_id", Integer, ForeignKey("teams.id"), primary_key=True),
)


class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    members = relationship("Employee", back_populates="team")


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    position = Column(String(100), nullable=True)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    team = relationship("Team", back_populates="members")

    @property
    def full_name(self) -> str:
        name = f"{(self.first_name or '').strip()} {(self.last_name or '').strip()}".strip()
        return name or f"Employee {self.id}"


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), nullable=False)
    name = Column(String(255), nullable=False)
    color = Column(String(7), nullable=True)  # e.g., #RRGGBB


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), nullable=True)
    name = Column(String(255), nullable=False)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False)

    client = relationship("Client")


class TaskType(Base):
    __tablename__ = "task_types"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)


class ProjectTask(Base):
    __tablename__ = "project_tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    task_type_id = Column(Integer, ForeignKey("task_types.id"), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    project = relationship("Project")
    task_type = relationship("TaskType")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), default=UserRole.TEAM_MEMBER.value, nullable=False)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    token_hash = Column(String(64), unique=True, index=True, nullable=True)  # sha256 of API token

    employee = relationship("Employee")
    managed_teams = relationship("Team", secondary=user_managed_teams)

    @property
    def managed_team_ids(self) -> set[int]:
        return {team.id for team in self.managed_teams}


# ============================================================================
# ENGINE TABLES
# ============================================================================


class Assignment(Base):
    """A unit of work placed in an (employee, date, slot) cell of the grid"""

    __tablename__ = "assignments"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("project_tasks.id"), nullable=False)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    assigned_date = Column(Date, nullable=False, index=True)
    slot = Column(String(20), nullable=False)  # morning, afternoon

    # Placement rank within the slot (0 = leftmost) and derived grid column (0-3)
    slot_order = Column(Integer, default=0, nullable=False)
    column_start = Column(Integer, default=0, nullable=False)

    priority = Column(String(20), default=TaskPriority.MEDIUM.value, nullable=False)
    status = Column(String(20), default=TaskStatus.NOT_STARTED.value, nullable=False)
    due_date = Column(Date, nullable=True)
    notes = Column(String(500), nullable=True)
    hours = Column(Float, nullable=True)  # explicit duration 1-4; None = derived from layout

    # Soft delete: inactive rows keep history but leave capacity and views
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    task = relationship("ProjectTask")
    employee = relationship("Employee")


# One active item per rank in a slot; losing this race surfaces as ConflictError
Index(
    "uq_assignments_active_slot_rank",
    Assignment.employee_id,
    Assignment.assigned_date,
    Assignment.slot,
    Assignment.slot_order,
    unique=True,
    sqlite_where=Assignment.is_active.is_(True),
    postgresql_where=Assignment.is_active.is_(True),
)


class LeaveAllocation(Base):
    __tablename__ = "leave_allocations"
    __table_args__ = (UniqueConstraint("employee_id", "year", name="uq_leave_allocation_year"),)

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    year = Column(Integer, nullable=False)

    # Days; floats so half days (0.5) are exact
    annual_total = Column(Float, default=0, nullable=False)
    annual_used = Column(Float, default=0, nullable=False)
    sick_total = Column(Float, default=0, nullable=False)
    sick_used = Column(Float, default=0, nullable=False)
    other_total = Column(Float, default=0, nullable=False)
    other_used = Column(Float, default=0, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    employee = relationship("Employee")

    def total_for(self, leave_type: str) -> float:
        return getattr(self, f"{leave_type}_total")

    def used_for(self, leave_type: str) -> float:
        return getattr(self, f"{leave_type}_used")

    def remaining_for(self, leave_type: str) -> float:
        return self.total_for(leave_type) - self.used_for(leave_type)

    def add_used(self, leave_type: str, days: float) -> None:
        used = self.used_for(leave_type) + days
        if used < -1e-9:
            raise InvariantViolation(
                f"{leave_type} used days would drop to {used:g} for employee {self.employee_id} in {self.year}",
                leaveType=leave_type,
                used=self.used_for(leave_type),
                change=days,
            )
        # Clamp float noise from half days
        setattr(self, f"{leave_type}_used", max(0.0, used))


class LeaveRecord(Base):
    """A leave occurrence; only approved records occupy slot capacity"""

    __tablename__ = "leave_records"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False, index=True)
    end_date = Column(Date, nullable=False, index=True)
    leave_type = Column(String(20), nullable=False)  # annual, sick, other
    hours = Column(Float, nullable=False)
    slot = Column(String(20), nullable=True)  # set only for half-day leave

    # Status workflow: pending → approved | rejected (both terminal)
    status = Column(String(20), default=LeaveStatus.PENDING.value, nullable=False, index=True)
    notes = Column(Text, nullable=True)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    review_notes = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    employee = relationship("Employee")

    @property
    def is_half_day(self) -> bool:
        return self.slot is not None
