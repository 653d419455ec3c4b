"""Assignment repository - Database operations for assignments and their slots"""

from datetime import date
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ...models import (
    Assignment,
    Employee,
    Project,
    ProjectTask,
    TaskStatus,
    TaskType,
)
from .layout import stamp_layout
from .locks import SlotKey

ASSIGNMENT_DISPLAY_OPTIONS = (
    joinedload(Assignment.task).joinedload(ProjectTask.project).joinedload(Project.client),
    joinedload(Assignment.task).joinedload(ProjectTask.task_type),
    joinedload(Assignment.employee),
)


class AssignmentRepository:
    """Repository for assignment database operations"""

    @staticmethod
    def get_assignment(db: Session, assignment_id: int) -> Optional[Assignment]:
        """Get an active assignment by ID"""
        return (
            db.query(Assignment)
            .filter(Assignment.id == assignment_id, Assignment.is_active.is_(True))
            .first()
        )

    @staticmethod
    def get_assignment_for_display(db: Session, assignment_id: int) -> Optional[Assignment]:
        return (
            db.query(Assignment)
            .options(*ASSIGNMENT_DISPLAY_OPTIONS)
            .filter(Assignment.id == assignment_id, Assignment.is_active.is_(True))
            .first()
        )

    @staticmethod
    def get_slot(db: Session, key: SlotKey, exclude_id: Optional[int] = None) -> list[Assignment]:
        """Active assignments of one slot in placement order"""
        query = db.query(Assignment).filter(
            Assignment.is_active.is_(True),
            Assignment.employee_id == key.employee_id,
            Assignment.assigned_date == key.date,
            Assignment.slot == key.slot,
        )
        if exclude_id is not None:
            query = query.filter(Assignment.id != exclude_id)
        return query.order_by(Assignment.slot_order, Assignment.created_at, Assignment.id).all()

    @staticmethod
    def count_slot(db: Session, key: SlotKey, exclude_id: Optional[int] = None) -> int:
        query = db.query(func.count(Assignment.id)).filter(
            Assignment.is_active.is_(True),
            Assignment.employee_id == key.employee_id,
            Assignment.assigned_date == key.date,
            Assignment.slot == key.slot,
        )
        if exclude_id is not None:
            query = query.filter(Assignment.id != exclude_id)
        return query.scalar() or 0

    @staticmethod
    def count_by_slot(
        db: Session, employee_ids: Iterable[int], start: date, end: date
    ) -> dict[SlotKey, int]:
        """Active assignment counts per slot key over a date range"""
        rows = (
            db.query(
                Assignment.employee_id,
                Assignment.assigned_date,
                Assignment.slot,
                func.count(Assignment.id),
            )
            .filter(
                Assignment.is_active.is_(True),
                Assignment.employee_id.in_(list(employee_ids)),
                Assignment.assigned_date >= start,
                Assignment.assigned_date <= end,
            )
            .group_by(Assignment.employee_id, Assignment.assigned_date, Assignment.slot)
            .all()
        )
        return {SlotKey(emp_id, day, slot): count for emp_id, day, slot, count in rows}

    @staticmethod
    def get_in_range(
        db: Session,
        start: date,
        end: date,
        employee_ids: Optional[Iterable[int]] = None,
    ) -> list[Assignment]:
        """
        Active assignments in a date range, with display relations loaded.
        Ordered by slotOrder so each slot lists leftmost first.
        """
        query = (
            db.query(Assignment)
            .options(*ASSIGNMENT_DISPLAY_OPTIONS)
            .filter(
                Assignment.is_active.is_(True),
                Assignment.assigned_date >= start,
                Assignment.assigned_date <= end,
            )
        )
        if employee_ids is not None:
            query = query.filter(Assignment.employee_id.in_(list(employee_ids)))
        return query.order_by(
            Assignment.assigned_date, Assignment.slot_order, Assignment.created_at, Assignment.id
        ).all()

    @staticmethod
    def get_due_between(
        db: Session, start: Optional[date], end: date, exclusive_end: bool = False
    ) -> list[Assignment]:
        """Active, unfinished assignments whose due date falls in the window"""
        query = (
            db.query(Assignment)
            .options(*ASSIGNMENT_DISPLAY_OPTIONS)
            .filter(
                Assignment.is_active.is_(True),
                Assignment.due_date.isnot(None),
                Assignment.status != TaskStatus.DONE.value,
            )
        )
        if start is not None:
            query = query.filter(Assignment.due_date >= start)
        if exclusive_end:
            query = query.filter(Assignment.due_date < end)
        else:
            query = query.filter(Assignment.due_date <= end)
        return query.order_by(Assignment.due_date, Assignment.id).all()

    @staticmethod
    def apply_ranks(db: Session, ordered: list[Assignment]) -> None:
        """
        Re-rank a slot to match list order and restamp its layout.

        Changed rows are first parked on negative ranks and flushed, so the
        unique (slot, rank) index never sees two active rows on one rank
        while the permutation is written.
        """
        moved = [item for rank, item in enumerate(ordered) if item.slot_order != rank]
        if moved:
            for parked, item in enumerate(moved, start=1):
                item.slot_order = -parked
            db.flush()
        stamp_layout(ordered)
        db.flush()

    # Reference lookups (read-only)
    @staticmethod
    def get_employee(db: Session, employee_id: int) -> Optional[Employee]:
        return db.query(Employee).filter(Employee.id == employee_id).first()

    @staticmethod
    def get_task(db: Session, task_id: int) -> Optional[ProjectTask]:
        return db.query(ProjectTask).filter(ProjectTask.id == task_id).first()

    @staticmethod
    def get_project(db: Session, project_id: int) -> Optional[Project]:
        return db.query(Project).filter(Project.id == project_id).first()

    @staticmethod
    def get_task_type(db: Session, task_type_id: int) -> Optional[TaskType]:
        return db.query(TaskType).filter(TaskType.id == task_type_id).first()

    @staticmethod
    def create_task(db: Session, **task_data) -> ProjectTask:
        task = ProjectTask(**task_data)
        db.add(task)
        db.flush()
        return task

    @staticmethod
    def get_employees_for_view(
        db: Session,
        team_ids: Optional[Iterable[int]] = None,
        employee_id: Optional[int] = None,
    ) -> list[Employee]:
        query = db.query(Employee).options(joinedload(Employee.team)).filter(
            Employee.is_active.is_(True)
        )
        if employee_id is not None:
            query = query.filter(Employee.id == employee_id)
        if team_ids is not None:
            query = query.filter(Employee.team_id.in_(list(team_ids)))
        return query.order_by(Employee.first_name, Employee.last_name, Employee.id).all()
