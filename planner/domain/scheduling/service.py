"""Assignment service - Placement, re-ranking and payload changes of assignments"""

import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...auth import can_override_capacity, can_view_employee, require_manage, resolve_scope
from ...errors import (
    CapacityError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PermissionDeniedError,
    PlannerError,
    ValidationError,
)
from ...models import Assignment, Employee, Slot, TaskPriority, TaskStatus, User
from ..events.notifier import ChangeEvent, ChangeNotifier, ChangeType, get_change_notifier
from .capacity import CapacityLedger
from .grid import is_weekend
from .layout import automatic_hours, position_of
from .locks import SlotKey, SlotLockArena, get_slot_locks
from .repository import AssignmentRepository
from .schemas import AssignmentCreate, AssignmentMove, AssignmentUpdate

logger = logging.getLogger(__name__)

T = TypeVar("T")


def slot_key(assignment: Assignment) -> SlotKey:
    return SlotKey(assignment.employee_id, assignment.assigned_date, assignment.slot)


def assignment_view(assignment: Assignment, slot_count: int) -> dict:
    """
    Display shape of an assignment, with its position derived from its rank
    and the number of active items sharing its slot.
    """
    position = position_of(assignment.slot_order, slot_count)
    task = assignment.task
    project = task.project if task else None
    client = project.client if project else None

    return {
        "id": assignment.id,
        "taskId": assignment.task_id,
        "employeeId": assignment.employee_id,
        "date": assignment.assigned_date,
        "slot": assignment.slot,
        "slotOrder": assignment.slot_order,
        "columnStart": position.column_start,
        "columnSpan": position.column_span,
        "row": position.row,
        "rowSpan": position.row_span,
        "priority": assignment.priority,
        "status": assignment.status,
        "dueDate": assignment.due_date,
        "notes": assignment.notes,
        "hours": assignment.hours if assignment.hours is not None else automatic_hours(slot_count),
        "explicitHours": assignment.hours,
        "taskTitle": task.title if task else None,
        "taskTypeName": task.task_type.name if task and task.task_type else None,
        "projectName": project.name if project else None,
        "projectCode": project.code if project else None,
        "clientName": client.name if client else None,
        "clientCode": client.code if client else None,
        "clientColor": client.color if client else None,
        "employeeName": assignment.employee.full_name if assignment.employee else None,
        "updatedAt": assignment.updated_at,
    }


@dataclass
class BulkUpdateResult:
    """Independent per-item outcome of a bulk update"""

    updated: list[Assignment] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


@dataclass
class BulkCreateResult:
    """Per-item outcome of a bulk create; errors carry the index of the failed item"""

    created: list[Assignment] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


class AssignmentService:
    """Service layer for assignment placement and payload changes"""

    def __init__(
        self,
        db: Session,
        notifier: Optional[ChangeNotifier] = None,
        locks: Optional[SlotLockArena] = None,
    ):
        self.db = db
        self.repo = AssignmentRepository()
        self.ledger = CapacityLedger(db)
        self.notifier = notifier or get_change_notifier()
        self.locks = locks or get_slot_locks()

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _get_employee(self, employee_id: int) -> Employee:
        employee = self.repo.get_employee(self.db, employee_id)
        if not employee or not employee.is_active:
            raise NotFoundError("Employee", employee_id)
        return employee

    def _get_active(self, assignment_id: int) -> Assignment:
        assignment = self.repo.get_assignment(self.db, assignment_id)
        if not assignment:
            raise NotFoundError("Assignment", assignment_id)
        return assignment

    @staticmethod
    def _require_weekday(day: date) -> None:
        if is_weekend(day):
            raise ValidationError(f"{day.isoformat()} is a weekend; assignments are weekday-only")

    def _check_override(self, user: User, allow_overbook: bool) -> None:
        if allow_overbook and not can_override_capacity(user):
            raise PermissionDeniedError("Only managers and admins may overbook a slot")

    def _load_slot(self, key: SlotKey) -> list[Assignment]:
        """Active items of a slot, refusing to work on a slot whose ranks have gaps"""
        items = self.repo.get_slot(self.db, key)
        ranks = [item.slot_order for item in items]
        if ranks != list(range(len(items))):
            logger.critical(f"🚨 Slot {key} has non-contiguous ranks {ranks}; aborting operation")
            raise InvariantViolation(f"Slot {key} ranks are not contiguous", slot=str(key), ranks=ranks)
        return items

    def _ensure_capacity(
        self, key: SlotKey, allow_overbook: bool, exclude_id: Optional[int] = None
    ) -> None:
        if self.ledger.can_place(key.employee_id, key.date, key.slot, allow_overbook, exclude_id):
            return
        snapshot = self.ledger.capacity_of(key.employee_id, key.date, key.slot, exclude_id)
        logger.warning(f"⚠️ Slot {key} is full ({snapshot.count}/{snapshot.capacity})")
        raise CapacityError(
            f"Slot {key.slot} on {key.date.isoformat()} is full",
            employeeId=key.employee_id,
            date=key.date.isoformat(),
            slot=key.slot,
            count=snapshot.count,
        )

    def _commit(self, operation: Callable[[], T], label: str) -> T:
        """
        Run a placement operation and commit it. A lost race on the unique
        (slot, rank) index is retried once against freshly loaded state.
        """
        for attempt in (1, 2):
            try:
                result = operation()
                self.db.commit()
                return result
            except IntegrityError as e:
                self.db.rollback()
                if attempt == 2:
                    logger.error(f"❌ {label} lost the rank race twice: {str(e.orig)}")
                    raise ConflictError(f"Concurrent change to the same slot; {label} not applied")
                logger.warning(f"⚠️ {label} hit a rank conflict, retrying once")
            except Exception:
                self.db.rollback()
                raise
        raise AssertionError("unreachable")

    @contextmanager
    def _hold_assignment(self, assignment_id: int, *extra_keys: SlotKey) -> Iterator[Assignment]:
        """
        Lock the slot an assignment currently sits in (plus any extra keys).
        If a concurrent move relocated it while we waited, lock again.
        """
        for _ in range(3):
            assignment = self._get_active(assignment_id)
            key = slot_key(assignment)
            with self.locks.hold(key, *extra_keys):
                self.db.refresh(assignment)
                if not assignment.is_active:
                    raise NotFoundError("Assignment", assignment_id)
                if slot_key(assignment) == key:
                    yield assignment
                    return
            logger.debug(f"Assignment {assignment_id} moved while waiting for {key}; relocking")
        raise ConflictError(f"Assignment {assignment_id} keeps moving; try again")

    def _publish(self, event_type: ChangeType, assignment: Assignment, team_id, **data) -> None:
        self.notifier.publish(
            ChangeEvent.create(
                event_type,
                employee_id=assignment.employee_id,
                team_id=team_id,
                day=assignment.assigned_date,
                slot=assignment.slot,
                assignmentId=assignment.id,
                slotOrder=assignment.slot_order,
                **data,
            )
        )

    def _apply_fields(self, assignment: Assignment, data: AssignmentUpdate) -> None:
        fields = data.model_dump(exclude_unset=True)
        if "taskId" in fields:
            if fields["taskId"] is None or not self.repo.get_task(self.db, fields["taskId"]):
                raise NotFoundError("Task", fields["taskId"])
            assignment.task_id = fields["taskId"]
        if "priority" in fields:
            assignment.priority = TaskPriority(fields["priority"] or TaskPriority.MEDIUM).value
        if "status" in fields:
            assignment.status = TaskStatus(fields["status"] or TaskStatus.NOT_STARTED).value
        if "dueDate" in fields:
            assignment.due_date = fields["dueDate"]
        if "notes" in fields:
            assignment.notes = fields["notes"]
        if "hours" in fields:
            assignment.hours = fields["hours"]

    def _resolve_task_id(self, data: AssignmentCreate) -> int:
        if data.taskId is not None:
            return data.taskId
        task = self.repo.create_task(
            self.db,
            title=data.title.strip(),
            project_id=data.projectId,
            task_type_id=data.taskTypeId,
        )
        logger.info(f"✅ Created task {task.id} for project {data.projectId}")
        return task.id

    # ========================================================================
    # READS
    # ========================================================================

    def slot_count(self, assignment: Assignment) -> int:
        return self.repo.count_slot(self.db, slot_key(assignment))

    def to_view(self, assignment: Assignment) -> dict:
        return assignment_view(assignment, self.slot_count(assignment))

    def to_views(self, assignments: list[Assignment]) -> list[dict]:
        """Views for a batch, counting slot occupancy once per slot"""
        counts: dict[SlotKey, int] = {}
        for assignment in assignments:
            key = slot_key(assignment)
            if key not in counts:
                counts[key] = self.repo.count_slot(self.db, key)
        return [assignment_view(a, counts[slot_key(a)]) for a in assignments]

    def get_assignment(self, assignment_id: int, user: User) -> Assignment:
        assignment = self.repo.get_assignment_for_display(self.db, assignment_id)
        if not assignment:
            raise NotFoundError("Assignment", assignment_id)
        if not can_view_employee(user, assignment.employee):
            raise PermissionDeniedError(f"Not allowed to view assignment {assignment_id}")
        return assignment

    def visible_employee_ids(self, user: User) -> Optional[list[int]]:
        scope = resolve_scope(user)
        if scope.all_teams:
            return None
        if not scope.team_ids:
            return [scope.employee_id]
        employees = self.repo.get_employees_for_view(self.db, team_ids=scope.team_filter())
        return [e.id for e in employees]

    def list_assignments(
        self, start: date, end: date, user: User, employee_id: Optional[int] = None
    ) -> list[Assignment]:
        if start > end:
            raise ValidationError("start must not be after end")
        employee_ids = self.visible_employee_ids(user)
        if employee_id is not None:
            if employee_ids is not None and employee_id not in employee_ids:
                raise PermissionDeniedError(f"Not allowed to view employee {employee_id}")
            employee_ids = [employee_id]
        return self.repo.get_in_range(self.db, start, end, employee_ids)

    def _visible(self, assignments: list[Assignment], user: User) -> list[Assignment]:
        employee_ids = self.visible_employee_ids(user)
        if employee_ids is None:
            return assignments
        return [a for a in assignments if a.employee_id in employee_ids]

    def get_overdue(self, user: User, today: Optional[date] = None) -> list[Assignment]:
        """Unfinished assignments whose due date has passed"""
        today = today or date.today()
        return self._visible(self.repo.get_due_between(self.db, None, today, exclusive_end=True), user)

    def get_upcoming_deadlines(
        self, user: User, days: int = 7, today: Optional[date] = None
    ) -> list[Assignment]:
        if days < 0:
            raise ValidationError("days must not be negative")
        today = today or date.today()
        return self._visible(
            self.repo.get_due_between(self.db, today, today + timedelta(days=days)), user
        )

    # ========================================================================
    # WRITES
    # ========================================================================

    def create_assignment(self, data: AssignmentCreate, user: User) -> Assignment:
        """Place a new assignment at the end of its slot"""
        self._require_weekday(data.date)
        employee = self._get_employee(data.employeeId)
        require_manage(user, employee)
        self._check_override(user, data.allowOverbook)

        # Reference lookups happen before taking the slot lock
        if data.taskId is not None:
            if not self.repo.get_task(self.db, data.taskId):
                raise NotFoundError("Task", data.taskId)
        else:
            if not self.repo.get_project(self.db, data.projectId):
                raise NotFoundError("Project", data.projectId)
            if not self.repo.get_task_type(self.db, data.taskTypeId):
                raise NotFoundError("Task type", data.taskTypeId)

        key = SlotKey(employee.id, data.date, Slot(data.slot).value)
        team_id = employee.team_id

        def place() -> Assignment:
            items = self._load_slot(key)
            self._ensure_capacity(key, data.allowOverbook)
            assignment = Assignment(
                task_id=self._resolve_task_id(data),
                employee_id=key.employee_id,
                assigned_date=key.date,
                slot=key.slot,
                slot_order=len(items),
                column_start=0,
                priority=TaskPriority(data.priority or TaskPriority.MEDIUM).value,
                status=TaskStatus(data.status or TaskStatus.NOT_STARTED).value,
                due_date=data.dueDate,
                notes=data.notes,
                hours=data.hours,
                is_active=True,
            )
            self.db.add(assignment)
            self.repo.apply_ranks(self.db, items + [assignment])
            return assignment

        with self.locks.hold(key):
            assignment = self._commit(place, f"create in {key}")
            logger.info(
                f"✅ Assignment {assignment.id} placed in {key} at rank {assignment.slot_order}"
            )
            self._publish(ChangeType.ASSIGNMENT_CREATED, assignment, team_id)
        return assignment

    def _check_batch_capacity(self, items: list[AssignmentCreate]) -> None:
        """
        Dry run of a batch against current capacity, counting earlier items
        of the batch that land in the same slot. Advisory only; every item is
        checked again under its slot lock when it is placed.
        """
        queued: dict[SlotKey, int] = defaultdict(int)
        conflicts = []
        for index, data in enumerate(items):
            key = SlotKey(data.employeeId, data.date, Slot(data.slot).value)
            snapshot = self.ledger.capacity_of(key.employee_id, key.date, key.slot)
            if snapshot.count + queued[key] >= snapshot.capacity and not data.allowOverbook:
                conflicts.append(index)
            queued[key] += 1
        if conflicts:
            logger.warning(f"⚠️ Bulk create refused: items {conflicts} would overfill their slots")
            raise CapacityError(
                f"{len(conflicts)} of {len(items)} assignments would overfill their slots",
                indexes=conflicts,
            )

    def bulk_create(
        self, items: list[AssignmentCreate], user: User, validate_conflicts: bool = False
    ) -> BulkCreateResult:
        """
        Place many assignments, each under its own slot lock and capacity
        check. With `validate_conflicts` the whole batch is refused up front
        if any item would not fit; otherwise items fail on their own.
        """
        if not items:
            raise ValidationError("No assignments provided")
        if validate_conflicts:
            self._check_batch_capacity(items)

        result = BulkCreateResult()
        for index, data in enumerate(items):
            try:
                result.created.append(self.create_assignment(data, user))
            except PlannerError as e:
                result.errors.append({"index": index, "error": e.code, "detail": e.message})

        logger.info(
            f"📊 Bulk create: {len(result.created)} placed, {len(result.errors)} failed"
        )
        return result

    def move_assignment(self, assignment_id: int, data: AssignmentMove, user: User) -> Assignment:
        """
        Move an assignment to another (employee, date, slot). It leaves a
        closed gap behind and enters the destination last. Both slots are
        written in one transaction.
        """
        self._require_weekday(data.date)
        self._check_override(user, data.allowOverbook)
        current = self._get_active(assignment_id)
        # Work may still be moved off a deactivated employee
        source_employee = self.repo.get_employee(self.db, current.employee_id)
        if not source_employee:
            raise NotFoundError("Employee", current.employee_id)
        target_employee = self._get_employee(data.employeeId)
        require_manage(user, source_employee)
        require_manage(user, target_employee)

        target = SlotKey(target_employee.id, data.date, Slot(data.slot).value)
        source_team_id = source_employee.team_id
        target_team_id = target_employee.team_id

        with self._hold_assignment(assignment_id, target) as assignment:
            source = slot_key(assignment)

            def relocate() -> Assignment:
                moving = self._get_active(assignment_id)
                source_items = self._load_slot(source)
                remaining = [item for item in source_items if item.id != moving.id]

                if source == target:
                    self._ensure_capacity(target, data.allowOverbook, exclude_id=moving.id)
                    self.repo.apply_ranks(self.db, remaining + [moving])
                    return moving

                target_items = self._load_slot(target)
                self._ensure_capacity(target, data.allowOverbook)

                moving.employee_id = target.employee_id
                moving.assigned_date = target.date
                moving.slot = target.slot
                moving.slot_order = len(target_items)
                self.db.flush()

                self.repo.apply_ranks(self.db, remaining)
                self.repo.apply_ranks(self.db, target_items + [moving])
                return moving

            moved = self._commit(relocate, f"move of assignment {assignment_id}")
            logger.info(f"✅ Assignment {assignment_id} moved {source} -> {target}")
            self._publish(
                ChangeType.ASSIGNMENT_MOVED,
                moved,
                target_team_id,
                fromEmployeeId=source.employee_id,
                fromTeamId=source_team_id,
                fromDate=source.date.isoformat(),
                fromSlot=source.slot,
            )
        return moved

    def reorder_assignment(self, assignment_id: int, target_rank: int, user: User) -> Assignment:
        """Move an assignment to an explicit rank within its own slot"""
        current = self._get_active(assignment_id)
        employee = self._get_employee(current.employee_id)
        require_manage(user, employee)
        team_id = employee.team_id

        with self._hold_assignment(assignment_id) as assignment:
            key = slot_key(assignment)

            def rerank() -> Assignment:
                moving = self._get_active(assignment_id)
                items = self._load_slot(key)
                if target_rank >= len(items):
                    raise ValidationError(
                        f"Rank {target_rank} is outside a slot of {len(items)} items",
                        slotCount=len(items),
                    )
                ordered = [item for item in items if item.id != moving.id]
                ordered.insert(target_rank, moving)
                self.repo.apply_ranks(self.db, ordered)
                return moving

            reordered = self._commit(rerank, f"reorder of assignment {assignment_id}")
            logger.info(f"✅ Assignment {assignment_id} reordered to rank {target_rank} in {key}")
            self._publish(ChangeType.ASSIGNMENT_MOVED, reordered, team_id, reorder=True)
        return reordered

    def update_assignment(self, assignment_id: int, data: AssignmentUpdate, user: User) -> Assignment:
        """Payload-only change; placement and capacity are untouched"""
        current = self._get_active(assignment_id)
        employee = self._get_employee(current.employee_id)
        require_manage(user, employee)
        team_id = employee.team_id

        # Held so update events for a slot keep their commit order
        with self._hold_assignment(assignment_id) as assignment:
            try:
                self._apply_fields(assignment, data)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            self.db.refresh(assignment)
            logger.info(f"✅ Assignment {assignment_id} updated")
            self._publish(
                ChangeType.ASSIGNMENT_UPDATED,
                assignment,
                team_id,
                fields=sorted(data.model_dump(exclude_unset=True)),
            )
        return assignment

    def bulk_update(self, assignment_ids: list[int], data: AssignmentUpdate, user: User) -> BulkUpdateResult:
        """
        Apply the same fields to every id. Items succeed or fail on their
        own; failures are collected, successes stay committed.
        """
        if not assignment_ids:
            raise ValidationError("No assignment IDs provided")

        result = BulkUpdateResult()
        for assignment_id in dict.fromkeys(assignment_ids):
            try:
                result.updated.append(self.update_assignment(assignment_id, data, user))
            except PlannerError as e:
                result.errors.append(
                    {"assignmentId": assignment_id, "error": e.code, "detail": e.message}
                )

        logger.info(
            f"📊 Bulk update: {len(result.updated)} updated, {len(result.errors)} failed"
        )
        return result

    def delete_assignment(self, assignment_id: int, user: User) -> dict:
        """Soft-delete and close the rank gap left in the slot"""
        current = self._get_active(assignment_id)
        employee = self._get_employee(current.employee_id)
        require_manage(user, employee)
        team_id = employee.team_id

        with self._hold_assignment(assignment_id) as assignment:
            key = slot_key(assignment)

            def remove() -> Assignment:
                removing = self._get_active(assignment_id)
                items = self._load_slot(key)
                removing.is_active = False
                self.db.flush()
                self.repo.apply_ranks(self.db, [item for item in items if item.id != removing.id])
                return removing

            removed = self._commit(remove, f"delete of assignment {assignment_id}")
            logger.info(f"🗑️ Assignment {assignment_id} removed from {key}")
            self._publish(ChangeType.ASSIGNMENT_DELETED, removed, team_id)

        return {"message": "Assignment deleted", "id": assignment_id}
