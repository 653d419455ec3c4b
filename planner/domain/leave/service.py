"""
Leave coordinator - Leave requests, their review workflow and allocation balances.

Records move Pending -> Approved or Pending -> Rejected and stop there.
Only approved records occupy slot capacity and consume allocation; a wrong
approval is corrected by deleting it or filing a compensating record.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ...auth import (
    can_manage_employee,
    can_override_capacity,
    can_review_leave,
    can_view_employee,
    is_admin,
    is_manager,
    resolve_scope,
)
from ...config import SLOT_CAPACITY
from ...errors import (
    BalanceError,
    CapacityError,
    InvalidTransitionError,
    InvariantViolation,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ...models import Employee, LeaveAllocation, LeaveRecord, LeaveStatus, LeaveType, Slot, User
from ..events.notifier import ChangeEvent, ChangeNotifier, ChangeType, get_change_notifier
from ..scheduling.capacity import CapacityLedger
from ..scheduling.grid import iter_weekdays
from ..scheduling.locks import AllocationKey, SlotKey, SlotLockArena, get_slot_locks
from ..scheduling.repository import AssignmentRepository
from .days import covered_cells, hours_to_days, record_cells, resolve_hours
from .repository import LeaveRepository
from .schemas import AllocationUpdate, LeaveCreate

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [LeaveStatus.PENDING.value, LeaveStatus.APPROVED.value]


def record_to_dict(record: LeaveRecord) -> dict:
    return {
        "id": record.id,
        "employeeId": record.employee_id,
        "employeeName": record.employee.full_name if record.employee else None,
        "startDate": record.start_date,
        "endDate": record.end_date,
        "leaveType": record.leave_type,
        "hours": record.hours,
        "days": hours_to_days(record.hours),
        "slot": record.slot,
        "isHalfDay": record.is_half_day,
        "status": record.status,
        "notes": record.notes,
        "requestedBy": record.requested_by,
        "reviewedBy": record.reviewed_by,
        "reviewNotes": record.review_notes,
        "reviewedAt": record.reviewed_at,
        "createdAt": record.created_at,
    }


def allocation_to_dict(allocation: LeaveAllocation) -> dict:
    balances = {
        leave_type.value: {
            "total": allocation.total_for(leave_type.value),
            "used": allocation.used_for(leave_type.value),
            "remaining": allocation.remaining_for(leave_type.value),
        }
        for leave_type in LeaveType
    }
    return {"employeeId": allocation.employee_id, "year": allocation.year, **balances}


class LeaveService:
    """Service layer for leave requests and allocations"""

    def __init__(
        self,
        db: Session,
        notifier: Optional[ChangeNotifier] = None,
        locks: Optional[SlotLockArena] = None,
    ):
        self.db = db
        self.repo = LeaveRepository()
        self.ledger = CapacityLedger(db)
        self.notifier = notifier or get_change_notifier()
        self.locks = locks or get_slot_locks()

    def _get_employee(self, employee_id: int) -> Employee:
        employee = self.repo.get_employee(self.db, employee_id)
        if not employee:
            raise NotFoundError("Employee", employee_id)
        return employee

    def _get_record(self, record_id: int) -> LeaveRecord:
        record = self.repo.get_record(self.db, record_id)
        if not record:
            raise NotFoundError("Leave record", record_id)
        return record

    @staticmethod
    def _cell_keys(record: LeaveRecord) -> list[SlotKey]:
        return [SlotKey(record.employee_id, day, slot) for day, slot in record_cells(record)]

    @staticmethod
    def _allocation_key(record: LeaveRecord) -> AllocationKey:
        return AllocationKey(record.employee_id, record.start_date.year)

    def _publish(self, event_type: ChangeType, record: LeaveRecord, team_id: Optional[int]) -> None:
        self.notifier.publish(
            ChangeEvent.create(
                event_type,
                employee_id=record.employee_id,
                team_id=team_id,
                day=record.start_date,
                slot=record.slot,
                recordId=record.id,
                startDate=record.start_date.isoformat(),
                endDate=record.end_date.isoformat(),
                leaveType=record.leave_type,
                status=record.status,
            )
        )

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ========================================================================
    # REQUEST WORKFLOW
    # ========================================================================

    def submit(self, data: LeaveCreate, user: User) -> tuple[LeaveRecord, Optional[str]]:
        """
        File a pending leave request. Exceeding the remaining balance does not
        block submission; it is reported back as a warning and enforced at
        approval.
        """
        employee = self._get_employee(data.employeeId)
        if not can_manage_employee(user, employee):
            raise PermissionDeniedError(f"Not allowed to request leave for employee {employee.id}")

        slot = Slot(data.slot).value if data.slot is not None else None
        hours = resolve_hours(data.startDate, data.endDate, slot, data.hours)
        leave_type = LeaveType(data.leaveType).value
        cells = covered_cells(data.startDate, data.endDate, slot)
        keys = [SlotKey(employee.id, day, s) for day, s in cells]

        with self.locks.hold(*keys, AllocationKey(employee.id, data.startDate.year)):
            existing = self.repo.get_in_range(
                self.db, data.startDate, data.endDate, [employee.id], ACTIVE_STATUSES
            )
            taken = {cell for record in existing for cell in record_cells(record)}
            clashes = sorted(set(cells) & taken)
            if clashes:
                day, clash_slot = clashes[0]
                raise ValidationError(
                    f"Leave overlaps an existing request on {day.isoformat()} ({clash_slot})",
                    date=day.isoformat(),
                    slot=clash_slot,
                )

            allocation = self.repo.get_or_create_allocation(
                self.db, employee.id, data.startDate.year, for_update=True
            )
            days = hours_to_days(hours)
            remaining = allocation.remaining_for(leave_type)
            warning = None
            if days > remaining:
                warning = (
                    f"Request uses {days:g} {leave_type} days but only {remaining:g} remain; "
                    "it cannot be approved unless the allocation grows"
                )
                logger.warning(f"⚠️ Employee {employee.id}: {warning}")

            record = self.repo.create_record(
                self.db,
                employee_id=employee.id,
                start_date=data.startDate,
                end_date=data.endDate,
                leave_type=leave_type,
                hours=hours,
                slot=slot,
                status=LeaveStatus.PENDING.value,
                notes=data.notes,
                requested_by=user.id,
                is_active=True,
            )
            self._commit()
            logger.info(
                f"✅ Leave {record.id} submitted for employee {employee.id}: "
                f"{data.startDate} to {data.endDate}, {hours:g}h {leave_type}"
            )
            self._publish(ChangeType.LEAVE_SUBMITTED, record, employee.team_id)

        return record, warning

    def _start_review(self, record_id: int, user: User) -> tuple[LeaveRecord, Employee]:
        record = self._get_record(record_id)
        employee = self._get_employee(record.employee_id)
        if not can_review_leave(user, employee):
            raise PermissionDeniedError(f"Not allowed to review leave of employee {employee.id}")
        return record, employee

    @staticmethod
    def _require_pending(record: LeaveRecord, action: str) -> None:
        if record.status != LeaveStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Cannot {action} leave that is already {record.status}",
                status=record.status,
            )

    def approve(
        self,
        record_id: int,
        user: User,
        notes: Optional[str] = None,
        allow_overbook: bool = False,
    ) -> LeaveRecord:
        """
        Approve a pending request. Re-checks the balance (it may have changed
        since submission) and the capacity of every covered slot, then books
        the days and starts blocking the slots.
        """
        record, employee = self._start_review(record_id, user)
        if allow_overbook and not can_override_capacity(user):
            raise PermissionDeniedError("Only managers and admins may overbook a slot")

        with self.locks.hold(*self._cell_keys(record), self._allocation_key(record)):
            self.db.refresh(record)
            if not record.is_active:
                raise NotFoundError("Leave record", record_id)
            self._require_pending(record, "approve")

            allocation = self.repo.get_or_create_allocation(
                self.db, record.employee_id, record.start_date.year, for_update=True
            )
            days = hours_to_days(record.hours)
            total = allocation.total_for(record.leave_type)
            used = allocation.used_for(record.leave_type)
            if used + days > total + 1e-9:
                self.db.rollback()
                logger.warning(
                    f"⚠️ Leave {record_id} refused: {used:g}+{days:g} {record.leave_type} days > {total:g}"
                )
                raise BalanceError(
                    f"Approving would use {used + days:g} of {total:g} {record.leave_type} days",
                    leaveType=record.leave_type,
                    total=total,
                    used=used,
                    requested=days,
                )

            if not allow_overbook:
                for day, slot in record_cells(record):
                    snapshot = self.ledger.capacity_of(record.employee_id, day, slot)
                    if snapshot.count >= SLOT_CAPACITY:
                        self.db.rollback()
                        logger.warning(f"⚠️ Leave {record_id} refused: {day} {slot} is full")
                        raise CapacityError(
                            f"Slot {slot} on {day.isoformat()} is full; move work before approving",
                            date=day.isoformat(),
                            slot=slot,
                            count=snapshot.count,
                        )

            record.status = LeaveStatus.APPROVED.value
            record.reviewed_by = user.id
            record.review_notes = notes
            record.reviewed_at = datetime.now(timezone.utc)
            allocation.add_used(record.leave_type, days)
            self._commit()
            logger.info(f"✅ Leave {record_id} approved by user {user.id}")
            self._publish(ChangeType.LEAVE_APPROVED, record, employee.team_id)

        return record

    def reject(self, record_id: int, user: User, notes: Optional[str] = None) -> LeaveRecord:
        record, employee = self._start_review(record_id, user)

        with self.locks.hold(*self._cell_keys(record)):
            self.db.refresh(record)
            if not record.is_active:
                raise NotFoundError("Leave record", record_id)
            self._require_pending(record, "reject")

            record.status = LeaveStatus.REJECTED.value
            record.reviewed_by = user.id
            record.review_notes = notes
            record.reviewed_at = datetime.now(timezone.utc)
            self._commit()
            logger.info(f"✅ Leave {record_id} rejected by user {user.id}")
            self._publish(ChangeType.LEAVE_REJECTED, record, employee.team_id)

        return record

    def delete(self, record_id: int, user: User) -> dict:
        """
        Withdraw a record. Approved records give their days back and stop
        blocking their slots. The row is kept inactive for history.
        """
        record = self._get_record(record_id)
        employee = self._get_employee(record.employee_id)
        own_pending = record.status == LeaveStatus.PENDING.value and can_manage_employee(user, employee)
        if not (own_pending or can_review_leave(user, employee)):
            raise PermissionDeniedError(f"Not allowed to delete leave record {record_id}")

        with self.locks.hold(*self._cell_keys(record), self._allocation_key(record)):
            self.db.refresh(record)
            if not record.is_active:
                raise NotFoundError("Leave record", record_id)

            if record.status == LeaveStatus.APPROVED.value:
                allocation = self.repo.get_or_create_allocation(
                    self.db, record.employee_id, record.start_date.year, for_update=True
                )
                try:
                    allocation.add_used(record.leave_type, -hours_to_days(record.hours))
                except InvariantViolation as e:
                    self.db.rollback()
                    logger.critical(f"🚨 Leave {record_id} refund refused: {e.message}")
                    raise
            record.is_active = False
            self._commit()
            logger.info(f"🗑️ Leave {record_id} deleted (was {record.status})")
            self._publish(ChangeType.LEAVE_DELETED, record, employee.team_id)

        return {"message": "Leave record deleted", "id": record_id}

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_records(self, employee_id: int, user: User, year: Optional[int] = None) -> list[LeaveRecord]:
        employee = self._get_employee(employee_id)
        if not can_view_employee(user, employee):
            raise PermissionDeniedError(f"Not allowed to view leave of employee {employee_id}")
        return self.repo.get_records_for_employee(self.db, employee_id, year)

    def get_pending(self, user: User) -> list[LeaveRecord]:
        """Review queue: everything for admins, managed teams for managers, own requests otherwise"""
        if is_admin(user):
            return self.repo.get_pending(self.db)
        if is_manager(user):
            employees = AssignmentRepository.get_employees_for_view(
                self.db, team_ids=sorted(user.managed_team_ids)
            )
            return self.repo.get_pending(self.db, [e.id for e in employees])
        if user.employee_id is None:
            return []
        return self.repo.get_pending(self.db, [user.employee_id])

    def get_overview(
        self, start: date, end: date, user: User, team_id: Optional[int] = None
    ) -> dict:
        """Who is off on each weekday of the range, by half day"""
        if start > end:
            raise ValidationError("start must not be after end")
        scope = resolve_scope(user, team_id)
        if scope.all_teams or scope.team_ids:
            employees = AssignmentRepository.get_employees_for_view(
                self.db, team_ids=scope.team_filter()
            )
        else:
            employees = AssignmentRepository.get_employees_for_view(
                self.db, employee_id=scope.employee_id
            )
        names = {e.id: e.full_name for e in employees}

        records = (
            self.repo.get_in_range(self.db, start, end, list(names), ACTIVE_STATUSES)
            if names
            else []
        )
        by_day: dict[date, list[dict]] = defaultdict(list)
        for record in records:
            for day in iter_weekdays(max(start, record.start_date), min(end, record.end_date)):
                by_day[day].append(
                    {
                        "employeeId": record.employee_id,
                        "employeeName": names[record.employee_id],
                        "recordId": record.id,
                        "leaveType": record.leave_type,
                        "status": record.status,
                        "morning": record.slot in (None, Slot.MORNING.value),
                        "afternoon": record.slot in (None, Slot.AFTERNOON.value),
                    }
                )

        return {
            "startDate": start,
            "endDate": end,
            "days": [{"date": day, "entries": by_day.get(day, [])} for day in iter_weekdays(start, end)],
        }

    # ========================================================================
    # ALLOCATIONS
    # ========================================================================

    def get_allocation(self, employee_id: int, year: int, user: User) -> LeaveAllocation:
        employee = self._get_employee(employee_id)
        if not can_view_employee(user, employee):
            raise PermissionDeniedError(f"Not allowed to view allocation of employee {employee_id}")
        with self.locks.hold(AllocationKey(employee_id, year)):
            allocation = self.repo.get_or_create_allocation(self.db, employee_id, year)
            self._commit()
        return allocation

    def update_allocation(
        self, employee_id: int, year: int, data: AllocationUpdate, user: User
    ) -> LeaveAllocation:
        """Change totals; a total may never drop below what is already used"""
        employee = self._get_employee(employee_id)
        if not can_review_leave(user, employee):
            raise PermissionDeniedError(f"Not allowed to change allocation of employee {employee_id}")

        totals = {
            LeaveType.ANNUAL.value: data.annualTotal,
            LeaveType.SICK.value: data.sickTotal,
            LeaveType.OTHER.value: data.otherTotal,
        }
        with self.locks.hold(AllocationKey(employee_id, year)):
            allocation = self.repo.get_or_create_allocation(
                self.db, employee_id, year, for_update=True
            )
            for leave_type, total in totals.items():
                if total is None:
                    continue
                used = allocation.used_for(leave_type)
                if total < used:
                    self.db.rollback()
                    raise ValidationError(
                        f"{leave_type} total {total:g} is below the {used:g} days already used",
                        leaveType=leave_type,
                        used=used,
                    )
                setattr(allocation, f"{leave_type}_total", total)

            self._commit()
        logger.info(f"✅ Allocation {year} updated for employee {employee_id}")
        return allocation
