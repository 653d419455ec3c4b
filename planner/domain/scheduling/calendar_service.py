"""
Calendar view assembler.

Composes the grid, the active assignments, leave and capacity into the
per-employee, per-day, per-slot structure the calendar renders. Read-only:
a render may be slightly stale, every mutation re-validates on its own.
"""

import logging
import time
from collections import defaultdict
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from ...models import LeaveRecord, LeaveStatus, Slot
from ..events.notifier import Scope
from ..leave.days import record_cells
from ..leave.repository import LeaveRepository
from .capacity import CapacityLedger, CapacitySnapshot
from .grid import ViewType, expand_grid
from .locks import SlotKey
from .repository import AssignmentRepository
from .service import assignment_view, slot_key

logger = logging.getLogger(__name__)


def leave_marker(record: LeaveRecord) -> dict:
    return {
        "recordId": record.id,
        "leaveType": record.leave_type,
        "status": record.status,
        "hours": record.hours,
        "isHalfDay": record.is_half_day,
    }


class CalendarViewAssembler:
    def __init__(self, db: Session):
        self.db = db
        self.assignments = AssignmentRepository()
        self.leave = LeaveRepository()
        self.ledger = CapacityLedger(db)

    def _leave_by_cell(self, employee_ids: list[int], start: date, end: date) -> dict[SlotKey, LeaveRecord]:
        """One leave record per cell; approved wins over pending"""
        records = self.leave.get_in_range(
            self.db,
            start,
            end,
            employee_ids,
            statuses=[LeaveStatus.APPROVED.value, LeaveStatus.PENDING.value],
        )
        cells: dict[SlotKey, LeaveRecord] = {}
        for record in records:
            for day, slot in record_cells(record):
                key = SlotKey(record.employee_id, day, slot)
                current = cells.get(key)
                if current is None or (
                    current.status != LeaveStatus.APPROVED.value
                    and record.status == LeaveStatus.APPROVED.value
                ):
                    cells[key] = record
        return cells

    @staticmethod
    def _slot_view(
        slot: str,
        items: list,
        snapshot: CapacitySnapshot,
        leave: Optional[LeaveRecord],
    ) -> dict:
        count = len(items)
        return {
            "slot": slot,
            "tasks": [assignment_view(item, count) for item in items],
            "taskCount": count,
            "availableCapacity": snapshot.available,
            "isOverbooked": snapshot.overbooked,
            "leave": leave_marker(leave) if leave else None,
        }

    def get_view(
        self,
        anchor: date,
        view: ViewType,
        scope: Scope,
        employee_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> dict:
        started = time.time()
        view = ViewType(view)
        days = expand_grid(anchor, view, today)
        start, end = days[0].date, days[-1].date

        if scope.all_teams or scope.team_ids:
            employees = self.assignments.get_employees_for_view(
                self.db, team_ids=scope.team_filter(), employee_id=employee_id
            )
        elif employee_id is None or employee_id == scope.employee_id:
            employees = self.assignments.get_employees_for_view(
                self.db, employee_id=scope.employee_id
            )
        else:
            employees = []
        employee_ids = [e.id for e in employees]

        by_slot: dict[SlotKey, list] = defaultdict(list)
        if employee_ids:
            for assignment in self.assignments.get_in_range(self.db, start, end, employee_ids):
                by_slot[slot_key(assignment)].append(assignment)
        leave_cells = self._leave_by_cell(employee_ids, start, end) if employee_ids else {}
        snapshots = self.ledger.snapshots_for_range(employee_ids, start, end) if employee_ids else {}

        rows = []
        for employee in employees:
            day_rows = []
            for grid_day in days:
                slots = {}
                for slot in Slot:
                    key = SlotKey(employee.id, grid_day.date, slot.value)
                    slots[slot] = self._slot_view(
                        slot.value, by_slot.get(key, []), snapshots[key], leave_cells.get(key)
                    )
                morning, afternoon = slots[Slot.MORNING], slots[Slot.AFTERNOON]
                day_rows.append(
                    {
                        "date": grid_day.date,
                        "morningSlot": morning,
                        "afternoonSlot": afternoon,
                        "totalAssignments": morning["taskCount"] + afternoon["taskCount"],
                        "hasConflicts": morning["isOverbooked"] or afternoon["isOverbooked"],
                    }
                )
            rows.append(
                {
                    "employeeId": employee.id,
                    "employeeName": employee.full_name,
                    "role": employee.position,
                    "teamId": employee.team_id,
                    "teamName": employee.team.name if employee.team else None,
                    "dayAssignments": day_rows,
                }
            )

        elapsed = time.time() - started
        if elapsed > 1.0:
            logger.warning(f"🐌 {view.value} view for {len(rows)} employees took {elapsed:.2f}s")

        return {
            "view": view,
            "anchor": anchor,
            "startDate": start,
            "endDate": end,
            "days": [
                {
                    "date": d.date,
                    "isToday": d.is_today,
                    "displayDate": d.display_date,
                    "dayName": d.day_name,
                }
                for d in days
            ],
            "employees": rows,
        }
