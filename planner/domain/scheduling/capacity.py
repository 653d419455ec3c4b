"""
Slot capacity ledger.

Read-through view over active assignments and approved leave. Nothing here
is stored; every answer is recomputed from the two stores so it can never
drift from them.
"""

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...config import SLOT_CAPACITY
from ...models import LeaveStatus, Slot
from ..leave.days import record_cells
from ..leave.repository import LeaveRepository
from .grid import iter_weekdays
from .locks import SlotKey
from .repository import AssignmentRepository


@dataclass(frozen=True)
class CapacitySnapshot:
    employee_id: int
    date: date
    slot: str
    assignment_count: int
    leave_blocked: bool
    capacity: int = SLOT_CAPACITY

    @property
    def count(self) -> int:
        # Leave takes exactly one unit regardless of how many records cover the cell
        return self.assignment_count + (1 if self.leave_blocked else 0)

    @property
    def available(self) -> int:
        return self.capacity - self.count

    @property
    def overbooked(self) -> bool:
        return self.count > self.capacity

    def to_dict(self) -> dict:
        return {
            "employeeId": self.employee_id,
            "date": self.date.isoformat(),
            "slot": self.slot,
            "count": self.count,
            "assignmentCount": self.assignment_count,
            "leaveBlocked": self.leave_blocked,
            "available": self.available,
            "overbooked": self.overbooked,
        }


class CapacityLedger:
    """Capacity queries consulted by every capacity-affecting mutation"""

    def __init__(self, db: Session, capacity: int = SLOT_CAPACITY):
        self.db = db
        self.capacity = capacity
        self.assignments = AssignmentRepository()
        self.leave = LeaveRepository()

    def capacity_of(
        self,
        employee_id: int,
        day: date,
        slot: str,
        exclude_assignment_id: Optional[int] = None,
    ) -> CapacitySnapshot:
        key = SlotKey(employee_id, day, Slot(slot).value)
        assignment_count = self.assignments.count_slot(self.db, key, exclude_assignment_id)
        leave_count = self.leave.count_approved_covering(self.db, employee_id, day, key.slot)
        return CapacitySnapshot(
            employee_id=employee_id,
            date=day,
            slot=key.slot,
            assignment_count=assignment_count,
            leave_blocked=leave_count > 0,
            capacity=self.capacity,
        )

    def can_place(
        self,
        employee_id: int,
        day: date,
        slot: str,
        allow_overbook: bool = False,
        exclude_assignment_id: Optional[int] = None,
    ) -> bool:
        if allow_overbook:
            return True
        snapshot = self.capacity_of(employee_id, day, slot, exclude_assignment_id)
        return snapshot.count < self.capacity

    def snapshots_for_range(
        self, employee_ids: Iterable[int], start: date, end: date
    ) -> dict[SlotKey, CapacitySnapshot]:
        """
        Snapshots for every weekday cell of several employees in two queries,
        used by the view assembler and the range endpoints.
        """
        employee_ids = list(employee_ids)
        counts = self.assignments.count_by_slot(self.db, employee_ids, start, end)

        blocked: set[SlotKey] = set()
        approved = self.leave.get_in_range(
            self.db, start, end, employee_ids, statuses=[LeaveStatus.APPROVED.value]
        )
        for record in approved:
            for day, slot in record_cells(record):
                blocked.add(SlotKey(record.employee_id, day, slot))

        snapshots = {}
        for employee_id in employee_ids:
            for day in iter_weekdays(start, end):
                for slot in Slot:
                    key = SlotKey(employee_id, day, slot.value)
                    snapshots[key] = CapacitySnapshot(
                        employee_id=employee_id,
                        date=day,
                        slot=slot.value,
                        assignment_count=counts.get(key, 0),
                        leave_blocked=key in blocked,
                        capacity=self.capacity,
                    )
        return snapshots

    def capacity_for_range(self, employee_id: int, start: date, end: date) -> list[CapacitySnapshot]:
        snapshots = self.snapshots_for_range([employee_id], start, end)
        return sorted(snapshots.values(), key=lambda s: (s.date, s.slot != Slot.MORNING.value))

    def availability_matrix(self, employee_id: int, start: date, end: date) -> dict[str, dict[str, bool]]:
        """{date: {morning: bool, afternoon: bool}}, True where another item still fits"""
        matrix: dict[str, dict[str, bool]] = {}
        for snapshot in self.capacity_for_range(employee_id, start, end):
            matrix.setdefault(snapshot.date.isoformat(), {})[snapshot.slot] = (
                snapshot.available > 0
            )
        return matrix
