"""Leave repository - Database operations for leave records and allocations"""

from datetime import date
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from ...config import DEFAULT_ANNUAL_LEAVE_DAYS, DEFAULT_OTHER_LEAVE_DAYS, DEFAULT_SICK_DAYS
from ...models import Employee, LeaveAllocation, LeaveRecord, LeaveStatus


class LeaveRepository:
    """Repository for leave database operations"""

    @staticmethod
    def get_record(db: Session, record_id: int) -> Optional[LeaveRecord]:
        """Get an active leave record by ID"""
        return (
            db.query(LeaveRecord)
            .filter(LeaveRecord.id == record_id, LeaveRecord.is_active.is_(True))
            .first()
        )

    @staticmethod
    def get_records_for_employee(
        db: Session, employee_id: int, year: Optional[int] = None
    ) -> list[LeaveRecord]:
        query = db.query(LeaveRecord).filter(
            LeaveRecord.employee_id == employee_id, LeaveRecord.is_active.is_(True)
        )
        if year:
            query = query.filter(
                LeaveRecord.start_date >= date(year, 1, 1),
                LeaveRecord.start_date <= date(year, 12, 31),
            )
        return query.order_by(LeaveRecord.start_date.desc()).all()

    @staticmethod
    def get_pending(db: Session, employee_ids: Optional[Iterable[int]] = None) -> list[LeaveRecord]:
        query = (
            db.query(LeaveRecord)
            .options(joinedload(LeaveRecord.employee))
            .filter(
                LeaveRecord.status == LeaveStatus.PENDING.value,
                LeaveRecord.is_active.is_(True),
            )
        )
        if employee_ids is not None:
            query = query.filter(LeaveRecord.employee_id.in_(list(employee_ids)))
        return query.order_by(LeaveRecord.created_at, LeaveRecord.id).all()

    @staticmethod
    def get_in_range(
        db: Session,
        start: date,
        end: date,
        employee_ids: Optional[Iterable[int]] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> list[LeaveRecord]:
        """Active leave records overlapping [start, end]"""
        query = db.query(LeaveRecord).filter(
            LeaveRecord.is_active.is_(True),
            LeaveRecord.start_date <= end,
            LeaveRecord.end_date >= start,
        )
        if employee_ids is not None:
            query = query.filter(LeaveRecord.employee_id.in_(list(employee_ids)))
        if statuses is not None:
            query = query.filter(LeaveRecord.status.in_(list(statuses)))
        return query.order_by(LeaveRecord.start_date, LeaveRecord.id).all()

    @staticmethod
    def count_approved_covering(db: Session, employee_id: int, day: date, slot: str) -> int:
        """Approved leave records blocking the (employee, day, slot) cell"""
        return (
            db.query(LeaveRecord)
            .filter(
                LeaveRecord.employee_id == employee_id,
                LeaveRecord.is_active.is_(True),
                LeaveRecord.status == LeaveStatus.APPROVED.value,
                LeaveRecord.start_date <= day,
                LeaveRecord.end_date >= day,
                or_(LeaveRecord.slot.is_(None), LeaveRecord.slot == slot),
            )
            .count()
        )

    @staticmethod
    def create_record(db: Session, **record_data) -> LeaveRecord:
        record = LeaveRecord(**record_data)
        db.add(record)
        db.flush()
        return record

    # Allocation Methods
    @staticmethod
    def get_allocation(
        db: Session, employee_id: int, year: int, for_update: bool = False
    ) -> Optional[LeaveAllocation]:
        """Allocation row for a year; `for_update` re-reads it and locks the row"""
        query = db.query(LeaveAllocation).filter(
            LeaveAllocation.employee_id == employee_id, LeaveAllocation.year == year
        )
        if for_update:
            query = query.populate_existing().with_for_update()
        return query.first()

    @staticmethod
    def get_or_create_allocation(
        db: Session, employee_id: int, year: int, for_update: bool = False
    ) -> LeaveAllocation:
        """Get the allocation for a year, creating it with configured defaults"""
        allocation = LeaveRepository.get_allocation(db, employee_id, year, for_update)
        if allocation is None:
            allocation = LeaveAllocation(
                employee_id=employee_id,
                year=year,
                annual_total=DEFAULT_ANNUAL_LEAVE_DAYS,
                annual_used=0.0,
                sick_total=DEFAULT_SICK_DAYS,
                sick_used=0.0,
                other_total=DEFAULT_OTHER_LEAVE_DAYS,
                other_used=0.0,
            )
            db.add(allocation)
            db.flush()
        return allocation

    @staticmethod
    def get_employee(db: Session, employee_id: int) -> Optional[Employee]:
        return db.query(Employee).filter(Employee.id == employee_id).first()
