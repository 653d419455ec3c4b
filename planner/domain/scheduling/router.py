"""Scheduling router - FastAPI endpoints for the calendar, capacity and assignments"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user, resolve_scope
from ...database import get_db
from ...errors import NotFoundError, PermissionDeniedError, ValidationError
from ...models import Slot, User
from ..events.notifier import ChangeNotifier, get_change_notifier
from .calendar_service import CalendarViewAssembler
from .grid import ViewType
from .schemas import (
    AssignmentCreate,
    AssignmentMove,
    AssignmentReorder,
    AssignmentResponse,
    AssignmentUpdate,
    BulkCreateRequest,
    BulkCreateResponse,
    BulkUpdateRequest,
    BulkUpdateResponse,
    CalendarViewResponse,
    CapacityResponse,
)
from .service import AssignmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/schedule", tags=["Schedule"])


def get_assignment_service(
    db: Session = Depends(get_db),
    notifier: ChangeNotifier = Depends(get_change_notifier),
) -> AssignmentService:
    """Dependency injection for AssignmentService"""
    return AssignmentService(db, notifier)


def get_calendar_assembler(db: Session = Depends(get_db)) -> CalendarViewAssembler:
    return CalendarViewAssembler(db)


def _check_range(start: date, end: date) -> None:
    if start > end:
        raise ValidationError("start must not be after end")


def _check_employee_visible(service: AssignmentService, employee_id: int, user: User) -> None:
    employee_ids = service.visible_employee_ids(user)
    if not service.repo.get_employee(service.db, employee_id):
        raise NotFoundError("Employee", employee_id)
    if employee_ids is not None and employee_id not in employee_ids:
        raise PermissionDeniedError(f"Not allowed to view employee {employee_id}")


# ============================================================================
# CALENDAR VIEW
# ============================================================================


@router.get("/calendar", response_model=CalendarViewResponse)
def get_calendar(
    anchor: date = Query(...),
    view: ViewType = Query(ViewType.WEEK),
    teamId: Optional[int] = Query(None),
    employeeId: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    assembler: CalendarViewAssembler = Depends(get_calendar_assembler),
):
    """Calendar grid for the caller's visible teams"""
    scope = resolve_scope(current_user, teamId)
    return assembler.get_view(anchor, view, scope, employee_id=employeeId)


# ============================================================================
# CAPACITY
# ============================================================================


@router.get("/capacity", response_model=CapacityResponse)
def get_capacity(
    employeeId: int = Query(...),
    date: date = Query(...),
    slot: Slot = Query(...),
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    _check_employee_visible(service, employeeId, current_user)
    return service.ledger.capacity_of(employeeId, date, slot.value).to_dict()


@router.get("/capacity/employee/{employee_id}", response_model=list[CapacityResponse])
def get_capacity_for_range(
    employee_id: int,
    start: date = Query(...),
    end: date = Query(...),
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    """Capacity of every weekday slot of one employee in a date range"""
    _check_range(start, end)
    _check_employee_visible(service, employee_id, current_user)
    return [s.to_dict() for s in service.ledger.capacity_for_range(employee_id, start, end)]


@router.get("/availability/{employee_id}")
def get_availability(
    employee_id: int,
    start: date = Query(...),
    end: date = Query(...),
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    """Matrix of {date: {morning, afternoon}} flags, true where another item fits"""
    _check_range(start, end)
    _check_employee_visible(service, employee_id, current_user)
    return service.ledger.availability_matrix(employee_id, start, end)


# ============================================================================
# ASSIGNMENT QUERIES
# ============================================================================


@router.get("/assignments", response_model=list[AssignmentResponse])
def list_assignments(
    start: date = Query(...),
    end: date = Query(...),
    employeeId: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    assignments = service.list_assignments(start, end, current_user, employeeId)
    return service.to_views(assignments)


@router.get("/overdue", response_model=list[AssignmentResponse])
def get_overdue(
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    return service.to_views(service.get_overdue(current_user))


@router.get("/deadlines", response_model=list[AssignmentResponse])
def get_deadlines(
    days: int = Query(7, ge=0, le=365),
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    """Unfinished assignments due within the next N days"""
    return service.to_views(service.get_upcoming_deadlines(current_user, days))


@router.get("/assignments/{assignment_id}", response_model=AssignmentResponse)
def get_assignment(
    assignment_id: int,
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    return service.to_view(service.get_assignment(assignment_id, current_user))


# ============================================================================
# ASSIGNMENT WRITES
# ============================================================================


@router.post("/assignments", response_model=AssignmentResponse, status_code=201)
def create_assignment(
    data: AssignmentCreate,
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    assignment = service.create_assignment(data, current_user)
    return service.to_view(service.get_assignment(assignment.id, current_user))


@router.post("/assignments/bulk", response_model=BulkCreateResponse)
def bulk_create_assignments(
    data: BulkCreateRequest,
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    """Place many assignments; failures are reported per item index"""
    result = service.bulk_create(data.assignments, current_user, data.validateConflicts)
    return {"created": service.to_views(result.created), "errors": result.errors}


@router.post("/assignments/{assignment_id}/move", response_model=AssignmentResponse)
def move_assignment(
    assignment_id: int,
    data: AssignmentMove,
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    assignment = service.move_assignment(assignment_id, data, current_user)
    return service.to_view(service.get_assignment(assignment.id, current_user))


@router.post("/assignments/{assignment_id}/reorder", response_model=AssignmentResponse)
def reorder_assignment(
    assignment_id: int,
    data: AssignmentReorder,
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    assignment = service.reorder_assignment(assignment_id, data.targetRank, current_user)
    return service.to_view(service.get_assignment(assignment.id, current_user))


@router.patch("/assignments/bulk", response_model=BulkUpdateResponse)
def bulk_update_assignments(
    data: BulkUpdateRequest,
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    """Apply one field set to many assignments; failures are reported per id"""
    result = service.bulk_update(data.assignmentIds, data.fields, current_user)
    return {"updated": service.to_views(result.updated), "errors": result.errors}


@router.patch("/assignments/{assignment_id}", response_model=AssignmentResponse)
def update_assignment(
    assignment_id: int,
    data: AssignmentUpdate,
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    assignment = service.update_assignment(assignment_id, data, current_user)
    return service.to_view(service.get_assignment(assignment.id, current_user))


@router.delete("/assignments/{assignment_id}")
def delete_assignment(
    assignment_id: int,
    current_user: User = Depends(get_current_user),
    service: AssignmentService = Depends(get_assignment_service),
):
    return service.delete_assignment(assignment_id, current_user)
