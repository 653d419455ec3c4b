"""Leave router - FastAPI endpoints for leave requests and allocations"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from ..events.notifier import ChangeNotifier, get_change_notifier
from .schemas import (
    AllocationResponse,
    AllocationUpdate,
    LeaveCreate,
    LeaveOverviewResponse,
    LeaveRecordResponse,
    LeaveReview,
    LeaveSubmitResponse,
)
from .service import LeaveService, allocation_to_dict, record_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leave", tags=["Leave"])


def get_leave_service(
    db: Session = Depends(get_db),
    notifier: ChangeNotifier = Depends(get_change_notifier),
) -> LeaveService:
    """Dependency injection for LeaveService"""
    return LeaveService(db, notifier)


# ============================================================================
# REQUEST WORKFLOW
# ============================================================================


@router.post("/records", response_model=LeaveSubmitResponse, status_code=201)
def submit_leave(
    data: LeaveCreate,
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    """Submit a leave request; a balance shortfall comes back as a warning"""
    record, warning = service.submit(data, current_user)
    return {"record": record_to_dict(record), "balanceWarning": warning}


@router.post("/records/{record_id}/approve", response_model=LeaveRecordResponse)
def approve_leave(
    record_id: int,
    data: Optional[LeaveReview] = None,
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    data = data or LeaveReview()
    record = service.approve(record_id, current_user, data.notes, data.allowOverbook)
    return record_to_dict(record)


@router.post("/records/{record_id}/reject", response_model=LeaveRecordResponse)
def reject_leave(
    record_id: int,
    data: Optional[LeaveReview] = None,
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    data = data or LeaveReview()
    return record_to_dict(service.reject(record_id, current_user, data.notes))


@router.delete("/records/{record_id}")
def delete_leave(
    record_id: int,
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    return service.delete(record_id, current_user)


# ============================================================================
# QUERIES
# ============================================================================


@router.get("/records", response_model=list[LeaveRecordResponse])
def get_leave_records(
    employeeId: int = Query(...),
    year: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    return [record_to_dict(r) for r in service.get_records(employeeId, current_user, year)]


@router.get("/pending", response_model=list[LeaveRecordResponse])
def get_pending_leave(
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    """Pending requests the caller can see"""
    return [record_to_dict(r) for r in service.get_pending(current_user)]


@router.get("/overview", response_model=LeaveOverviewResponse)
def get_leave_overview(
    start: date = Query(...),
    end: date = Query(...),
    teamId: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    return service.get_overview(start, end, current_user, teamId)


# ============================================================================
# ALLOCATIONS
# ============================================================================


@router.get("/allocations/{employee_id}/{year}", response_model=AllocationResponse)
def get_allocation(
    employee_id: int,
    year: int,
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    return allocation_to_dict(service.get_allocation(employee_id, year, current_user))


@router.put("/allocations/{employee_id}/{year}", response_model=AllocationResponse)
def update_allocation(
    employee_id: int,
    year: int,
    data: AllocationUpdate,
    current_user: User = Depends(get_current_user),
    service: LeaveService = Depends(get_leave_service),
):
    allocation = service.update_allocation(employee_id, year, data, current_user)
    return allocation_to_dict(allocation)
