"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ...models import Slot, TaskPriority, TaskStatus
from .grid import ViewType


def _check_hours(v):
    if v is not None and not 1 <= v <= 4:
        raise ValueError("hours must be between 1 and 4")
    return v


class AssignmentFields(BaseModel):
    """Payload fields shared by create, update and bulk update"""

    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    dueDate: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=500)
    hours: Optional[float] = None

    @field_validator("hours")
    @classmethod
    def validate_hours(cls, v):
        return _check_hours(v)


class AssignmentCreate(AssignmentFields):
    """Schema for placing a new assignment"""

    employeeId: int
    date: date
    slot: Slot
    taskId: Optional[int] = None

    # Inline task, used when taskId is not given
    projectId: Optional[int] = None
    taskTypeId: Optional[int] = None
    title: Optional[str] = Field(None, max_length=255)

    allowOverbook: bool = False

    @model_validator(mode="after")
    def check_task_reference(self):
        if self.taskId is None and not (self.projectId and self.taskTypeId and self.title):
            raise ValueError("Provide taskId, or projectId, taskTypeId and title")
        return self


class AssignmentUpdate(AssignmentFields):
    """Schema for payload-only changes"""

    taskId: Optional[int] = None


class AssignmentMove(BaseModel):
    employeeId: int
    date: date
    slot: Slot
    allowOverbook: bool = False


class AssignmentReorder(BaseModel):
    targetRank: int = Field(..., ge=0)


class BulkUpdateRequest(BaseModel):
    assignmentIds: list[int]
    fields: AssignmentUpdate


class BulkCreateRequest(BaseModel):
    assignments: list[AssignmentCreate]
    validateConflicts: bool = False  # refuse the whole batch if any item would not fit


class AssignmentResponse(BaseModel):
    """Schema for an assignment as placed in its slot"""

    id: int
    taskId: int
    employeeId: int
    date: date
    slot: str
    slotOrder: int
    columnStart: int
    columnSpan: int
    row: int
    rowSpan: int
    priority: str
    status: str
    dueDate: Optional[date] = None
    notes: Optional[str] = None
    hours: float
    explicitHours: Optional[float] = None
    taskTitle: Optional[str] = None
    taskTypeName: Optional[str] = None
    projectName: Optional[str] = None
    projectCode: Optional[str] = None
    clientName: Optional[str] = None
    clientCode: Optional[str] = None
    clientColor: Optional[str] = None
    employeeName: Optional[str] = None
    updatedAt: Optional[datetime] = None


class BulkUpdateError(BaseModel):
    assignmentId: int
    error: str
    detail: str


class BulkUpdateResponse(BaseModel):
    updated: list[AssignmentResponse]
    errors: list[BulkUpdateError]


class BulkCreateError(BaseModel):
    index: int
    error: str
    detail: str


class BulkCreateResponse(BaseModel):
    created: list[AssignmentResponse]
    errors: list[BulkCreateError]


class CapacityResponse(BaseModel):
    employeeId: int
    date: date
    slot: str
    count: int
    assignmentCount: int
    leaveBlocked: bool
    available: int
    overbooked: bool


# ============================================================================
# CALENDAR VIEW
# ============================================================================


class LeaveMarker(BaseModel):
    recordId: int
    leaveType: str
    status: str
    hours: float
    isHalfDay: bool


class SlotView(BaseModel):
    slot: str
    tasks: list[AssignmentResponse]
    taskCount: int
    availableCapacity: int
    isOverbooked: bool
    leave: Optional[LeaveMarker] = None


class DayAssignments(BaseModel):
    date: date
    morningSlot: SlotView
    afternoonSlot: SlotView
    totalAssignments: int
    hasConflicts: bool


class EmployeeRow(BaseModel):
    employeeId: int
    employeeName: str
    role: Optional[str] = None
    teamId: Optional[int] = None
    teamName: Optional[str] = None
    dayAssignments: list[DayAssignments]


class GridDayResponse(BaseModel):
    date: date
    isToday: bool
    displayDate: str
    dayName: str


class CalendarViewResponse(BaseModel):
    view: ViewType
    anchor: date
    startDate: date
    endDate: date
    days: list[GridDayResponse]
    employees: list[EmployeeRow]
