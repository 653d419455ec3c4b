"""Leave domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ...models import LeaveType, Slot


class LeaveCreate(BaseModel):
    """Schema for submitting a leave request"""

    employeeId: int
    startDate: date
    endDate: date
    leaveType: LeaveType
    hours: Optional[float] = None  # derived from the shape when omitted
    slot: Optional[Slot] = None  # half-day leave only
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("hours")
    @classmethod
    def validate_hours(cls, v):
        if v is not None and v <= 0:
            raise ValueError("hours must be positive")
        return v


class LeaveReview(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)
    allowOverbook: bool = False


class LeaveRecordResponse(BaseModel):
    id: int
    employeeId: int
    employeeName: Optional[str] = None
    startDate: date
    endDate: date
    leaveType: str
    hours: float
    days: float
    slot: Optional[str] = None
    isHalfDay: bool
    status: str
    notes: Optional[str] = None
    requestedBy: Optional[int] = None
    reviewedBy: Optional[int] = None
    reviewNotes: Optional[str] = None
    reviewedAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None


class LeaveSubmitResponse(BaseModel):
    record: LeaveRecordResponse
    balanceWarning: Optional[str] = None


class AllocationUpdate(BaseModel):
    """Schema for changing allocation totals (days)"""

    annualTotal: Optional[float] = Field(None, ge=0)
    sickTotal: Optional[float] = Field(None, ge=0)
    otherTotal: Optional[float] = Field(None, ge=0)


class BalanceResponse(BaseModel):
    total: float
    used: float
    remaining: float


class AllocationResponse(BaseModel):
    employeeId: int
    year: int
    annual: BalanceResponse
    sick: BalanceResponse
    other: BalanceResponse


class LeaveOverviewEntry(BaseModel):
    employeeId: int
    employeeName: str
    recordId: int
    leaveType: str
    status: str
    morning: bool
    afternoon: bool


class LeaveOverviewDay(BaseModel):
    date: date
    entries: list[LeaveOverviewEntry]


class LeaveOverviewResponse(BaseModel):
    startDate: date
    endDate: date
    days: list[LeaveOverviewDay]
