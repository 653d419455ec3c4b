"""
Identity and authorization decisions consumed by the engine.

Token issuance lives outside this service; requests carry an opaque bearer
token whose SHA-256 hash is stored on the user row.
"""

import hashlib
import logging
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session, joinedload

from .database import get_db
from .domain.events.notifier import Scope
from .errors import PermissionDeniedError
from .models import Employee, User, UserRole

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to a user"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = (
        db.query(User)
        .options(joinedload(User.managed_teams), joinedload(User.employee))
        .filter(User.token_hash == hash_token(credentials.credentials))
        .first()
    )
    if not user:
        logger.warning("⚠️ Rejected request with unknown API token")
        raise HTTPException(
            status_code=401,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN.value


def is_manager(user: User) -> bool:
    return user.role == UserRole.MANAGER.value


def can_manage_employee(user: User, employee: Employee) -> bool:
    """Whether the user may change this employee's schedule"""
    if is_admin(user):
        return True
    if is_manager(user) and employee.team_id in user.managed_team_ids:
        return True
    return user.employee_id is not None and user.employee_id == employee.id


def can_override_capacity(user: User) -> bool:
    return is_admin(user) or is_manager(user)


def can_review_leave(user: User, employee: Employee) -> bool:
    if is_admin(user):
        return True
    return is_manager(user) and employee.team_id in user.managed_team_ids


def can_view_employee(user: User, employee: Employee) -> bool:
    if is_admin(user) or is_manager(user):
        return True
    if user.employee_id == employee.id:
        return True
    return user.employee is not None and user.employee.team_id == employee.team_id


def require_manage(user: User, employee: Employee) -> None:
    if not can_manage_employee(user, employee):
        logger.warning(f"⚠️ User {user.id} may not change schedule of employee {employee.id}")
        raise PermissionDeniedError(
            f"Not allowed to change the schedule of employee {employee.id}"
        )


def resolve_scope(user: User, team_id: Optional[int] = None) -> Scope:
    """
    Visibility for a view or change stream.

    Admins and managers see every team, or the one they ask for. Team
    members are confined to their own team whatever they ask for.
    """
    if is_admin(user) or is_manager(user):
        return Scope.everything() if team_id is None else Scope.teams(team_id)

    employee = user.employee
    if employee is None:
        raise PermissionDeniedError("User is not linked to an employee")
    if team_id is not None and team_id != employee.team_id:
        raise PermissionDeniedError(f"Not allowed to view team {team_id}")
    return Scope.own(employee.id, employee.team_id)
