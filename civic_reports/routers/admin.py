import logging
import uuid
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from sqlmodel import Session

from civic_reports.db.db import get_session
from civic_reports.models.report import ReportCategory, ReportStatus, Severity
from civic_reports.models.user import User
from civic_reports.services import report_service
from civic_reports.services.report_queries import (
    ReportFilter,
    UserFilter,
    dashboard_stats,
    list_reports,
    list_users,
    report_detail,
    report_stats,
)
from civic_reports.utils.auth_helper import require_admin
from civic_reports.utils.errors import NotFoundError, ValidationError
from civic_reports.utils.form_validator import RejectRequest, StatusUpdateRequest, UserRoleRequest, UserStatusRequest

router = APIRouter()
logger = logging.getLogger(__name__)

RECENT_HISTORY = 5


@router.get("/dashboard/stats")
def get_dashboard_stats(
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """Statistics for the admin dashboard"""
    return dashboard_stats(session)


@router.get("/reports")
def get_all_reports(
    page: int = 1,
    limit: int = 20,
    status: Optional[ReportStatus] = None,
    category: Optional[ReportCategory] = None,
    severity: Optional[Severity] = None,
    user_id: Optional[int] = None,
    search: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = "created_at",
    order: str = "desc",
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """All reports with filters, plus status counts over the filtered set"""
    filters = ReportFilter(
        status=status,
        category=category,
        severity=severity,
        user_id=user_id,
        search=search,
        start_date=start_date,
        end_date=end_date,
    )

    result = list_reports(session, filters, page=page, limit=limit, sort_by=sort_by, order=order)

    return {
        "items": result.items,
        "pagination": result.pagination(),
        "stats": report_stats(session, filters),
    }


@router.get("/reports/{report_id}")
def get_report_details(
    report_id: uuid.UUID,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """Report with full history and upvoters"""
    report = report_service.get_report(session, report_id)
    return {"report": report_detail(session, report, include_upvoters=True)}


def recent_detail(session: Session, report) -> dict:
    data = report_detail(session, report)
    data["history"] = data["history"][-RECENT_HISTORY:]
    return data


@router.patch("/reports/{report_id}/status")
def update_report_status(
    report_id: uuid.UUID,
    payload: StatusUpdateRequest,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    report = report_service.update_status(session, report_id, payload.status, payload.notes, admin.id)

    return {
        "message": f"Report status updated to {report.status.value}",
        "report": recent_detail(session, report),
    }


@router.patch("/reports/{report_id}/reject")
def reject_report(
    report_id: uuid.UUID,
    payload: RejectRequest,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    report = report_service.reject_report(session, report_id, payload.reason, admin.id)

    return {
        "message": "Report rejected successfully",
        "report": recent_detail(session, report),
    }


@router.get("/users")
def get_all_users(
    page: int = 1,
    limit: int = 20,
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    is_verified: Optional[bool] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    order: str = "desc",
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """Users with their report counts"""
    result = list_users(
        session,
        UserFilter(role=role, is_active=is_active, is_verified=is_verified, search=search),
        page=page,
        limit=limit,
        sort_by=sort_by,
        order=order,
    )

    return {
        "items": result.items,
        "pagination": result.pagination(),
        "stats": result.stats,
    }


def managed_user(session: Session, user_id: int, admin: User, action: str) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    if user.id == admin.id:
        raise ValidationError(f"You cannot change your own {action}")

    return user


def user_view(user: User) -> dict:
    return user.model_dump(include={"id", "name", "email", "role", "is_active", "is_verified"})


@router.patch("/users/{user_id}/status")
def update_user_status(
    user_id: int,
    payload: UserStatusRequest,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """Activate or deactivate an account"""
    user = managed_user(session, user_id, admin, "status")

    user.is_active = payload.is_active
    session.add(user)
    session.commit()
    session.refresh(user)

    logger.info("User %s %s by %s", user.id, "activated" if user.is_active else "deactivated", admin.id)

    return {
        "message": f"User {'activated' if user.is_active else 'deactivated'} successfully",
        "user": user_view(user),
    }


@router.patch("/users/{user_id}/role")
def update_user_role(
    user_id: int,
    payload: UserRoleRequest,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    user = managed_user(session, user_id, admin, "role")

    user.role = payload.role
    session.add(user)
    session.commit()
    session.refresh(user)

    logger.info("User %s role set to %s by %s", user.id, user.role, admin.id)

    return {
        "message": f"User role updated to {user.role} successfully",
        "user": user_view(user),
    }


@router.delete("/users/{user_id}")
def delete_user(
    user_id: int,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """Delete a user, keeping their reports as anonymous ones"""
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    if user.id == admin.id:
        raise ValidationError("You cannot delete your own account")

    detached = report_service.detach_user_reports(session, user.id)
    session.flush()

    session.delete(user)
    session.commit()

    return {
        "ok": True,
        "deleted_user_id": user_id,
        "detached_reports": detached,
    }
