import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlmodel import Session, func, or_, select

from civic_reports.models.report import (
    Report,
    ReportCategory,
    ReportHistory,
    ReportMedia,
    ReportStatus,
    ReportUpvote,
    Severity,
)
from civic_reports.models.user import User
from civic_reports.utils.errors import ValidationError

MAX_PAGE_SIZE = 100

SORTABLE_FIELDS = {
    "created_at": Report.created_at,
    "updated_at": Report.updated_at,
    "title": Report.title,
    "category": Report.category,
    "severity": Report.severity,
    "status": Report.status,
    "upvotes": Report.upvotes,
}

USER_SORTABLE_FIELDS = {
    "created_at": User.created_at,
    "name": User.name,
    "email": User.email,
    "role": User.role,
}


@dataclass
class ReportFilter:
    status: Optional[ReportStatus] = None
    category: Optional[ReportCategory] = None
    severity: Optional[Severity] = None
    user_id: Optional[int] = None
    search: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class UserFilter:
    role: Optional[str] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    search: Optional[str] = None


@dataclass
class Page:
    items: List[dict]
    page: int
    limit: int
    total: int
    stats: Dict = field(default_factory=dict)

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit)

    def pagination(self):
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "pages": self.pages,
        }


def like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def apply_filters(query, filters: ReportFilter):
    if filters.status:
        query = query.where(Report.status == filters.status)

    if filters.category:
        query = query.where(Report.category == filters.category)

    if filters.severity:
        query = query.where(Report.severity == filters.severity)

    if filters.user_id is not None:
        query = query.where(Report.user_id == filters.user_id)

    # case-insensitive substring over title and description
    if filters.search:
        pattern = like_pattern(filters.search)
        query = query.where(
            or_(
                Report.title.ilike(pattern, escape="\\"),
                Report.description.ilike(pattern, escape="\\"),
            )
        )

    if filters.start_date:
        query = query.where(Report.created_at >= filters.start_date)

    if filters.end_date:
        query = query.where(Report.created_at <= filters.end_date)

    return query


def check_paging(page: int, limit: int):
    errors = []
    if page < 1:
        errors.append("page must be at least 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        errors.append(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if errors:
        raise ValidationError("Invalid pagination parameters", errors=errors)


def sort_column(fields: dict, sort_by: str, order: str):
    column = fields.get(sort_by)
    if column is None:
        raise ValidationError(f"Cannot sort by '{sort_by}'. Allowed: {', '.join(fields)}")

    return column.asc() if order == "asc" else column.desc()


def media_for(session: Session, report_ids: List[uuid.UUID]) -> Dict[uuid.UUID, List[dict]]:
    media_map: Dict[uuid.UUID, List[dict]] = {}
    if not report_ids:
        return media_map

    rows = session.exec(
        select(ReportMedia)
        .where(ReportMedia.report_id.in_(report_ids))
        .order_by(ReportMedia.report_id, ReportMedia.position)
    ).all()

    for media in rows:
        media_map.setdefault(media.report_id, []).append({
            "type": media.type,
            "url": media.url,
            "thumbnail_url": media.thumbnail_url,
        })

    return media_map


def report_summary(report: Report, media: List[dict]) -> dict:
    data = report.model_dump(exclude={"longitude", "latitude", "location_name", "geo_cell"})
    data["location"] = {
        "coordinates": [report.longitude, report.latitude],
        "name": report.location_name,
    }
    data["media"] = media
    return data


def report_detail(session: Session, report: Report, include_upvoters: bool = False) -> dict:
    """Full report with media and history, optionally with the upvoter ids."""
    data = report_summary(report, media_for(session, [report.id]).get(report.id, []))

    history = session.exec(
        select(ReportHistory)
        .where(ReportHistory.report_id == report.id)
        .order_by(ReportHistory.timestamp, ReportHistory.id)
    ).all()

    data["history"] = [entry.model_dump(exclude={"id", "report_id"}) for entry in history]

    if include_upvoters:
        data["upvoted_by"] = list(session.exec(
            select(ReportUpvote.user_id)
            .where(ReportUpvote.report_id == report.id)
            .order_by(ReportUpvote.created_at)
        ).all())

    return data


def list_reports(
    session: Session,
    filters: ReportFilter,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    order: str = "desc",
) -> Page:
    check_paging(page, limit)
    ordering = sort_column(SORTABLE_FIELDS, sort_by, order)

    total = session.exec(apply_filters(select(func.count(Report.id)), filters)).one()

    reports = session.exec(
        apply_filters(select(Report), filters)
        .order_by(ordering, Report.id)
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    media = media_for(session, [r.id for r in reports])

    return Page(
        items=[report_summary(r, media.get(r.id, [])) for r in reports],
        page=page,
        limit=limit,
        total=total,
    )


def report_stats(session: Session, filters: ReportFilter) -> dict:
    """Counts per status and average upvotes over the filtered reports."""
    counts = dict(session.exec(
        apply_filters(select(Report.status, func.count(Report.id)), filters)
        .group_by(Report.status)
    ).all())

    avg_upvotes = session.exec(apply_filters(select(func.avg(Report.upvotes)), filters)).one()

    stats = {"total": sum(counts.values())}
    for status in ReportStatus:
        stats[status.value] = counts.get(status, 0)
    stats["avg_upvotes"] = round(float(avg_upvotes or 0), 2)

    return stats


def grouped_counts(session: Session, column, key: str) -> List[dict]:
    rows = session.exec(
        select(column, func.count(Report.id))
        .group_by(column)
        .order_by(func.count(Report.id).desc())
    ).all()

    return [{key: value, "count": count} for value, count in rows]


def user_stats(session: Session, filters: Optional[UserFilter] = None) -> dict:
    query = apply_user_filters(select(User), filters or UserFilter())
    users = query.subquery()

    def count(*conditions):
        q = select(func.count()).select_from(users)
        for condition in conditions:
            q = q.where(condition)
        return session.exec(q).one()

    return {
        "total": count(),
        "active": count(users.c.is_active.is_(True)),
        "verified": count(users.c.is_verified.is_(True)),
        "admins": count(users.c.role == "admin"),
        "regular": count(users.c.role == "user"),
    }


def dashboard_stats(session: Session, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_ago = now - timedelta(days=7)

    reports = report_stats(session, ReportFilter())
    reports["total_upvotes"] = session.exec(select(func.coalesce(func.sum(Report.upvotes), 0))).one()

    last_7_days = session.exec(
        select(func.count(Report.id)).where(Report.created_at >= week_ago)
    ).one()

    today = session.exec(
        select(func.count(Report.id)).where(Report.created_at >= today_start)
    ).one()

    return {
        "reports": reports,
        "categories": grouped_counts(session, Report.category, "category"),
        "severity": grouped_counts(session, Report.severity, "severity"),
        "users": user_stats(session),
        "recent_activity": {
            "last_7_days": last_7_days,
            "today": today,
        },
    }


def apply_user_filters(query, filters: UserFilter):
    if filters.role:
        query = query.where(User.role == filters.role)

    if filters.is_active is not None:
        query = query.where(User.is_active == filters.is_active)

    if filters.is_verified is not None:
        query = query.where(User.is_verified == filters.is_verified)

    if filters.search:
        pattern = like_pattern(filters.search)
        query = query.where(
            or_(
                User.name.ilike(pattern, escape="\\"),
                User.email.ilike(pattern, escape="\\"),
            )
        )

    return query


def list_users(
    session: Session,
    filters: UserFilter,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    order: str = "desc",
) -> Page:
    check_paging(page, limit)
    ordering = sort_column(USER_SORTABLE_FIELDS, sort_by, order)

    total = session.exec(apply_user_filters(select(func.count(User.id)), filters)).one()

    users = session.exec(
        apply_user_filters(select(User), filters)
        .order_by(ordering, User.id)
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    report_counts = {}
    if users:
        report_counts = dict(session.exec(
            select(Report.user_id, func.count(Report.id))
            .where(Report.user_id.in_([u.id for u in users]))
            .group_by(Report.user_id)
        ).all())

    items = []
    for user in users:
        data = user.model_dump()
        data["report_count"] = report_counts.get(user.id, 0)
        items.append(data)

    return Page(
        items=items,
        page=page,
        limit=limit,
        total=total,
        stats=user_stats(session, filters),
    )
