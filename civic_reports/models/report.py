from enum import Enum
from typing import Optional
import uuid
from sqlmodel import Field, SQLModel, UniqueConstraint
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


class ReportStatus(str, Enum):
    reported = "reported"
    acknowledged = "acknowledged"
    in_progress = "in_progress"
    resolved = "resolved"
    closed = "closed"
    rejected = "rejected"


class ReportCategory(str, Enum):
    sanitation = "sanitation"
    public_works = "public_works"
    transportation = "transportation"
    parks_recreation = "parks_recreation"
    water_sewer = "water_sewer"
    other = "other"


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class MediaType(str, Enum):
    image = "image"
    video = "video"
    audio = "audio"


class Report(SQLModel, table=True):
    __tablename__ = "reports"

    # Allocated before media upload so storage keys can be namespaced by it
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})

    # Reporter info, null for guests and deleted accounts
    user_id: Optional[int] = Field(default=None, foreign_key="users.id", index=True)

    # Report fields
    title: str = Field(max_length=100)
    description: str = Field(max_length=500)
    category: ReportCategory = Field(index=True)
    severity: Severity = Field(index=True)
    # as submitted, upvote escalation is computed from it
    initial_severity: Severity

    # Location, a single point
    longitude: float
    latitude: float
    location_name: str = Field(max_length=200)
    geo_cell: str = Field(index=True)

    # Status
    status: ReportStatus = Field(default=ReportStatus.reported, index=True)
    rejection_reason: Optional[str] = Field(default=None, max_length=500)

    # Kept equal to the number of rows in report_upvotes
    upvotes: int = Field(default=0, ge=0)


class ReportMedia(SQLModel, table=True):
    __tablename__ = "report_media"

    id: Optional[int] = Field(default=None, primary_key=True)
    report_id: uuid.UUID = Field(foreign_key="reports.id", index=True, ondelete="CASCADE")
    position: int

    type: MediaType
    url: str
    thumbnail_url: Optional[str] = None
    provider_id: str


class ReportUpvote(SQLModel, table=True):
    __tablename__ = "report_upvotes"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)

    report_id: uuid.UUID = Field(foreign_key="reports.id", index=True, ondelete="CASCADE")
    user_id: int = Field(index=True)

    __table_args__ = (
        # A user can upvote the same report only once
        UniqueConstraint(
            "report_id",
            "user_id",
            name="uq_report_user_upvote"
        ),
    )


class ReportHistory(SQLModel, table=True):
    __tablename__ = "report_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    report_id: uuid.UUID = Field(foreign_key="reports.id", index=True, ondelete="CASCADE")

    status: ReportStatus
    notes: str
    updated_by: Optional[int] = Field(default=None)  # None for system updates
    timestamp: datetime = Field(default_factory=utcnow)
