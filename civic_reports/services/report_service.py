"""
Report lifecycle: creation with media upload, admin status changes and
rejection, upvote toggling with severity escalation.

Every mutating function takes the acting user id explicitly. History rows are
only ever written through `append_history`; upvote driven entries are always
attributed to the system (`updated_by=None`).
"""

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

import anyio
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, func, select
from starlette.concurrency import run_in_threadpool

from civic_reports.models.report import (
    Report,
    ReportHistory,
    ReportMedia,
    ReportStatus,
    ReportUpvote,
    Severity,
)
from civic_reports.services.geo import SpatialIndex, default_index
from civic_reports.utils.errors import (
    AlreadyInStateError,
    AlreadyRejectedError,
    InternalError,
    MediaUploadError,
    NoOpError,
    NotFoundError,
)
from civic_reports.utils.form_validator import (
    ReportCreate,
    validate_media_files,
    validate_rejection_reason,
    validate_status,
)
from civic_reports.utils.media_store import MediaFile, MediaStore, UploadedMedia

logger = logging.getLogger(__name__)

CRITICAL_UPVOTES = 20
HIGH_UPVOTES = 10
MEDIUM_UPVOTES = 5

SEVERITY_RANK = {s: rank for rank, s in enumerate(Severity)}


@dataclass
class UpvoteResult:
    report_id: uuid.UUID
    upvotes: int
    severity: Severity
    has_upvoted: bool
    severity_upgraded: bool


def calculate_severity(initial_severity: Severity, upvotes: int) -> Severity:
    # depends only on the submitted severity and the count, so it can also move down
    if upvotes >= CRITICAL_UPVOTES:
        return Severity.critical
    if upvotes >= HIGH_UPVOTES:
        return Severity.high
    if upvotes >= MEDIUM_UPVOTES and initial_severity == Severity.low:
        return Severity.medium
    return initial_severity


def append_history(
    session: Session,
    report_id: uuid.UUID,
    status: ReportStatus,
    notes: str,
    updated_by: Optional[int],
) -> ReportHistory:
    entry = ReportHistory(
        report_id=report_id,
        status=status,
        notes=notes,
        updated_by=updated_by,
    )
    session.add(entry)
    return entry


def get_report(session: Session, report_id: uuid.UUID, for_update: bool = False) -> Report:
    query = select(Report).where(Report.id == report_id)

    # row lock where the backend supports it, ignored by sqlite
    if for_update:
        query = query.with_for_update()

    report = session.exec(query).first()
    if not report:
        raise NotFoundError("Report not found")

    return report


def rollback_media(store: MediaStore, uploaded: List[UploadedMedia]):
    if not uploaded:
        return

    logger.warning("Rolling back %d uploaded media file(s)", len(uploaded))
    results = store.delete_many(uploaded)

    if results["failed"]:
        logger.warning("Could not delete media during rollback: %s", ", ".join(results["failed"]))


async def upload_report_media(store: MediaStore, files: List[MediaFile], owner_context: str) -> List[UploadedMedia]:
    """
    Uploads every file or none of them.

    Each upload runs in a worker thread. A worker that is still running when
    the request gets cancelled is waited for, so its file lands in `uploaded`
    and is rolled back with the rest.
    """
    uploaded: List[UploadedMedia] = []

    def upload_one(file: MediaFile):
        uploaded.append(store.upload(file, owner_context))

    try:
        for file in files:
            await run_in_threadpool(upload_one, file)
    except anyio.get_cancelled_exc_class():
        logger.warning("Report %s creation cancelled during media upload", owner_context)
        with anyio.CancelScope(shield=True):
            await run_in_threadpool(rollback_media, store, uploaded)
        raise
    except MediaUploadError as e:
        await run_in_threadpool(rollback_media, store, uploaded)
        raise MediaUploadError(errors=[e.message]) from e
    except Exception as e:
        logger.exception("Unexpected media upload failure for report %s", owner_context)
        await run_in_threadpool(rollback_media, store, uploaded)
        raise MediaUploadError(errors=[str(e)]) from e

    return uploaded


async def create_report(
    session: Session,
    data: ReportCreate,
    files: List[MediaFile],
    acting_user_id: Optional[int],
    store: MediaStore,
    index: SpatialIndex = default_index,
) -> Report:
    validate_media_files(files)

    # identity is allocated up front, nothing is written until all uploads succeeded
    report_id = uuid.uuid4()
    uploaded = await upload_report_media(store, files, str(report_id))

    report = Report(
        id=report_id,
        user_id=acting_user_id,
        title=data.title,
        description=data.description,
        category=data.category,
        severity=data.severity,
        initial_severity=data.severity,
        longitude=data.location.longitude,
        latitude=data.location.latitude,
        location_name=data.location.name,
        geo_cell=index.cell_for(data.location.latitude, data.location.longitude),
        status=ReportStatus.reported,
    )

    try:
        session.add(report)
        session.flush()

        for position, media in enumerate(uploaded):
            session.add(ReportMedia(
                report_id=report.id,
                position=position,
                type=media.type,
                url=media.url,
                thumbnail_url=media.thumbnail_url,
                provider_id=media.provider_id,
            ))

        append_history(session, report.id, ReportStatus.reported, "Report created", acting_user_id)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Saving report %s failed", report_id)
        await run_in_threadpool(rollback_media, store, uploaded)
        raise InternalError("Server error while creating report") from e

    session.refresh(report)
    logger.info("Report %s created by %s with %d media file(s)", report.id, acting_user_id, len(uploaded))

    return report


def reject(session: Session, report: Report, reason: str, acting_admin_id: int) -> Report:
    report.status = ReportStatus.rejected
    report.rejection_reason = reason

    # one entry for the transition, carrying the reason
    append_history(session, report.id, ReportStatus.rejected, f"Report rejected: {reason}", acting_admin_id)

    session.add(report)
    session.commit()
    session.refresh(report)

    logger.info("Report %s rejected by %s", report.id, acting_admin_id)
    return report


def update_status(
    session: Session,
    report_id: uuid.UUID,
    new_status: str,
    notes: Optional[str],
    acting_admin_id: int,
) -> Report:
    status = validate_status(new_status)
    report = get_report(session, report_id, for_update=True)

    if report.status == status:
        raise NoOpError(f"Report is already in {status.value} status")

    # a rejected report always carries its reason, taken from the notes here
    if status == ReportStatus.rejected:
        return reject(session, report, validate_rejection_reason(notes), acting_admin_id)

    previous = report.status
    report.status = status
    report.rejection_reason = None

    notes = notes.strip() if notes and notes.strip() else f"Status changed from {previous.value} to {status.value}"
    append_history(session, report.id, status, notes, acting_admin_id)

    session.add(report)
    session.commit()
    session.refresh(report)

    logger.info("Report %s moved %s -> %s by %s", report.id, previous.value, status.value, acting_admin_id)
    return report


def reject_report(session: Session, report_id: uuid.UUID, reason: str, acting_admin_id: int) -> Report:
    reason = validate_rejection_reason(reason)
    report = get_report(session, report_id, for_update=True)

    if report.status == ReportStatus.rejected:
        raise AlreadyRejectedError()

    return reject(session, report, reason, acting_admin_id)


def toggle_upvote(session: Session, report_id: uuid.UUID, acting_user_id: int) -> UpvoteResult:
    report = get_report(session, report_id, for_update=True)

    existing = session.exec(
        select(ReportUpvote)
        .where(ReportUpvote.report_id == report.id)
        .where(ReportUpvote.user_id == acting_user_id)
    ).first()

    had_upvoted = existing is not None

    if had_upvoted:
        session.delete(existing)
    else:
        session.add(ReportUpvote(report_id=report.id, user_id=acting_user_id))

    try:
        session.flush()
    except IntegrityError as e:
        # same user toggling twice concurrently
        session.rollback()
        raise AlreadyInStateError("Upvote is already being processed") from e

    # the counter follows the upvote set, so concurrent toggles are never lost
    report.upvotes = session.exec(
        select(func.count(ReportUpvote.id)).where(ReportUpvote.report_id == report.id)
    ).one()

    previous_severity = report.severity
    new_severity = calculate_severity(report.initial_severity, report.upvotes)

    if new_severity != previous_severity:
        report.severity = new_severity
        direction = "upgraded" if SEVERITY_RANK[new_severity] > SEVERITY_RANK[previous_severity] else "lowered"
        append_history(
            session,
            report.id,
            report.status,
            f"Severity {direction} to {new_severity.value} due to {report.upvotes} upvotes",
            None,
        )

    session.add(report)
    session.commit()
    session.refresh(report)

    return UpvoteResult(
        report_id=report.id,
        upvotes=report.upvotes,
        severity=report.severity,
        has_upvoted=not had_upvoted,
        severity_upgraded=new_severity != previous_severity,
    )


def detach_user_reports(session: Session, user_id: int) -> int:
    """Keeps a deleted user's reports, as anonymous ones."""
    reports = session.exec(select(Report).where(Report.user_id == user_id)).all()

    for report in reports:
        report.user_id = None
        session.add(report)

    return len(reports)
