import threading
import uuid

import anyio
import pytest
from sqlmodel import select

from civic_reports.models.report import (
    MediaType,
    Report,
    ReportHistory,
    ReportMedia,
    ReportStatus,
    ReportUpvote,
    Severity,
)
from civic_reports.services import report_service
from civic_reports.services.report_service import calculate_severity
from civic_reports.utils.errors import (
    AlreadyInStateError,
    AlreadyRejectedError,
    InvalidStatusError,
    MediaUploadError,
    NoOpError,
    NotFoundError,
    ValidationError,
)
from fakes import BlockingMediaStore, FakeMediaStore


def history_of(session, report):
    return session.exec(
        select(ReportHistory)
        .where(ReportHistory.report_id == report.id)
        .order_by(ReportHistory.timestamp, ReportHistory.id)
    ).all()


# creation

@pytest.mark.anyio
async def test_create_report_persists_media_and_history(session, store, report_data, media_files, make_user):
    user = make_user()
    files = media_files(2) + media_files(1, MediaType.audio)

    report = await report_service.create_report(session, report_data, files, user.id, store)

    assert report.status == ReportStatus.reported
    assert report.user_id == user.id
    assert report.upvotes == 0
    assert report.geo_cell

    media = session.exec(
        select(ReportMedia).where(ReportMedia.report_id == report.id).order_by(ReportMedia.position)
    ).all()
    assert [m.type for m in media] == [MediaType.image, MediaType.image, MediaType.audio]
    assert media[0].thumbnail_url is not None
    assert media[2].thumbnail_url is None
    assert all(m.provider_id.startswith(str(report.id)) for m in media)

    history = history_of(session, report)
    assert len(history) == 1
    assert history[0].status == ReportStatus.reported
    assert history[0].notes == "Report created"
    assert history[0].updated_by == user.id


@pytest.mark.anyio
async def test_guest_report_has_no_owner(session, store, report_data, media_files):
    report = await report_service.create_report(session, report_data, media_files(), None, store)

    assert report.user_id is None
    assert history_of(session, report)[0].updated_by is None


@pytest.mark.anyio
async def test_create_report_requires_media(session, store, report_data):
    with pytest.raises(ValidationError):
        await report_service.create_report(session, report_data, [], None, store)

    assert store.calls == 0


@pytest.mark.anyio
async def test_create_report_rejects_too_many_images(session, store, report_data, media_files):
    with pytest.raises(ValidationError):
        await report_service.create_report(session, report_data, media_files(6), None, store)

    assert store.calls == 0


@pytest.mark.anyio
@pytest.mark.parametrize("failing", [1, 2, 3])
async def test_failed_upload_rolls_back_earlier_files(session, report_data, media_files, failing):
    store = FakeMediaStore(fail_on=failing)
    files = media_files(3)

    with pytest.raises(MediaUploadError):
        await report_service.create_report(session, report_data, files, None, store)

    # exactly the uploads before the failing one were removed
    assert len(store.deleted) == failing - 1
    assert store.stored == []
    assert session.exec(select(Report)).all() == []
    assert session.exec(select(ReportHistory)).all() == []


@pytest.mark.anyio
async def test_rollback_deletes_run_off_the_event_loop(session, report_data, media_files):
    store = FakeMediaStore(fail_on=3)

    with pytest.raises(MediaUploadError):
        await report_service.create_report(session, report_data, media_files(3), None, store)

    assert len(store.delete_threads) == 2
    assert threading.get_ident() not in store.delete_threads


@pytest.mark.anyio
async def test_unexpected_upload_error_is_wrapped(session, report_data, media_files):
    store = FakeMediaStore(fail_on=2, error=RuntimeError("connection reset"))

    with pytest.raises(MediaUploadError) as exc_info:
        await report_service.create_report(session, report_data, media_files(2), None, store)

    assert "connection reset" in exc_info.value.errors
    assert store.stored == []


@pytest.mark.anyio
async def test_failed_rollback_delete_does_not_mask_upload_error(session, report_data, media_files):
    store = FakeMediaStore(fail_on=3)
    store.fail_delete = {"placeholder"}

    original_upload = store.upload

    def upload(file, owner_context):
        media = original_upload(file, owner_context)
        store.fail_delete.add(media.provider_id)
        return media

    store.upload = upload

    with pytest.raises(MediaUploadError):
        await report_service.create_report(session, report_data, media_files(3), None, store)

    assert store.deleted == []
    assert session.exec(select(Report)).all() == []


@pytest.mark.anyio
async def test_cancelled_creation_rolls_back_uploads(session, report_data, media_files):
    store = BlockingMediaStore(block_on=2)

    async def create():
        await report_service.create_report(session, report_data, media_files(3), None, store)

    async with anyio.create_task_group() as tg:
        tg.start_soon(create)

        while not store.started.is_set():
            await anyio.sleep(0.01)

        tg.cancel_scope.cancel()
        store.release.set()

    # the upload in flight at cancellation time is removed too
    assert len(store.deleted) == 2
    assert threading.get_ident() not in store.delete_threads
    assert store.stored == []
    assert session.exec(select(Report)).all() == []


# status updates

def test_update_status_appends_one_entry(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report()

    updated = report_service.update_status(session, report.id, "acknowledged", "Crew notified", admin.id)

    assert updated.status == ReportStatus.acknowledged
    history = history_of(session, report)
    assert len(history) == 2
    assert history[-1].status == ReportStatus.acknowledged
    assert history[-1].notes == "Crew notified"
    assert history[-1].updated_by == admin.id


def test_update_status_without_notes(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report()

    report_service.update_status(session, report.id, "in_progress", None, admin.id)

    assert history_of(session, report)[-1].notes == "Status changed from reported to in_progress"


def test_update_to_same_status_fails_without_history(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report(status=ReportStatus.in_progress)

    with pytest.raises(NoOpError):
        report_service.update_status(session, report.id, "in_progress", "again", admin.id)

    assert issubclass(NoOpError, AlreadyInStateError)
    assert len(history_of(session, report)) == 1


def test_update_status_rejects_unknown_status(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report()

    with pytest.raises(InvalidStatusError):
        report_service.update_status(session, report.id, "archived", None, admin.id)

    assert issubclass(InvalidStatusError, ValidationError)


def test_update_status_missing_report(session, make_user):
    admin = make_user(role="admin")

    with pytest.raises(NotFoundError):
        report_service.update_status(session, uuid.uuid4(), "closed", None, admin.id)


def test_update_status_to_rejected_needs_reason(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report()

    with pytest.raises(ValidationError):
        report_service.update_status(session, report.id, "rejected", None, admin.id)

    updated = report_service.update_status(session, report.id, "rejected", "Duplicate of an open report", admin.id)

    assert updated.status == ReportStatus.rejected
    assert updated.rejection_reason == "Duplicate of an open report"
    assert len(history_of(session, report)) == 2


def test_leaving_rejected_clears_reason(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report(status=ReportStatus.rejected, rejection_reason="Outside city limits")

    updated = report_service.update_status(session, report.id, "acknowledged", None, admin.id)

    assert updated.rejection_reason is None


# rejection

def test_reject_report(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report()

    rejected = report_service.reject_report(session, report.id, "  Not a city issue  ", admin.id)

    assert rejected.status == ReportStatus.rejected
    assert rejected.rejection_reason == "Not a city issue"

    history = history_of(session, report)
    assert len(history) == 2
    assert history[-1].status == ReportStatus.rejected
    assert history[-1].notes == "Report rejected: Not a city issue"
    assert history[-1].updated_by == admin.id


def test_reject_reason_length_boundaries(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report()

    with pytest.raises(ValidationError):
        report_service.reject_report(session, report.id, "x" * 9, admin.id)

    with pytest.raises(ValidationError):
        report_service.reject_report(session, report.id, "x" * 501, admin.id)

    assert report_service.reject_report(session, report.id, "x" * 10, admin.id).status == ReportStatus.rejected


def test_reject_twice_leaves_report_untouched(session, make_report, make_user):
    admin = make_user(role="admin")
    report = make_report()
    report_service.reject_report(session, report.id, "Duplicate of another", admin.id)

    with pytest.raises(AlreadyRejectedError):
        report_service.reject_report(session, report.id, "Some other reason here", admin.id)

    session.refresh(report)
    assert report.rejection_reason == "Duplicate of another"
    assert len(history_of(session, report)) == 2


# upvotes

@pytest.mark.parametrize(
    "severity,upvotes,expected",
    [
        (Severity.low, 4, Severity.low),
        (Severity.low, 5, Severity.medium),
        (Severity.medium, 9, Severity.medium),
        (Severity.low, 10, Severity.high),
        (Severity.critical, 10, Severity.high),
        (Severity.high, 19, Severity.high),
        (Severity.low, 20, Severity.critical),
        (Severity.high, 0, Severity.high),
    ],
)
def test_calculate_severity(severity, upvotes, expected):
    assert calculate_severity(severity, upvotes) == expected


def test_toggle_upvote_is_self_inverse(session, make_report, make_user):
    user = make_user()
    report = make_report(severity=Severity.medium)

    first = report_service.toggle_upvote(session, report.id, user.id)
    assert first.upvotes == 1
    assert first.has_upvoted is True
    assert first.severity_upgraded is False

    second = report_service.toggle_upvote(session, report.id, user.id)
    assert second.upvotes == 0
    assert second.has_upvoted is False
    assert second.severity == Severity.medium

    assert session.exec(select(ReportUpvote)).all() == []


@pytest.mark.parametrize(
    "severity,before,crossed",
    [
        (Severity.low, 4, Severity.medium),
        (Severity.low, 9, Severity.high),
        (Severity.medium, 9, Severity.high),
        (Severity.low, 19, Severity.critical),
    ],
)
def test_toggle_across_threshold_restores_severity(session, make_report, make_user, severity, before, crossed):
    report = make_report(severity=severity)
    for user in [make_user() for _ in range(before)]:
        report_service.toggle_upvote(session, report.id, user.id)
    session.refresh(report)
    baseline = report.severity
    voter = make_user()

    on = report_service.toggle_upvote(session, report.id, voter.id)
    off = report_service.toggle_upvote(session, report.id, voter.id)

    assert (on.upvotes, on.severity) == (before + 1, crossed)
    assert (off.upvotes, off.severity) == (before, baseline)


def test_upvote_then_undo_on_low_report(session, make_report, make_user):
    report = make_report(severity=Severity.low)
    for user in [make_user() for _ in range(4)]:
        report_service.toggle_upvote(session, report.id, user.id)
    voter = make_user()

    up = report_service.toggle_upvote(session, report.id, voter.id)
    down = report_service.toggle_upvote(session, report.id, voter.id)

    assert (up.upvotes, up.severity, up.severity_upgraded) == (5, Severity.medium, True)
    assert (down.upvotes, down.severity, down.severity_upgraded) == (4, Severity.low, True)

    notes = [h.notes for h in history_of(session, report) if h.updated_by is None]
    assert notes == [
        "Severity upgraded to medium due to 5 upvotes",
        "Severity lowered to low due to 4 upvotes",
    ]


def test_upvotes_from_different_users_accumulate(session, make_report, make_user):
    report = make_report()
    users = [make_user() for _ in range(3)]

    for user in users:
        result = report_service.toggle_upvote(session, report.id, user.id)

    assert result.upvotes == 3
    session.refresh(report)
    assert report.upvotes == 3


def test_severity_escalates_at_thresholds(session, make_report, make_user):
    report = make_report(severity=Severity.low)
    users = [make_user() for _ in range(20)]

    results = [report_service.toggle_upvote(session, report.id, u.id) for u in users]

    assert results[3].severity == Severity.low
    assert results[4].severity == Severity.medium and results[4].severity_upgraded
    assert results[9].severity == Severity.high and results[9].severity_upgraded
    assert results[19].severity == Severity.critical and results[19].severity_upgraded
    assert sum(r.severity_upgraded for r in results) == 3

    system_entries = [h for h in history_of(session, report) if h.updated_by is None]
    assert [h.notes for h in system_entries] == [
        "Severity upgraded to medium due to 5 upvotes",
        "Severity upgraded to high due to 10 upvotes",
        "Severity upgraded to critical due to 20 upvotes",
    ]
    # severity entries keep the current status
    assert all(h.status == ReportStatus.reported for h in system_entries)


def test_severity_is_recomputed_when_upvotes_drop(session, make_report, make_user):
    report = make_report(severity=Severity.low)
    users = [make_user() for _ in range(20)]
    for user in users:
        report_service.toggle_upvote(session, report.id, user.id)

    result = report_service.toggle_upvote(session, report.id, users[0].id)

    assert result.upvotes == 19
    assert result.severity == Severity.high
    assert result.severity_upgraded is True


def test_upvote_missing_report(session, make_user):
    with pytest.raises(NotFoundError):
        report_service.toggle_upvote(session, uuid.uuid4(), make_user().id)


def test_detach_user_reports(session, make_report, make_user):
    user = make_user()
    mine = [make_report(user_id=user.id) for _ in range(2)]
    other = make_report()

    assert report_service.detach_user_reports(session, user.id) == 2
    session.commit()

    for report in mine + [other]:
        session.refresh(report)
        assert report.user_id is None
