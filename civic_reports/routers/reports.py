import uuid
from dataclasses import asdict
from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlmodel import Session

from civic_reports.db.db import get_session
from civic_reports.models.report import MediaType, ReportCategory, ReportStatus
from civic_reports.models.user import User
from civic_reports.services import report_service
from civic_reports.services.geo import DEFAULT_LIMIT, DEFAULT_RADIUS, NearbyQuery, find_nearby
from civic_reports.services.report_queries import ReportFilter, list_reports, media_for, report_detail, report_summary
from civic_reports.utils.auth_helper import get_current_user_optional, get_optional_db_user, require_user
from civic_reports.utils.form_validator import validate_create_report_form
from civic_reports.utils.media_store import MediaFile, MediaStore, get_media_store


router = APIRouter()


async def read_media_files(uploads: Optional[List[UploadFile]], media_type: MediaType) -> List[MediaFile]:
    files = []
    for upload in uploads or []:
        files.append(MediaFile(
            type=media_type,
            filename=upload.filename or media_type.value,
            content_type=upload.content_type or "",
            data=await upload.read(),
        ))
    return files


@router.post("/create", status_code=201)
async def create_report(
    title: str = Form(...),
    description: str = Form(...),
    category: str = Form(...),
    severity: str = Form(...),
    location: str = Form(...),
    images: Optional[List[UploadFile]] = File(None),
    videos: Optional[List[UploadFile]] = File(None),
    audio: Optional[List[UploadFile]] = File(None),
    session: Session = Depends(get_session),
    current_user=Depends(get_current_user_optional),
    store: MediaStore = Depends(get_media_store),
):
    data = validate_create_report_form(title, description, category, severity, location)

    # user lookup, None for guest submissions
    user = get_optional_db_user(session, current_user)

    files = (
        await read_media_files(images, MediaType.image)
        + await read_media_files(videos, MediaType.video)
        + await read_media_files(audio, MediaType.audio)
    )

    report = await report_service.create_report(
        session,
        data,
        files,
        acting_user_id=user.id if user else None,
        store=store,
    )

    return {
        "report": report_summary(report, media_for(session, [report.id]).get(report.id, [])),
    }


@router.get("/my-reports")
async def get_my_reports(
    page: int = 1,
    limit: int = 20,
    status: Optional[ReportStatus] = None,
    category: Optional[ReportCategory] = None,
    sort_by: str = "created_at",
    order: str = "desc",
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    result = list_reports(
        session,
        ReportFilter(status=status, category=category, user_id=user.id),
        page=page,
        limit=limit,
        sort_by=sort_by,
        order=order,
    )

    return {
        "items": result.items,
        "pagination": result.pagination(),
    }


@router.get("/nearby")
async def get_nearby_reports(
    lat: float,
    lng: float,
    radius: int = DEFAULT_RADIUS,
    limit: int = DEFAULT_LIMIT,
    status: Optional[ReportStatus] = None,
    category: Optional[ReportCategory] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    reports = find_nearby(
        session,
        NearbyQuery(lat=lat, lng=lng, radius=radius, limit=limit, status=status, category=category),
    )

    return {
        "items": [asdict(r) for r in reports],
        "query": {
            "center": {"lat": lat, "lng": lng},
            "radius": radius,
            "count": len(reports),
        },
    }


@router.get("/{report_id}")
async def get_report(
    report_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    report = report_service.get_report(session, report_id)
    return {"report": report_detail(session, report)}


@router.patch("/{report_id}/upvote")
async def upvote_report(
    report_id: uuid.UUID,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    result = report_service.toggle_upvote(session, report_id, user.id)

    return {
        "message": "Report upvoted successfully" if result.has_upvoted else "Upvote removed successfully",
        **asdict(result),
    }
