import json
import os
from typing import List, Optional
from pydantic import BaseModel, Field, StrictBool, ValidationError as PydanticValidationError, field_validator

from civic_reports.models.report import MediaType, ReportCategory, ReportStatus, Severity
from civic_reports.utils.errors import InvalidStatusError, ValidationError
from civic_reports.utils.media_store import MediaFile

MB = 1024 * 1024

MAX_SIZES = {
    MediaType.image: int(os.getenv("MAX_IMAGE_SIZE", 5 * MB)),
    MediaType.video: int(os.getenv("MAX_VIDEO_SIZE", 50 * MB)),
    MediaType.audio: int(os.getenv("MAX_AUDIO_SIZE", 10 * MB)),
}

MAX_COUNTS = {
    MediaType.image: int(os.getenv("MAX_IMAGES_COUNT", 5)),
    MediaType.video: int(os.getenv("MAX_VIDEOS_COUNT", 1)),
    MediaType.audio: int(os.getenv("MAX_AUDIO_COUNT", 1)),
}

ALLOWED_TYPES = {
    MediaType.image: ["image/jpeg", "image/jpg", "image/png", "image/webp"],
    MediaType.video: ["video/mp4", "video/quicktime", "video/x-msvideo"],
    MediaType.audio: ["audio/mpeg", "audio/wav", "audio/mp4", "audio/x-m4a"],
}

REJECTION_REASON_MIN, REJECTION_REASON_MAX = 10, 500

USER_ROLES = ("user", "admin")


def error_messages(e: PydanticValidationError) -> List[str]:
    messages = []
    for err in e.errors():
        field = ".".join(str(part) for part in err["loc"])
        messages.append(f"{field}: {err['msg']}" if field else err["msg"])
    return messages


class Location(BaseModel):
    # [longitude, latitude]
    coordinates: List[float] = Field(min_length=2, max_length=2)
    name: str = Field(min_length=3, max_length=200)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("coordinates")
    @classmethod
    def check_ranges(cls, v):
        lng, lat = v
        if not -180 <= lng <= 180:
            raise ValueError("Longitude must be between -180 and 180")
        if not -90 <= lat <= 90:
            raise ValueError("Latitude must be between -90 and 90")
        return v

    @property
    def longitude(self) -> float:
        return self.coordinates[0]

    @property
    def latitude(self) -> float:
        return self.coordinates[1]


class ReportCreate(BaseModel):
    title: str = Field(min_length=5, max_length=100)
    description: str = Field(min_length=10, max_length=500)
    category: ReportCategory
    severity: Severity
    location: Location

    @field_validator("title", "description", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class StatusUpdateRequest(BaseModel):
    status: str
    notes: Optional[str] = Field(default=None, max_length=500)


class RejectRequest(BaseModel):
    reason: str


class UserStatusRequest(BaseModel):
    is_active: StrictBool


class UserRoleRequest(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def check_role(cls, v):
        if v not in USER_ROLES:
            raise ValueError('Role must be either "user" or "admin"')
        return v


def validate_create_report_form(
    title: str,
    description: str,
    category: str,
    severity: str,
    location: str,
) -> ReportCreate:
    # location arrives as a JSON string in multipart forms
    try:
        parsed_location = json.loads(location)
    except (TypeError, ValueError):
        raise ValidationError("Validation failed", errors=["location: Location must be valid JSON"])

    try:
        return ReportCreate(
            title=title,
            description=description,
            category=category,
            severity=severity,
            location=parsed_location,
        )
    except PydanticValidationError as e:
        raise ValidationError("Validation failed", errors=error_messages(e))


def validate_media_files(files: List[MediaFile]):
    if not files:
        raise ValidationError("At least one media file (image, video, or audio) is required")

    errors = []

    for media_type in MediaType:
        of_type = [f for f in files if f.type == media_type]

        if len(of_type) > MAX_COUNTS[media_type]:
            errors.append(f"At most {MAX_COUNTS[media_type]} {media_type.value} file(s) allowed")

        for index, f in enumerate(of_type, start=1):
            if f.content_type not in ALLOWED_TYPES[media_type]:
                errors.append(
                    f"Invalid {media_type.value} type '{f.content_type}'. "
                    f"Allowed: {', '.join(ALLOWED_TYPES[media_type])}"
                )
            if len(f.data) > MAX_SIZES[media_type]:
                errors.append(
                    f"{media_type.value.capitalize()} {index} exceeds {MAX_SIZES[media_type] // MB}MB limit"
                )

    if errors:
        raise ValidationError("File validation failed", errors=errors)


def validate_status(status: str) -> ReportStatus:
    try:
        return ReportStatus(status)
    except ValueError:
        valid = ", ".join(s.value for s in ReportStatus)
        raise InvalidStatusError(f"Invalid status. Must be one of: {valid}")


def validate_rejection_reason(reason: Optional[str]) -> str:
    if not reason or not isinstance(reason, str):
        raise ValidationError("Rejection reason is required")

    reason = reason.strip()

    if len(reason) < REJECTION_REASON_MIN:
        raise ValidationError(f"Rejection reason must be at least {REJECTION_REASON_MIN} characters")
    if len(reason) > REJECTION_REASON_MAX:
        raise ValidationError(f"Rejection reason cannot exceed {REJECTION_REASON_MAX} characters")

    return reason
