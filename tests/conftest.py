import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from civic_reports.db.db import get_session
from civic_reports.main import app
from civic_reports.models.report import MediaType, Report, ReportCategory, ReportHistory, Severity
from civic_reports.models.user import User
from civic_reports.services.geo import default_index
from civic_reports.utils.auth_helper import ALGORITHM, jwt_secret
from civic_reports.utils.form_validator import ReportCreate
from civic_reports.utils.media_store import MediaFile, get_media_store
from fakes import FakeMediaStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def jwt_secret_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-secret")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def store():
    return FakeMediaStore()


@pytest.fixture
def client(session, store):
    app.dependency_overrides[get_session] = lambda: session
    app.dependency_overrides[get_media_store] = lambda: store

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def make_user(session):
    def make(role="user", **kwargs):
        public_id = kwargs.pop("public_id", uuid.uuid4().hex)
        user = User(
            public_id=public_id,
            name=kwargs.pop("name", f"user-{public_id[:6]}"),
            email=kwargs.pop("email", f"{public_id}@example.com"),
            role=role,
            is_verified=kwargs.pop("is_verified", True),
            **kwargs,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return make


@pytest.fixture
def auth_headers():
    def headers(user):
        token = jwt.encode(
            {
                "sub": user.public_id,
                "role": user.role,
                "exp": datetime.now(timezone.utc) + timedelta(hours=1),
            },
            jwt_secret(),
            algorithm=ALGORITHM,
        )
        return {"Authorization": f"Bearer {token}"}

    return headers


@pytest.fixture
def make_report(session):
    def make(lat=40.7128, lng=-74.0060, **kwargs):
        severity = kwargs.pop("severity", Severity.low)
        report = Report(
            title=kwargs.pop("title", "Overflowing trash bin"),
            description=kwargs.pop("description", "The bin at the corner has not been emptied in a week."),
            category=kwargs.pop("category", ReportCategory.sanitation),
            severity=severity,
            initial_severity=kwargs.pop("initial_severity", severity),
            latitude=lat,
            longitude=lng,
            location_name=kwargs.pop("location_name", "Main St & 1st Ave"),
            geo_cell=default_index.cell_for(lat, lng),
            **kwargs,
        )
        session.add(report)
        session.add(ReportHistory(
            report_id=report.id,
            status=report.status,
            notes="Report created",
            updated_by=report.user_id,
        ))
        session.commit()
        session.refresh(report)
        return report

    return make


@pytest.fixture
def report_data():
    return ReportCreate(
        title="Broken streetlight",
        description="The streetlight outside number 12 has been out for days.",
        category=ReportCategory.public_works,
        severity=Severity.medium,
        location={"coordinates": [-74.0060, 40.7128], "name": "12 Elm Street"},
    )


@pytest.fixture
def media_files():
    def files(count=1, media_type=MediaType.image):
        content_types = {
            MediaType.image: "image/jpeg",
            MediaType.video: "video/mp4",
            MediaType.audio: "audio/mpeg",
        }
        return [
            MediaFile(
                type=media_type,
                filename=f"{media_type.value}-{i}",
                content_type=content_types[media_type],
                data=b"\x00" * 16,
            )
            for i in range(1, count + 1)
        ]

    return files
