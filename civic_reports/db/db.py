import os
from sqlmodel import Session, SQLModel, create_engine

# register tables on SQLModel.metadata
from civic_reports.models import report, user  # noqa: F401


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./civic_reports.db")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)


def create_db_and_tables():
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
