from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

from civic_reports.models.report import utcnow


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    # `sub` claim of the bearer tokens
    public_id: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    name: str = Field(max_length=100)
    email: str = Field(index=True, unique=True)
    image: Optional[str] = None
    provider: str = Field(default="local")  # local or google

    role: str = Field(default="user", index=True)  # user or admin
    is_active: bool = Field(default=True)
    is_verified: bool = Field(default=False)
