import os
from typing import Optional
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from sqlmodel import Session, select

from civic_reports.db.db import get_session
from civic_reports.models.user import User
from civic_reports.utils.errors import AuthorizationError

ALGORITHM = "HS256"


def jwt_secret():
    return os.getenv("JWT_SECRET")


def decode_token(token: str) -> dict:
    secret = jwt_secret()
    # no secret configured, no token is valid
    if not secret:
        raise JWTError("JWT_SECRET is not set")

    claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    if not claims.get("sub"):
        raise JWTError("Token has no subject")

    return claims


bearer_scheme_optional = HTTPBearer(auto_error=False)


def get_current_user_optional(token: HTTPAuthorizationCredentials = Depends(bearer_scheme_optional)):
    if not token:
        return None

    try:
        return decode_token(token.credentials)
    except JWTError:
        return None


bearer_scheme_required = HTTPBearer(auto_error=True)


def get_current_user_required(token: HTTPAuthorizationCredentials = Depends(bearer_scheme_required)):
    try:
        return decode_token(token.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def get_db_user(session: Session, current_user) -> User:
    user = session.exec(
        select(User).where(User.public_id == current_user.get("sub"))
    ).first()

    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    if not user.is_active:
        raise AuthorizationError("Account is deactivated")

    return user


def get_optional_db_user(session: Session, current_user) -> Optional[User]:
    # guests may submit reports
    if not current_user:
        return None

    return get_db_user(session, current_user)


def require_user(
    session: Session = Depends(get_session),
    current_user=Depends(get_current_user_required),
) -> User:
    return get_db_user(session, current_user)


def require_admin(user: User = Depends(require_user)) -> User:
    if user.role != "admin":
        raise AuthorizationError("Admin access required")
    return user
