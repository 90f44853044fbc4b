from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from sqlalchemy.orm import Session

from . import database, models, schemas
from .config import settings

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="login", auto_error=False)


class TokenError(Exception):
    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _encode(user: models.User, token_type: str, expires_delta: timedelta) -> str:
    claims = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role.value,
        "type": token_type,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def issue_tokens(user: models.User) -> dict:
    return {
        "access_token": _encode(user, ACCESS_TOKEN, timedelta(minutes=settings.access_token_expire_minutes)),
        "refresh_token": _encode(user, REFRESH_TOKEN, timedelta(minutes=settings.refresh_token_expire_minutes)),
        "token_type": "bearer",
        "role": user.role,
        "user_id": user.id,
    }


def decode_token(token: str, expected_type: str) -> schemas.TokenData:
    """Validate signature, expiry and token type; raises TokenError with a client-facing message."""
    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        raise TokenError(f"{expected_type.capitalize()} token expired.")
    except JWTError:
        raise TokenError(f"Invalid {expected_type} token.")
    if claims.get("type") != expected_type or not claims.get("sub") or not claims.get("role"):
        raise TokenError(f"Invalid {expected_type} token.")
    try:
        return schemas.TokenData(email=claims.get("email"), user_id=int(claims["sub"]), role=claims["role"])
    except ValueError:
        raise TokenError(f"Invalid {expected_type} token.")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def user_from_refresh_token(db: Session, token: str) -> models.User:
    try:
        token_data = decode_token(token, REFRESH_TOKEN)
    except TokenError as exc:
        raise _unauthorized(exc.detail)
    user = db.get(models.User, token_data.user_id)
    if user is None or not user.is_active:
        raise _unauthorized("Invalid refresh token.")
    return user


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(database.get_db)):
    if not token:
        raise _unauthorized("Could not validate credentials")
    try:
        token_data = decode_token(token, ACCESS_TOKEN)
    except TokenError as exc:
        raise _unauthorized(exc.detail)
    user = db.get(models.User, token_data.user_id)
    if user is None:
        raise _unauthorized("Could not validate credentials")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated.")
    return user


def get_optional_user(token: str = Depends(oauth2_scheme), db: Session = Depends(database.get_db)):
    if not token:
        return None
    try:
        return get_current_user(token, db)
    except HTTPException:
        return None


def is_admin(user: Optional[models.User]) -> bool:
    if user is None:
        return False
    if user.role == models.UserRole.admin:
        return True
    return bool(user.email) and user.email.strip().lower() in settings.admin_emails


def require_admin(user: models.User = Depends(get_current_user)):
    if not is_admin(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required.")
    return user


def ensure_owner_or_admin(user: models.User, owner_id: int, action: str) -> None:
    if owner_id != user.id and not is_admin(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Not authorized to {action}.")
