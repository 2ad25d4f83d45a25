from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import bcrypt
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from . import database, errors, models, schemas
from .config import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

# bcrypt only looks at the first 72 bytes of a password
_BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(plain_password), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    hashed = bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=settings.bcrypt_rounds))
    return hashed.decode("utf-8")


def create_access_token(user: models.User, expires_delta: Optional[timedelta] = None) -> str:
    role = user.role.value if isinstance(user.role, models.UserRole) else str(user.role)
    to_encode = {"sub": str(user.id), "username": user.username, "role": role, "type": "access"}
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> schemas.TokenData:
    """Check signature and expiry and return the identity claims."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        raise errors.TokenExpired()
    except JWTError:
        raise errors.InvalidToken()
    if payload.get("type") != "access":
        raise errors.InvalidToken()
    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role is None:
        raise errors.InvalidToken()
    try:
        return schemas.TokenData(user_id=int(user_id), username=payload.get("username"), role=role)
    except ValueError:
        raise errors.InvalidToken()


@dataclass(frozen=True)
class Principal:
    """An authenticated caller.

    `role` comes from the token claim, not from the stored user row, so a
    role change only applies once the user logs in again.
    """

    user: models.User
    role: models.UserRole

    @property
    def id(self) -> int:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.role == models.UserRole.admin


def verify(token: str, db: Session) -> Principal:
    token_data = decode_token(token)
    user = db.query(models.User).filter(models.User.id == token_data.user_id).first()
    if user is None:
        raise errors.UserNotFound()
    return Principal(user=user, role=token_data.role)


def authenticate_user(db: Session, email: str, password: str) -> models.User:
    user = db.query(models.User).filter(models.User.email == email).first()
    if not user or not verify_password(password, user.password_hash):
        raise errors.InvalidCredentials()
    return user


def get_current_principal(token: str = Depends(oauth2_scheme), db: Session = Depends(database.get_db)) -> Principal:
    if not token:
        raise errors.InvalidToken("Access token required")
    return verify(token, db)


def get_current_user(principal: Principal = Depends(get_current_principal)) -> models.User:
    return principal.user


def require_role(*allowed_roles: models.UserRole):
    allowed = tuple(allowed_roles)

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            required = ", ".join(role.value for role in allowed)
            raise errors.Forbidden(f"Access denied. Required roles: {required}")
        return principal

    return dependency


require_student = require_role(models.UserRole.student, models.UserRole.organizer, models.UserRole.admin)
require_organizer = require_role(models.UserRole.organizer, models.UserRole.admin)
require_admin = require_role(models.UserRole.admin)


def require_ownership_or_admin(model, owner_column: str = "created_by", id_param: str = "id"):
    """Allow admins through; otherwise the caller must own the row named by the path id."""
    column = getattr(model, owner_column)

    def dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: Session = Depends(database.get_db),
    ) -> Principal:
        if principal.is_admin:
            return principal
        try:
            resource_id = int(request.path_params.get(id_param, ""))
        except ValueError:
            raise errors.NotFound()
        row = db.query(model.id, column).filter(model.id == resource_id).first()
        if row is None:
            raise errors.NotFound()
        if row[1] != principal.id:
            raise errors.Forbidden("Access denied - you can only access your own resources")
        return principal

    return dependency
