"""Password hashing, bearer tokens and the role guards used by the routers.

Tokens carry the user's email as ``sub`` plus ``uid`` and ``role``. The user
row is reloaded on every request, so deactivating a user or forcing a
password change takes effect immediately.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlmodel import Session, select

from .config import settings
from .db import get_session
from .models import User


logger = logging.getLogger(__name__)

ROLES = ("admin", "teacher", "student")
# Roles que cualquiera puede registrar sin sesión de administrador
SELF_SIGNUP_ROLES = frozenset({"student"})

_hasher = CryptContext(schemes=["bcrypt"], deprecated="auto")
# auto_error=False: la ausencia de token se resuelve en cada dependencia
bearer_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def check_password(password: str, hashed: str) -> bool:
    return _hasher.verify(password, hashed)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="No autenticado",
        headers={"WWW-Authenticate": "Bearer"},
    )


def issue_token(user: User, ttl_minutes: Optional[int] = None) -> str:
    ttl = settings.access_token_expire_minutes if ttl_minutes is None else ttl_minutes
    now = datetime.now(UTC)
    claims: Dict[str, Any] = {"sub": user.email, "uid": user.id, "role": user.role, "iat": int(now.timestamp())}
    # Sin expiración cuando el TTL es 0 o no está configurado
    if ttl:
        claims["exp"] = int((now + timedelta(minutes=ttl)).timestamp())
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def read_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as exc:
        logger.debug("Token rechazado: %s", exc)
        raise _unauthorized()
    if not claims.get("sub"):
        raise _unauthorized()
    return claims


def user_from_token(token: str, session: Session) -> User:
    claims = read_token(token)
    user = session.exec(select(User).where(User.email == claims["sub"])).first()
    if not user or not user.is_active:
        raise _unauthorized()
    return user


def get_current_user(token: Optional[str] = Depends(bearer_scheme), session=Depends(get_session)) -> User:
    if not token:
        raise _unauthorized()
    return user_from_token(token, session)


def get_optional_user(token: Optional[str] = Depends(bearer_scheme), session=Depends(get_session)) -> Optional[User]:
    """Anonymous callers get ``None``; a bad token is still rejected."""
    if not token:
        return None
    return user_from_token(token, session)


def ensure_can_register(role: str, actor: Optional[User]) -> None:
    if role not in ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Rol inválido")
    if role in SELF_SIGNUP_ROLES:
        return
    if actor is None or actor.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Solo un administrador puede registrar usuarios con rol {role}",
        )


def require_roles(*roles: str):
    def _guard(user: User = Depends(get_current_user)) -> User:
        if user.must_change_password:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Debe cambiar su contraseña")
        if user.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permisos insuficientes")
        return user

    return _guard
