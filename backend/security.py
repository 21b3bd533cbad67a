# --- Authentication helpers (JWT + password hashing) -----------------
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from config import Settings, get_settings
from errors import AuthenticationError, AuthorizationError
from models.auth import TokenData, UserRole

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

ALL_ROLES = (UserRole.STUDENT.value, UserRole.TEACHER.value, UserRole.ADMIN.value)
STAFF_ROLES = (UserRole.TEACHER.value, UserRole.ADMIN.value)


def _to_bcrypt_bytes(secret: str) -> bytes:
    # bcrypt ignores anything past 72 bytes and newer releases reject it outright
    return secret.encode('utf-8')[:72]


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return bcrypt.checkpw(_to_bcrypt_bytes(plain_password), hashed_password.encode('utf-8'))


def get_password_hash(password: str) -> str:
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(_to_bcrypt_bytes(password), salt)
    return hashed.decode('utf-8')


def normalize_security_answer(answer: str) -> str:
    return answer.strip().lower()


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


def decode_access_token(token: str, settings: Settings) -> TokenData:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        raise AuthenticationError("Token has expired. Please log in again.")
    except JWTError:
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("user_id")
    role = payload.get("role")
    if not user_id or not role:
        raise AuthenticationError("Invalid token format.")
    return TokenData(user_id=str(user_id), role=role, email=payload.get("sub"))


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> TokenData:
    """Auth gate: resolve the bearer token into {user_id, role}."""
    if credentials is None or not credentials.credentials:
        logger.info("❌ No token provided")
        raise AuthenticationError()
    current = decode_access_token(credentials.credentials, settings)
    logger.debug(f"✅ Auth successful for user {current.user_id}")
    return current


def require_roles(*roles: str):
    """Dependency factory rejecting callers whose role is not listed"""
    allowed = roles or ALL_ROLES

    def checker(current: TokenData = Depends(get_current_user)) -> TokenData:
        if current.role not in allowed:
            logger.info(f"❌ Access denied for role: {current.role}")
            raise AuthorizationError(f"Access denied. Required role: {' or '.join(allowed)}")
        return current

    return checker
