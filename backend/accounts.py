"""Account lifecycle: registration, login gating, approvals, security-question reset."""
import logging
import secrets
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config import Settings
from errors import AuthorizationError, NotFoundError, ValidationError, store_boundary
from models.auth import ApprovalStatus, UserCreate, UserRole
from models.schema import User
from security import get_password_hash, normalize_security_answer, verify_password

logger = logging.getLogger(__name__)


def register_user(db: Session, data: UserCreate) -> User:
    if data.role == UserRole.ADMIN:
        raise ValidationError("Admin accounts cannot be self-registered")
    if bool(data.security_question) != bool(data.security_answer):
        raise ValidationError("Security question and answer must be provided together")

    with store_boundary(db, "registering user"):
        existing = db.query(User).filter(
            or_(User.email == data.email, User.username == data.username)
        ).first()
        if existing:
            raise ValidationError("Email or username already in use")

        user = User(
            username=data.username,
            email=data.email,
            hashed_password=get_password_hash(data.password),
            first_name=data.first_name,
            last_name=data.last_name,
            role=data.role.value,
            grade_level=data.grade_level,
            approval_status=ApprovalStatus.PENDING.value,
            security_question=data.security_question,
            security_answer_hash=(
                get_password_hash(normalize_security_answer(data.security_answer))
                if data.security_answer else None
            ),
        )
        db.add(user)
        db.commit()
        db.refresh(user)

    logger.info(f"➕ Registered {user.role} account {user.username}")
    return user


def authenticate_user(db: Session, email: str, password: str) -> User:
    """Check credentials and approval status; returns the user allowed to log in."""
    with store_boundary(db, "logging in"):
        user = db.query(User).filter(User.email == email).first()

    if not user or not verify_password(password, user.hashed_password):
        logger.info(f"❌ Failed login for {email}")
        raise ValidationError("Invalid email or password")

    if user.role != UserRole.ADMIN.value and user.approval_status != ApprovalStatus.APPROVED.value:
        account = "teacher account" if user.role == UserRole.TEACHER.value else "account"
        if user.approval_status == ApprovalStatus.REJECTED.value:
            reason = user.rejection_reason or "No reason provided."
            raise AuthorizationError(f"Your {account} application has been rejected. Reason: {reason}")
        raise AuthorizationError(
            f"Your {account} is pending approval from an administrator. Please check back later."
        )
    return user


def set_approval(db: Session, user_id: str, role: UserRole, approve: bool, reason: str = None) -> User:
    """Approve or reject a pending account of the given role."""
    with store_boundary(db, "updating approval status"):
        user = db.query(User).filter(
            User.id == user_id,
            User.role == role.value,
            User.approval_status == ApprovalStatus.PENDING.value,
        ).first()
        if not user:
            raise NotFoundError(f"{role.value.capitalize()} not found or not pending approval")

        if approve:
            user.approval_status = ApprovalStatus.APPROVED.value
            user.rejection_reason = None
        else:
            user.approval_status = ApprovalStatus.REJECTED.value
            user.rejection_reason = reason or ""
        db.commit()
        db.refresh(user)

    logger.info(f"✅ {user.username} is now {user.approval_status}")
    return user


def _user_by_username(db: Session, username: str) -> User:
    user = db.query(User).filter(User.username == username).first()
    if not user:
        raise NotFoundError("Username not found")
    return user


def check_username(db: Session, username: str) -> str:
    """Return the security question for a username (never the answer)."""
    username = (username or "").strip()
    if not username:
        raise ValidationError("Username is required")
    if len(username) < 3:
        raise ValidationError("Username must be at least 3 characters")

    with store_boundary(db, "checking username"):
        user = _user_by_username(db, username)
    if not user.security_question or not user.security_answer_hash:
        raise ValidationError("No security question found for this account. Please use email reset instead.")
    return user.security_question


def verify_security_answer(db: Session, username: str, answer: str, settings: Settings, clock) -> str:
    """Check the answer and issue a short-lived reset token."""
    username = (username or "").strip()
    if not username or not (answer or "").strip():
        raise ValidationError("Username and security answer are required")

    with store_boundary(db, "verifying security answer"):
        user = _user_by_username(db, username)
        if not user.security_question or not user.security_answer_hash:
            raise ValidationError("No security question found for this account")

        if not verify_password(normalize_security_answer(answer), user.security_answer_hash):
            logger.info(f"❌ Wrong security answer for {username}")
            raise ValidationError("Incorrect security answer. Please try again.")

        reset_token = secrets.token_hex(32)
        user.password_reset_token = reset_token
        user.password_reset_expires = clock.now() + timedelta(minutes=settings.reset_token_expire_minutes)
        db.commit()

    return reset_token


def reset_password(db: Session, username: str, new_password: str, confirm_password: str,
                   reset_token: str, settings: Settings, clock):
    if not username or not new_password or not confirm_password or not reset_token:
        raise ValidationError("All fields are required")
    if new_password != confirm_password:
        raise ValidationError("Passwords do not match")
    if len(new_password) < settings.min_password_length:
        raise ValidationError(f"Password must be at least {settings.min_password_length} characters long")

    with store_boundary(db, "resetting password"):
        user = _user_by_username(db, username.strip())

        stored = user.password_reset_token
        if not stored or not secrets.compare_digest(stored, reset_token):
            raise ValidationError("Invalid or expired reset token")
        if user.password_reset_expires and clock.now() > user.password_reset_expires:
            raise ValidationError("Reset token has expired. Please start the process again.")

        user.hashed_password = get_password_hash(new_password)
        user.password_reset_token = None
        user.password_reset_expires = None
        db.commit()

    logger.info(f"🔑 Password reset for {username}")
