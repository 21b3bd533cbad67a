from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from typing import Optional
from datetime import datetime
from enum import Enum


class UserRole(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CamelModel(BaseModel):
    """Accepts and emits the camelCase keys the web client uses."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class UserAuth(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserCreate(UserAuth):
    username: str = Field(min_length=3)
    password: str = Field(min_length=6)
    first_name: str = Field(min_length=2)
    last_name: str = Field(min_length=2)
    role: UserRole = UserRole.STUDENT
    grade_level: Optional[str] = None
    security_question: Optional[str] = None
    security_answer: Optional[str] = None


class UserOut(CamelModel):
    id: str
    username: str
    email: str
    first_name: str
    last_name: str
    role: str
    grade_level: Optional[str] = None
    approval_status: Optional[str] = None
    created_at: Optional[datetime] = None


class Token(CamelModel):
    message: str = "Login successful"
    token: str
    token_type: str = "bearer"
    user: UserOut


class TokenData(BaseModel):
    """Claims the auth gate hands to protected endpoints"""
    user_id: str
    role: str
    email: Optional[str] = None


class CheckUsernameRequest(CamelModel):
    username: str = ""


class VerifySecurityRequest(CamelModel):
    username: str = ""
    security_answer: str = ""


class SecurityResetRequest(CamelModel):
    username: str = ""
    new_password: str = ""
    confirm_password: str = ""
    reset_token: str = ""


class RejectRequest(CamelModel):
    reason: Optional[str] = None
