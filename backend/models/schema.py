from sqlalchemy import Column, String, Integer, DateTime, Float, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime
import uuid


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    role = Column(String, nullable=False, default="student")  # student, teacher, admin
    grade_level = Column(String, nullable=True)  # K, 1-6
    approval_status = Column(String, nullable=False, default="pending")  # pending, approved, rejected
    rejection_reason = Column(String, nullable=True)

    # Security-question password reset
    security_question = Column(String, nullable=True)
    security_answer_hash = Column(String, nullable=True)
    password_reset_token = Column(String, nullable=True)
    password_reset_expires = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    progress = relationship("Progress", back_populates="user")
    reading_sessions = relationship("ReadingSession", back_populates="user")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Book(Base):
    __tablename__ = "books"

    id = Column(String, primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    subject = Column(String, nullable=True)
    book_type = Column(String, nullable=False, default="storybook")  # storybook, educational
    grade = Column(String, nullable=True)
    cover_image = Column(String, nullable=True)
    added_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    progress = relationship("Progress", back_populates="book")
    reading_sessions = relationship("ReadingSession", back_populates="book")


class Progress(Base):
    __tablename__ = "progress"
    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_progress_user_book"),
    )

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    book_id = Column(String, ForeignKey("books.id"), nullable=False)
    percent_complete = Column(Float, nullable=False, default=0)  # 0-100%
    total_reading_time = Column(Integer, nullable=False, default=0)  # seconds
    last_read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="progress")
    book = relationship("Book", back_populates="progress")


class ReadingSession(Base):
    __tablename__ = "reading_sessions"
    __table_args__ = (
        # At most one open session per (user, book)
        Index(
            "uq_reading_sessions_open",
            "user_id",
            "book_id",
            unique=True,
            postgresql_where=text("end_time IS NULL"),
            sqlite_where=text("end_time IS NULL"),
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(String, ForeignKey("books.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    total_seconds = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="reading_sessions")
    book = relationship("Book", back_populates="reading_sessions")
