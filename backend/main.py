from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Optional
import os
import logging
from contextlib import asynccontextmanager
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

# Import our models and database
from models.auth import (
    UserAuth, UserCreate, UserOut, Token, TokenData, UserRole,
    CheckUsernameRequest, VerifySecurityRequest, SecurityResetRequest, RejectRequest,
)
from models.reading import (
    BookRef, BookCreate, BookOut, ProgressUpdate, ProgressOut, ProgressList,
    ReadingSessionStarted, ReadingSessionEnded, DashboardStatsResponse, StudentRoster,
)
from models.schema import Base, Book, User
from database import engine, get_db
from config import Settings, get_settings
from errors import LMSError, NotFoundError, store_boundary
from security import ALL_ROLES, STAFF_ROLES, create_access_token, get_current_user, require_roles
from tracking import DashboardStatsAggregator, ProgressTracker, ReadingSessionManager
from uploads import save_upload
from utils import get_clock
import accounts

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Check if running in serverless environment (Vercel)
IS_SERVERLESS = os.getenv("VERCEL") == "1" or os.getenv("AWS_LAMBDA_FUNCTION_NAME") is not None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for FastAPI application startup and shutdown events"""
    settings = get_settings()
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("✅ Database tables ready")
    except Exception:
        logger.exception("❌ Could not create database tables")
        raise
    logger.info(f"📚 Completion threshold: {settings.completion_threshold}%")

    yield  # Server is running


# Initialize FastAPI app with optional lifespan
if IS_SERVERLESS:
    # In serverless, lifespan events may not work reliably
    app = FastAPI(
        title="Ilaw ng Bayan Learning Platform",
        lifespan=None,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    # No lifespan here, so the schema has to exist before the first request
    Base.metadata.create_all(bind=engine)
else:
    app = FastAPI(
        title="Ilaw ng Bayan Learning Platform",
        lifespan=lifespan
    )

# Enable CORS for frontend connection
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


# --- Error mapping ---------------------------------------------------

@app.exception_handler(LMSError)
async def lms_error_handler(request: Request, exc: LMSError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Request body is required"
    if errors:
        first = errors[0]
        field = first.get("loc", ["body"])[-1]
        if first.get("type") == "missing":
            message = f"Missing {field}"
        else:
            message = f"Invalid {field}: {first.get('msg')}"
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"❌ Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# --- Service wiring --------------------------------------------------

def get_progress_tracker(
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    settings: Settings = Depends(get_settings),
) -> ProgressTracker:
    return ProgressTracker(db, clock, settings.completion_threshold)


def get_session_manager(
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    progress: ProgressTracker = Depends(get_progress_tracker),
) -> ReadingSessionManager:
    return ReadingSessionManager(db, clock, progress)


def get_stats_aggregator(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> DashboardStatsAggregator:
    return DashboardStatsAggregator(db, settings.completion_threshold, settings.fallback_avg_reading_time)


# Test endpoint to verify connectivity
@app.get("/api/health")
def health_check():
    return {"status": "ok", "message": "Backend is running"}


# --- Authentication --------------------------------------------------

@app.post("/api/auth/register", status_code=201)
def register(user: UserCreate, db: Session = Depends(get_db)):
    """Register a new student or teacher account (pending approval)."""
    db_user = accounts.register_user(db, user)
    return {
        "success": True,
        "message": "User registered successfully. An administrator must approve the account.",
        "user": UserOut.model_validate(db_user).model_dump(by_alias=True, mode="json"),
    }


@app.post("/api/auth/login", response_model=Token)
def login(creds: UserAuth, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    """Authenticate user and return JWT access token."""
    user = accounts.authenticate_user(db, creds.email, creds.password)
    token = create_access_token({"sub": user.email, "user_id": user.id, "role": user.role}, settings)
    return Token(token=token, user=UserOut.model_validate(user))


@app.get("/api/auth/user")
def current_user_profile(current: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    with store_boundary(db, "loading profile"):
        user = db.query(User).filter(User.id == current.user_id).first()
    if not user:
        raise NotFoundError("User not found")
    return {"user": UserOut.model_validate(user).model_dump(by_alias=True, mode="json")}


@app.post("/api/auth/forgot-password/check-username")
def forgot_password_check_username(body: CheckUsernameRequest, db: Session = Depends(get_db)):
    question = accounts.check_username(db, body.username)
    return {"success": True, "securityQuestion": question, "message": "Security question found"}


@app.post("/api/auth/forgot-password/verify-security")
def forgot_password_verify_security(
    body: VerifySecurityRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock=Depends(get_clock),
):
    reset_token = accounts.verify_security_answer(db, body.username, body.security_answer, settings, clock)
    return {"success": True, "resetToken": reset_token, "message": "Security answer verified successfully"}


@app.post("/api/auth/forgot-password/reset")
def forgot_password_reset(
    body: SecurityResetRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock=Depends(get_clock),
):
    accounts.reset_password(
        db, body.username, body.new_password, body.confirm_password, body.reset_token, settings, clock
    )
    return {
        "success": True,
        "message": "Password reset successfully. You can now log in with your new password.",
    }


# --- Account approval ------------------------------------------------

def _approval_response(user: User, verb: str):
    return {
        "success": True,
        "message": f"{user.role.capitalize()} account {verb}",
        "user": UserOut.model_validate(user).model_dump(by_alias=True, mode="json"),
    }


@app.post("/api/students/{user_id}/approve")
def approve_student(user_id: str, db: Session = Depends(get_db),
                    current: TokenData = Depends(require_roles(UserRole.ADMIN.value))):
    return _approval_response(accounts.set_approval(db, user_id, UserRole.STUDENT, True), "approved")


@app.post("/api/students/{user_id}/reject")
def reject_student(user_id: str, body: RejectRequest, db: Session = Depends(get_db),
                   current: TokenData = Depends(require_roles(UserRole.ADMIN.value))):
    return _approval_response(accounts.set_approval(db, user_id, UserRole.STUDENT, False, body.reason), "rejected")


@app.post("/api/teachers/{user_id}/approve")
def approve_teacher(user_id: str, db: Session = Depends(get_db),
                    current: TokenData = Depends(require_roles(UserRole.ADMIN.value))):
    return _approval_response(accounts.set_approval(db, user_id, UserRole.TEACHER, True), "approved")


@app.post("/api/teachers/{user_id}/reject")
def reject_teacher(user_id: str, body: RejectRequest, db: Session = Depends(get_db),
                   current: TokenData = Depends(require_roles(UserRole.ADMIN.value))):
    return _approval_response(accounts.set_approval(db, user_id, UserRole.TEACHER, False, body.reason), "rejected")


@app.get("/api/students", response_model=StudentRoster)
def list_students(progress: ProgressTracker = Depends(get_progress_tracker),
                  current: TokenData = Depends(require_roles(*STAFF_ROLES))):
    """Approved students with their completed-book counts"""
    students = progress.student_roster()
    return StudentRoster(students=students, total_students=len(students))


# --- Books -----------------------------------------------------------

@app.post("/api/books", response_model=BookOut, status_code=201)
def create_book(book: BookCreate, db: Session = Depends(get_db),
                current: TokenData = Depends(require_roles(*STAFF_ROLES))):
    with store_boundary(db, "creating book"):
        db_book = Book(added_by_id=current.user_id, **book.model_dump())
        db.add(db_book)
        db.commit()
        db.refresh(db_book)
    logger.info(f"📚 {current.role} {current.user_id} added book {db_book.title}")
    return db_book


@app.get("/api/books/{book_id}", response_model=BookOut)
def get_book(book_id: str, db: Session = Depends(get_db),
             current: TokenData = Depends(require_roles(*ALL_ROLES))):
    with store_boundary(db, "loading book"):
        book = db.query(Book).filter(Book.id == book_id).first()
    if not book:
        raise NotFoundError("Book not found")
    return book


# --- Reading sessions ------------------------------------------------

@app.post("/api/reading-sessions/start", response_model=ReadingSessionStarted)
def start_reading_session(body: BookRef,
                          sessions: ReadingSessionManager = Depends(get_session_manager),
                          current: TokenData = Depends(require_roles(*ALL_ROLES))):
    session, created = sessions.start(current.user_id, body.book_id)
    message = "Reading session started successfully" if created else "Active session already exists"
    return ReadingSessionStarted(message=message, session_id=session.id, start_time=session.start_time)


@app.post("/api/reading-sessions/end", response_model=ReadingSessionEnded)
def end_reading_session(body: BookRef,
                        sessions: ReadingSessionManager = Depends(get_session_manager),
                        current: TokenData = Depends(require_roles(*ALL_ROLES))):
    summary = sessions.end(current.user_id, body.book_id)
    return ReadingSessionEnded(data=summary)


@app.get("/api/stats", response_model=DashboardStatsResponse)
def dashboard_stats(aggregator: DashboardStatsAggregator = Depends(get_stats_aggregator),
                    current: TokenData = Depends(require_roles(*ALL_ROLES))):
    return DashboardStatsResponse(stats=aggregator.compute())


# --- Progress --------------------------------------------------------

@app.get("/api/progress", response_model=ProgressList)
def list_progress(studentId: Optional[str] = None,
                  progress: ProgressTracker = Depends(get_progress_tracker),
                  current: TokenData = Depends(require_roles(*ALL_ROLES))):
    rows = progress.list_for(current, student_id=studentId)
    return ProgressList(progress=rows, total_progress=len(rows))


@app.post("/api/progress")
def save_progress(body: ProgressUpdate,
                  progress: ProgressTracker = Depends(get_progress_tracker),
                  current: TokenData = Depends(require_roles(*ALL_ROLES))):
    record = progress.record_percent(current.user_id, body.book_id, body.percent_complete)
    return {
        "success": True,
        "message": "Progress updated successfully",
        "progress": ProgressOut(
            id=record.id,
            user_id=record.user_id,
            book_id=record.book_id,
            percent_complete=record.percent_complete,
            total_reading_time=record.total_reading_time or 0,
            last_read_at=record.last_read_at,
            is_complete=progress.is_complete(record),
        ).model_dump(by_alias=True, mode="json"),
    }


@app.post("/api/books/{book_id}/complete")
def complete_book(book_id: str,
                  progress: ProgressTracker = Depends(get_progress_tracker),
                  current: TokenData = Depends(require_roles(*ALL_ROLES))):
    record = progress.mark_complete(current.user_id, book_id)
    return {
        "success": True,
        "message": "Book marked as completed successfully",
        "data": {
            "userId": record.user_id,
            "bookId": record.book_id,
            "percentComplete": record.percent_complete,
            "completedAt": record.last_read_at.isoformat() if record.last_read_at else None,
        },
    }


# --- Uploads ---------------------------------------------------------

@app.post("/api/upload")
async def upload_asset(request: Request, path: Optional[str] = None,
                       settings: Settings = Depends(get_settings),
                       current: TokenData = Depends(require_roles(*STAFF_ROLES))):
    """Store the raw request body as a content asset at ?path=..."""
    data = await request.body()
    await run_in_threadpool(save_upload, path or "", data, settings)
    return {"success": True, "filePath": path}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
