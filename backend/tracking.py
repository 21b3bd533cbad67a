"""Reading-session lifecycle, progress accumulation and dashboard statistics.

Everything that touches a (user, book) pair concurrently relies on the store
for atomicity: a partial unique index keeps one open session per pair, a
conditional UPDATE closes a session exactly once, and reading time is added
with a single increment statement. Closing a session and crediting its time
to progress commit together.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import distinct, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError, store_boundary
from models.auth import ApprovalStatus, TokenData, UserRole
from models.reading import DashboardStats, ProgressOut, ReadingSessionSummary, StudentSummary
from models.schema import Book, Progress, ReadingSession, User
from utils import elapsed_seconds, format_duration, percentage, round_half_up

logger = logging.getLogger(__name__)


def _require_book(db: Session, book_id: str) -> Book:
    book = db.query(Book).filter(Book.id == book_id).first()
    if not book:
        raise NotFoundError("Book not found")
    return book


class ProgressTracker:
    """Per-(user, book) progress: reading time, percent complete, completion."""

    def __init__(self, db: Session, clock, completion_threshold: float):
        self.db = db
        self.clock = clock
        self.completion_threshold = completion_threshold

    def is_complete(self, progress: Progress) -> bool:
        return (progress.percent_complete or 0) >= self.completion_threshold

    def _increment(self, user_id: str, book_id: str, seconds: int, now: datetime) -> int:
        return (
            self.db.query(Progress)
            .filter(Progress.user_id == user_id, Progress.book_id == book_id)
            .update(
                {
                    Progress.total_reading_time: func.coalesce(Progress.total_reading_time, 0) + seconds,
                    Progress.last_read_at: now,
                },
                synchronize_session=False,
            )
        )

    def _set_percent(self, user_id: str, book_id: str, percent: float, now: datetime) -> int:
        return (
            self.db.query(Progress)
            .filter(Progress.user_id == user_id, Progress.book_id == book_id)
            .update(
                {Progress.percent_complete: percent, Progress.last_read_at: now},
                synchronize_session=False,
            )
        )

    def _insert(self, **values) -> bool:
        """Insert a progress row inside a savepoint; False if another writer got there first."""
        try:
            with self.db.begin_nested():
                self.db.add(Progress(**values))
        except IntegrityError:
            return False
        return True

    def accumulate(self, user_id: str, book_id: str, seconds: int, now: Optional[datetime] = None):
        """Add a closed session's duration to the pair's progress.

        Does not commit: the caller owns the transaction.
        """
        now = now or self.clock.now()
        if self._increment(user_id, book_id, seconds, now):
            logger.info(f"🔄 Added {format_duration(seconds)} of reading time for user {user_id}, book {book_id}")
            return

        created = self._insert(
            user_id=user_id,
            book_id=book_id,
            percent_complete=0,  # owned by the page-progress pathway
            total_reading_time=seconds,
            last_read_at=now,
        )
        if created:
            logger.info(f"➕ Created progress record for user {user_id}, book {book_id} with {format_duration(seconds)}")
        elif not self._increment(user_id, book_id, seconds, now):
            # Insert collided yet no row matched the increment; the caller rolls back
            logger.warning(f"⚠️ Could not credit {seconds}s to user {user_id}, book {book_id}")
            raise ConflictError("Could not record reading time, please retry")

    def record_percent(self, user_id: str, book_id: str, percent: float) -> Progress:
        """Store the percent-complete value for a pair, leaving reading time alone."""
        with store_boundary(self.db, "saving progress"):
            _require_book(self.db, book_id)
            now = self.clock.now()
            if not self._set_percent(user_id, book_id, percent, now):
                created = self._insert(
                    user_id=user_id,
                    book_id=book_id,
                    percent_complete=percent,
                    total_reading_time=0,
                    last_read_at=now,
                )
                if not created:
                    self._set_percent(user_id, book_id, percent, now)
            self.db.commit()

            progress = (
                self.db.query(Progress)
                .filter(Progress.user_id == user_id, Progress.book_id == book_id)
                .one()
            )
        logger.info(f"📊 Progress for user {user_id}, book {book_id} is now {percent}%")
        return progress

    def mark_complete(self, user_id: str, book_id: str) -> Progress:
        return self.record_percent(user_id, book_id, 100)

    def _to_out(self, progress: Progress, user: Optional[User], book: Optional[Book]) -> ProgressOut:
        return ProgressOut(
            id=progress.id,
            user_id=progress.user_id,
            book_id=progress.book_id,
            percent_complete=progress.percent_complete or 0,
            total_reading_time=progress.total_reading_time or 0,
            last_read_at=progress.last_read_at,
            book_title=book.title if book else None,
            user_name=user.full_name if user else None,
            is_complete=self.is_complete(progress),
        )

    def list_for(self, viewer: TokenData, student_id: Optional[str] = None) -> List[ProgressOut]:
        """Progress rows visible to the viewer, most recently read first.

        Students see their own rows, teachers see approved students, admins see
        everyone or a single student when student_id is given.
        """
        with store_boundary(self.db, "listing progress"):
            query = (
                self.db.query(Progress, User, Book)
                .outerjoin(User, Progress.user_id == User.id)
                .outerjoin(Book, Progress.book_id == Book.id)
            )
            if viewer.role == UserRole.ADMIN.value:
                if student_id:
                    query = query.filter(Progress.user_id == student_id)
            elif viewer.role == UserRole.TEACHER.value:
                query = query.filter(
                    User.role == UserRole.STUDENT.value,
                    User.approval_status == ApprovalStatus.APPROVED.value,
                )
            else:
                query = query.filter(Progress.user_id == viewer.user_id)

            rows = query.order_by(Progress.last_read_at.desc()).all()
            return [self._to_out(progress, user, book) for progress, user, book in rows]

    def student_roster(self) -> List[StudentSummary]:
        """Approved students with how many books each has completed."""
        with store_boundary(self.db, "building student roster"):
            students = (
                self.db.query(User)
                .filter(
                    User.role == UserRole.STUDENT.value,
                    User.approval_status == ApprovalStatus.APPROVED.value,
                )
                .order_by(User.last_name.asc())
                .all()
            )
            if not students:
                return []

            by_student = {}
            rows = self.db.query(Progress).filter(Progress.user_id.in_([s.id for s in students])).all()
            for progress in rows:
                by_student.setdefault(progress.user_id, []).append(progress)

            roster = []
            for student in students:
                records = by_student.get(student.id, [])
                roster.append(StudentSummary(
                    id=student.id,
                    username=student.username,
                    first_name=student.first_name,
                    last_name=student.last_name,
                    grade_level=student.grade_level,
                    books_completed=sum(1 for p in records if self.is_complete(p)),
                    total_reading_time=sum(p.total_reading_time or 0 for p in records),
                ))
            return roster


class ReadingSessionManager:
    """Opens and closes timed reading sessions for a (user, book) pair."""

    def __init__(self, db: Session, clock, progress: ProgressTracker):
        self.db = db
        self.clock = clock
        self.progress = progress

    def _find_open_session(self, user_id: str, book_id: str) -> Optional[ReadingSession]:
        return (
            self.db.query(ReadingSession)
            .filter(
                ReadingSession.user_id == user_id,
                ReadingSession.book_id == book_id,
                ReadingSession.end_time.is_(None),
            )
            .order_by(ReadingSession.start_time.asc())
            .first()
        )

    def start(self, user_id: str, book_id: str) -> Tuple[ReadingSession, bool]:
        """Open a session, or return the one already open. The flag says whether it is new."""
        with store_boundary(self.db, "starting reading session"):
            _require_book(self.db, book_id)

            existing = self._find_open_session(user_id, book_id)
            if existing:
                logger.info(f"⚠️ Active session already exists: {existing.id}")
                return existing, False

            session = ReadingSession(user_id=user_id, book_id=book_id, start_time=self.clock.now())
            self.db.add(session)
            try:
                self.db.commit()
            except IntegrityError:
                # A concurrent start() opened the session first
                self.db.rollback()
                existing = self._find_open_session(user_id, book_id)
                if existing:
                    return existing, False
                raise ConflictError("Could not start reading session, please retry")

            self.db.refresh(session)
            logger.info(f"📖 Started reading session {session.id} for user {user_id}, book {book_id}")
            return session, True

    def end(self, user_id: str, book_id: str) -> ReadingSessionSummary:
        """Close the open session and credit its duration to progress."""
        with store_boundary(self.db, "ending reading session"):
            session = self._find_open_session(user_id, book_id)
            if session is None:
                logger.info(f"⚠️ No active session for user {user_id}, book {book_id}")
                raise NotFoundError("No active reading session found")

            session_id = session.id
            start_time = session.start_time
            end_time = self.clock.now()
            total_seconds = elapsed_seconds(start_time, end_time)

            closed = (
                self.db.query(ReadingSession)
                .filter(ReadingSession.id == session_id, ReadingSession.end_time.is_(None))
                .update(
                    {ReadingSession.end_time: end_time, ReadingSession.total_seconds: total_seconds},
                    synchronize_session=False,
                )
            )
            if not closed:
                # Another end() closed it between our lookup and the update
                logger.info(f"⚠️ Session {session_id} was already closed")
                raise NotFoundError("No active reading session found")

            self.progress.accumulate(user_id, book_id, total_seconds, end_time)
            self.db.commit()

        logger.info(f"⏱️ Session {session_id} lasted {format_duration(total_seconds)}")
        return ReadingSessionSummary(
            session_id=session_id,
            start_time=start_time,
            end_time=end_time,
            total_seconds=total_seconds,
            user_id=user_id,
            book_id=book_id,
        )


class DashboardStatsAggregator:
    """Read-only cross-user reading statistics."""

    def __init__(self, db: Session, completion_threshold: float, fallback_avg_reading_time: int):
        self.db = db
        self.completion_threshold = completion_threshold
        self.fallback_avg_reading_time = fallback_avg_reading_time

    def compute(self) -> DashboardStats:
        with store_boundary(self.db, "computing dashboard stats"):
            closed = ReadingSession.end_time.isnot(None)
            total_sessions = self.db.query(func.count(ReadingSession.id)).filter(closed).scalar() or 0

            timed_count, timed_seconds = (
                self.db.query(
                    func.count(ReadingSession.id),
                    func.coalesce(func.sum(ReadingSession.total_seconds), 0),
                )
                .filter(closed, ReadingSession.total_seconds > 0)
                .one()
            )
            timed_seconds = int(timed_seconds or 0)
            if timed_count:
                avg_reading_time = round_half_up(timed_seconds / timed_count)
            else:
                avg_reading_time = self.fallback_avg_reading_time

            complete = Progress.percent_complete >= self.completion_threshold
            progress_rows = self.db.query(func.count(Progress.id)).scalar() or 0
            completed_rows = self.db.query(func.count(Progress.id)).filter(complete).scalar() or 0
            readers = self.db.query(func.count(distinct(Progress.user_id))).scalar() or 0
            finishers = self.db.query(func.count(distinct(Progress.user_id))).filter(complete).scalar() or 0

        stats = DashboardStats(
            avg_reading_time=avg_reading_time,
            completion_rate=percentage(finishers, readers),
            book_completion_rate=percentage(completed_rows, progress_rows),
            total_sessions=total_sessions,
            total_reading_seconds=timed_seconds,
            total_reading_minutes=timed_seconds,
        )
        logger.info(
            f"📈 Completion Rate: {stats.completion_rate}% ({finishers}/{readers} users), "
            f"{total_sessions} sessions, average {avg_reading_time}s"
        )
        return stats
