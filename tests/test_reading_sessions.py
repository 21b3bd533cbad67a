"""
Tests for starting and ending reading sessions.
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from errors import ConflictError, InternalError, NotFoundError
from models.schema import Progress, ReadingSession
from tracking import ProgressTracker, ReadingSessionManager


@pytest.fixture
def manager(db, clock):
    return ReadingSessionManager(db, clock, ProgressTracker(db, clock, 100))


class TestSessionManager:

    def test_start_twice_returns_same_session(self, manager, student, book):
        first, created = manager.start(student.id, book.id)
        second, created_again = manager.start(student.id, book.id)

        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert first.start_time == second.start_time

    def test_start_after_end_opens_new_session(self, manager, clock, student, book):
        first, _ = manager.start(student.id, book.id)
        first_id = first.id
        clock.advance(30)
        manager.end(student.id, book.id)

        second, created = manager.start(student.id, book.id)
        assert created is True
        assert second.id != first_id

    def test_start_unknown_book_is_not_found(self, manager, student):
        with pytest.raises(NotFoundError):
            manager.start(student.id, 'missing-book')

    def test_end_without_open_session_is_not_found(self, manager, student, book):
        with pytest.raises(NotFoundError):
            manager.end(student.id, book.id)

    def test_end_records_whole_seconds_and_credits_progress(self, db, manager, clock, student, book):
        session, _ = manager.start(student.id, book.id)
        started = clock.now()
        clock.advance(seconds=90.7)

        summary = manager.end(student.id, book.id)

        assert summary.total_seconds == 90
        assert summary.start_time == started
        assert summary.end_time == started + timedelta(seconds=90.7)

        db.expire_all()
        stored = db.query(ReadingSession).filter(ReadingSession.id == summary.session_id).one()
        assert stored.end_time is not None
        assert stored.total_seconds == 90

        progress = db.query(Progress).filter(Progress.user_id == student.id).one()
        assert progress.total_reading_time == 90
        assert progress.percent_complete == 0
        assert progress.last_read_at == summary.end_time

    def test_progress_accumulates_across_sessions(self, db, manager, clock, student, book):
        for seconds in (600, 900):
            manager.start(student.id, book.id)
            clock.advance(seconds)
            manager.end(student.id, book.id)

        db.expire_all()
        progress = db.query(Progress).filter(Progress.user_id == student.id, Progress.book_id == book.id).one()
        assert progress.total_reading_time == 1500

    def test_clock_going_backwards_clamps_to_zero(self, manager, clock, student, book):
        manager.start(student.id, book.id)
        clock.advance(-10)

        summary = manager.end(student.id, book.id)

        assert summary.total_seconds == 0

    def test_racing_end_closes_session_once(self, db, manager, clock, student, book, monkeypatch):
        manager.start(student.id, book.id)
        # Both callers looked the session up before either closed it
        stale = manager._find_open_session(student.id, book.id)
        clock.advance(120)
        manager.end(student.id, book.id)

        monkeypatch.setattr(manager, '_find_open_session', lambda user_id, book_id: stale)
        with pytest.raises(NotFoundError):
            manager.end(student.id, book.id)

        db.expire_all()
        assert db.query(ReadingSession).filter(ReadingSession.end_time.isnot(None)).count() == 1
        progress = db.query(Progress).filter(Progress.user_id == student.id).one()
        assert progress.total_reading_time == 120

    def test_store_rejects_second_open_session(self, db, clock, student, book):
        db.add(ReadingSession(user_id=student.id, book_id=book.id, start_time=clock.now()))
        db.commit()

        db.add(ReadingSession(user_id=student.id, book_id=book.id, start_time=clock.now()))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_racing_start_returns_winner(self, db, manager, clock, student, book, monkeypatch):
        winner = ReadingSession(user_id=student.id, book_id=book.id, start_time=clock.now())
        db.add(winner)
        db.commit()
        winner_id = winner.id

        real_lookup = manager._find_open_session
        calls = []

        def lookup(user_id, book_id):
            calls.append(book_id)
            # The first lookup ran before the other request committed
            if len(calls) == 1:
                return None
            return real_lookup(user_id, book_id)

        monkeypatch.setattr(manager, '_find_open_session', lookup)
        session, created = manager.start(student.id, book.id)

        assert created is False
        assert session.id == winner_id
        assert db.query(ReadingSession).count() == 1

    def test_racing_start_without_visible_winner_is_conflict(self, db, manager, clock, student, book,
                                                             monkeypatch):
        db.add(ReadingSession(user_id=student.id, book_id=book.id, start_time=clock.now()))
        db.commit()
        monkeypatch.setattr(manager, '_find_open_session', lambda user_id, book_id: None)

        with pytest.raises(ConflictError):
            manager.start(student.id, book.id)

        assert db.query(ReadingSession).count() == 1

    def test_store_failure_during_end_keeps_session_open(self, db, manager, clock, student, book,
                                                         monkeypatch):
        manager.start(student.id, book.id)
        clock.advance(60)

        def broken_accumulate(*args, **kwargs):
            raise OperationalError('UPDATE progress', {}, Exception('database is locked'))

        monkeypatch.setattr(manager.progress, 'accumulate', broken_accumulate)
        with pytest.raises(InternalError):
            manager.end(student.id, book.id)

        db.expire_all()
        assert db.query(ReadingSession).filter(ReadingSession.end_time.is_(None)).count() == 1
        assert db.query(Progress).count() == 0

    def test_uncredited_time_rolls_back_close(self, db, manager, clock, student, book, monkeypatch):
        manager.start(student.id, book.id)
        clock.advance(60)
        monkeypatch.setattr(manager.progress, '_increment', lambda *args: 0)
        monkeypatch.setattr(manager.progress, '_insert', lambda **values: False)

        with pytest.raises(ConflictError):
            manager.end(student.id, book.id)

        db.expire_all()
        assert db.query(ReadingSession).filter(ReadingSession.end_time.is_(None)).count() == 1


class TestSessionEndpoints:

    def test_start_returns_session_id(self, client, auth_headers, student, book):
        response = client.post('/api/reading-sessions/start', json={'bookId': book.id},
                               headers=auth_headers(student))

        assert response.status_code == 200
        body = response.json()
        assert body['success'] is True
        assert body['sessionId']
        assert body['startTime'].startswith('2024-03-01T09:00:00')

    def test_start_is_idempotent(self, client, auth_headers, student, book):
        headers = auth_headers(student)
        first = client.post('/api/reading-sessions/start', json={'bookId': book.id}, headers=headers).json()
        second = client.post('/api/reading-sessions/start', json={'bookId': book.id}, headers=headers).json()

        assert first['sessionId'] == second['sessionId']
        assert second['message'] == 'Active session already exists'

    def test_start_requires_book_id(self, client, auth_headers, student):
        response = client.post('/api/reading-sessions/start', json={}, headers=auth_headers(student))

        assert response.status_code == 400
        assert response.json()['success'] is False

    def test_start_rejects_blank_book_id(self, client, auth_headers, student):
        response = client.post('/api/reading-sessions/start', json={'bookId': ''}, headers=auth_headers(student))
        assert response.status_code == 400

    def test_start_requires_token(self, client, book):
        response = client.post('/api/reading-sessions/start', json={'bookId': book.id})
        assert response.status_code == 401

    def test_start_rejects_bad_token(self, client, book):
        response = client.post('/api/reading-sessions/start', json={'bookId': book.id},
                               headers={'Authorization': 'Bearer not-a-jwt'})
        assert response.status_code == 401

    def test_start_rejects_unknown_role(self, client, auth_headers, book):
        response = client.post('/api/reading-sessions/start', json={'bookId': book.id},
                               headers=auth_headers(role='parent'))
        assert response.status_code == 403

    def test_teacher_and_admin_can_read(self, client, auth_headers, teacher, admin, book):
        for user in (teacher, admin):
            response = client.post('/api/reading-sessions/start', json={'bookId': book.id},
                                   headers=auth_headers(user))
            assert response.status_code == 200

    def test_end_without_session_is_404(self, client, auth_headers, student, book):
        response = client.post('/api/reading-sessions/end', json={'bookId': book.id},
                               headers=auth_headers(student))

        assert response.status_code == 404
        assert response.json()['message'] == 'No active reading session found'

    def test_end_reports_duration(self, client, clock, auth_headers, student, book):
        headers = auth_headers(student)
        started = client.post('/api/reading-sessions/start', json={'bookId': book.id}, headers=headers).json()
        clock.advance(minutes=10)

        response = client.post('/api/reading-sessions/end', json={'bookId': book.id}, headers=headers)

        assert response.status_code == 200
        data = response.json()['data']
        assert data['sessionId'] == started['sessionId']
        assert data['totalSeconds'] == 600
        assert data['bookId'] == book.id
        assert data['userId'] == student.id
        assert data['endTime'].startswith('2024-03-01T09:10:00')

    def test_second_end_is_404(self, client, clock, auth_headers, student, book):
        headers = auth_headers(student)
        client.post('/api/reading-sessions/start', json={'bookId': book.id}, headers=headers)
        clock.advance(5)
        assert client.post('/api/reading-sessions/end', json={'bookId': book.id}, headers=headers).status_code == 200
        assert client.post('/api/reading-sessions/end', json={'bookId': book.id}, headers=headers).status_code == 404

    def test_store_failure_is_generic_500(self, client, clock, auth_headers, student, book, monkeypatch):
        headers = auth_headers(student)
        client.post('/api/reading-sessions/start', json={'bookId': book.id}, headers=headers)
        clock.advance(30)

        def broken_accumulate(self, *args, **kwargs):
            raise OperationalError('UPDATE progress', {}, Exception('disk I/O error'))

        monkeypatch.setattr(ProgressTracker, 'accumulate', broken_accumulate)
        response = client.post('/api/reading-sessions/end', json={'bookId': book.id}, headers=headers)

        assert response.status_code == 500
        assert response.json() == {'success': False, 'message': 'Internal server error'}

    def test_end_requires_book_id(self, client, auth_headers, student):
        response = client.post('/api/reading-sessions/end', json={'book': 'x'}, headers=auth_headers(student))
        assert response.status_code == 400
