from datetime import datetime, timedelta, timezone

from models.survey import SessionStatus
from schemas.survey import SessionRead
from services.session_lifecycle import expire_if_stale

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_session(status=SessionStatus.PENDING, expires_in=timedelta(hours=1)):
    return SessionRead(
        id="s-1",
        token="AB12CD34",
        template_id="T1",
        respondent_name="Kim",
        status=status,
        expires_at=NOW + expires_in,
        created_at=NOW - timedelta(hours=1),
    )


def test_pending_session_before_deadline_is_untouched():
    session = make_session()
    assert expire_if_stale(session, NOW) is session


def test_pending_session_past_deadline_expires():
    session = make_session(expires_in=timedelta(minutes=-1))
    expired = expire_if_stale(session, NOW)
    assert expired.status is SessionStatus.EXPIRED
    assert session.status is SessionStatus.PENDING  # input not mutated
    assert expired.expires_at == session.expires_at


def test_deadline_itself_is_still_open():
    session = make_session(expires_in=timedelta(0))
    assert expire_if_stale(session, NOW).status is SessionStatus.PENDING


def test_expiry_is_stable_under_repeated_application():
    session = make_session(expires_in=timedelta(minutes=-1))
    once = expire_if_stale(session, NOW)
    for _ in range(5):
        once = expire_if_stale(once, NOW + timedelta(days=1))
    assert once.status is SessionStatus.EXPIRED


def test_completed_session_never_expires():
    session = make_session(status=SessionStatus.COMPLETED, expires_in=timedelta(days=-30))
    assert expire_if_stale(session, NOW) is session


def test_naive_timestamps_are_read_as_utc():
    session = SessionRead(
        id="s-2",
        token="ZZ00ZZ00",
        template_id="T1",
        status=SessionStatus.PENDING,
        expires_at=datetime(2026, 3, 1, 8, 0),
        created_at=datetime(2026, 3, 1, 7, 0),
    )
    assert session.expires_at.tzinfo is timezone.utc
    assert expire_if_stale(session, NOW).status is SessionStatus.EXPIRED
