"""Shared fixtures: an in-memory MongoDB (mongomock) wired to a change feed."""

import mongomock
import pytest

from auth import AuthService
from feed import ChangeFeed
from schemas import TicketSubmission
from session_cache import Session
from store import TicketStore
from verification import SUBMIT


@pytest.fixture
def db():
    return mongomock.MongoClient().repair_desk


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(db, feed):
    return TicketStore(db, feed)


@pytest.fixture
def auth(db):
    return AuthService(db)


@pytest.fixture
def make_session(store, feed, auth):
    opened = []

    def _make():
        session = Session(store, feed, auth).open()
        opened.append(session)
        return session

    yield _make
    for session in opened:
        session.close()


@pytest.fixture
def session(make_session):
    return make_session()


@pytest.fixture
def admin_session(make_session, auth):
    auth.register("admin@example.com", "s3cret")
    session = make_session()
    session.sign_in("admin@example.com", "s3cret", session.enter_view("admin_login"))
    return session


@pytest.fixture
def make_submission():
    """Build a TicketSubmission carrying the session's current submit code."""

    def _make(session, **overrides):
        data = {
            "office": "Accounting",
            "repair_type": "Printer",
            "equipment": "HP LaserJet 400",
            "problem": "Paper jam on every print",
            "requestee": "Dana Cruz",
        }
        data.update(overrides)
        code = session.gate.current(SUBMIT) or session.enter_view(SUBMIT)
        return TicketSubmission(verification_code=code, **data)

    return _make
