"""Tests for the session cache and its change feed integration."""

from datetime import date, datetime
from unittest.mock import Mock, patch

import pytest

from allocator import is_ticket_number
from errors import AllocationError, AuthError, DuplicateTicketNumber, NotFoundError, StoreError, ValidationError
from schemas import TicketUpdate
from session_cache import Session
from verification import SUBMIT

TODAY = date(2024, 3, 15)


class TestLifetime:
    def test_open_subscribes_and_close_releases(self, store, feed, auth):
        session = Session(store, feed, auth)
        with session:
            assert feed.active_count() == 2
        assert feed.active_count() == 0

    def test_close_releases_open_chat(self, session, make_submission, feed):
        ticket = session.submit_ticket(make_submission(session), today=TODAY)
        session.open_chat(ticket.ticket_number)
        assert feed.active_count() == 3

        session.close()

        assert feed.active_count() == 0
        assert session.conversation is None

    def test_loads_admin_message_on_open(self, store, make_session):
        store.replace_admin_message("Closed for inventory")
        assert make_session().admin_message == "Closed for inventory"


class TestSubmit:
    def test_sequential_submissions(self, session, make_submission):
        first = session.submit_ticket(make_submission(session), today=TODAY)
        second = session.submit_ticket(make_submission(session), today=TODAY)

        assert first.ticket_number == "2024031500001"
        assert second.ticket_number == "2024031500002"
        assert first.status == "Evaluation"
        assert first.priority == "NORMAL"

    def test_defaults_to_local_date(self, session, make_submission):
        ticket = session.submit_ticket(make_submission(session))
        assert is_ticket_number(ticket.ticket_number)
        assert ticket.ticket_number[:8] == date.today().strftime("%Y%m%d")

    def test_round_trip_into_cache(self, session, make_submission):
        ticket = session.submit_ticket(make_submission(session, priority="RUSH"), today=TODAY)

        cached = [t for t in session.tickets if t.id == ticket.id]

        assert cached == [ticket]
        assert cached[0].office == "Accounting"
        assert cached[0].repair_type == "Printer"
        assert cached[0].priority == "RUSH"

    def test_wrong_code_blocks_submission(self, session, make_submission, db):
        payload = make_submission(session)
        wrong = "1000" if payload.verification_code != "1000" else "1001"
        payload = payload.model_copy(update={"verification_code": wrong})

        with pytest.raises(ValidationError):
            session.submit_ticket(payload, today=TODAY)

        assert db["tickets"].count_documents({}) == 0
        assert session.tickets == ()

    def test_code_from_previous_visit_rejected(self, session, make_submission):
        payload = make_submission(session)
        new_code = session.enter_view(SUBMIT)
        while new_code == payload.verification_code:
            new_code = session.enter_view(SUBMIT)

        with pytest.raises(ValidationError):
            session.submit_ticket(payload, today=TODAY)

    def test_stale_cache_collision_is_retried(self, session, make_submission, db):
        # Another client's insert that this session has not heard about
        db["tickets"].insert_one({
            "ticket_number": "2024031500001", "office": "HR", "repair_type": "Desktop",
            "equipment": "", "problem": "No display", "requestee": "Kim",
            "priority": "NORMAL", "status": "Evaluation", "created_at": datetime(2024, 3, 15, 9, 30),
        })
        assert session.tickets == ()

        ticket = session.submit_ticket(make_submission(session), today=TODAY)

        assert ticket.ticket_number == "2024031500002"
        assert len(session.tickets) == 2

    def test_gives_up_after_max_attempts(self, feed, auth, make_submission):
        store = Mock()
        store.list_tickets.return_value = []
        store.latest_admin_message.return_value = None
        store.insert_ticket.side_effect = DuplicateTicketNumber("taken")
        session = Session(store, feed, auth, max_allocation_attempts=3).open()

        with pytest.raises(AllocationError):
            session.submit_ticket(make_submission(session), today=TODAY)

        assert store.insert_ticket.call_count == 3
        session.close()

    def test_other_sessions_see_new_ticket(self, make_session, make_submission):
        alice = make_session()
        bob = make_session()

        ticket = alice.submit_ticket(make_submission(alice), today=TODAY)

        assert [t.ticket_number for t in bob.tickets] == [ticket.ticket_number]
        second = bob.submit_ticket(make_submission(bob), today=TODAY)
        assert second.ticket_number == "2024031500002"


class TestRefresh:
    def test_refresh_is_idempotent(self, session, make_submission):
        session.submit_ticket(make_submission(session), today=TODAY)

        first = session.refresh_tickets()
        second = session.refresh_tickets()

        assert first == second

    def test_failed_fetch_keeps_snapshot(self, session, make_submission, store):
        session.submit_ticket(make_submission(session), today=TODAY)
        before = session.tickets

        with patch.object(store, "list_tickets", side_effect=StoreError("Failed to load tickets: down")):
            with pytest.raises(StoreError):
                session.refresh_tickets()

        assert session.tickets == before

    def test_feed_refresh_failure_is_recorded(self, session, store, feed):
        with patch.object(store, "list_tickets", side_effect=StoreError("Failed to load tickets: down")):
            feed.publish("tickets", "UPDATE", {})
        assert session.last_error == "Failed to load tickets: down"

    def test_older_refresh_never_overwrites_newer(self, feed, auth):
        store = Mock()
        store.latest_admin_message.return_value = None
        session = Session(store, feed, auth)
        calls = []

        def list_tickets(*args):
            calls.append(args)
            if len(calls) == 1:
                # a change notification lands while this fetch is in flight
                session.refresh_tickets()
                return ["stale"]
            return ["fresh"]

        store.list_tickets.side_effect = list_tickets
        session.refresh_tickets()

        assert session.tickets == ("fresh",)

    def test_admin_message_follows_feed(self, admin_session, make_session):
        viewer = make_session()
        admin_session.post_admin_message("Printers down until noon")
        assert viewer.admin_message == "Printers down until noon"


class TestTrack:
    def test_found(self, session, make_submission):
        ticket = session.submit_ticket(make_submission(session), today=TODAY)
        assert session.track(f"  {ticket.ticket_number} ") == ticket
        assert session.tracked_ticket == ticket

    def test_not_found(self, session, make_submission):
        session.submit_ticket(make_submission(session), today=TODAY)
        session.track("2024031500001")

        with pytest.raises(NotFoundError):
            session.track("2024031500077")

        assert session.tracked_ticket is None

    def test_empty_input(self, session):
        with pytest.raises(ValidationError):
            session.track("   ")
        assert session.tracked_ticket is None


class TestAdmin:
    def test_requires_sign_in(self, session, make_submission):
        ticket = session.submit_ticket(make_submission(session), today=TODAY)
        with pytest.raises(AuthError):
            session.update_ticket(ticket.id, TicketUpdate(status="Pending"))
        with pytest.raises(AuthError):
            session.delete_ticket(ticket.id)
        with pytest.raises(AuthError):
            session.post_admin_message("hi")

    def test_sign_in_needs_login_code(self, session, auth):
        auth.register("tech@example.com", "pw")
        session.enter_view("admin_login")
        with pytest.raises(ValidationError):
            session.sign_in("tech@example.com", "pw", "")
        assert session.current_user is None

    def test_bad_credentials(self, session, auth):
        auth.register("tech@example.com", "pw")
        code = session.enter_view("admin_login")
        with pytest.raises(AuthError):
            session.sign_in("tech@example.com", "wrong", code)
        assert not session.is_admin

    def test_sign_out(self, admin_session):
        admin_session.sign_out()
        assert admin_session.current_user is None

    def test_restore_user(self, session, auth):
        user = auth.register("tech@example.com", "pw")
        session.restore_user(user)
        assert session.is_admin

    def test_update_and_delete(self, admin_session, make_submission, make_session):
        viewer = make_session()
        ticket = admin_session.submit_ticket(make_submission(admin_session), today=TODAY)

        updated = admin_session.update_ticket(ticket.id, TicketUpdate(status="Scheduled", technician="Alex"))

        assert updated.status == "Scheduled"
        assert viewer.tickets[0].technician == "Alex"

        admin_session.delete_ticket(ticket.id)
        assert admin_session.tickets == ()
        assert viewer.tickets == ()

    def test_empty_update_rejected(self, admin_session, make_submission):
        ticket = admin_session.submit_ticket(make_submission(admin_session), today=TODAY)
        with pytest.raises(ValidationError):
            admin_session.update_ticket(ticket.id, TicketUpdate())

    def test_failed_mutation_skips_refresh(self, admin_session):
        with patch.object(admin_session, "refresh_tickets") as refresh:
            with pytest.raises(NotFoundError):
                admin_session.delete_ticket("0123456789abcdef01234567")
        refresh.assert_not_called()

    def test_counts_and_triage(self, admin_session, make_submission):
        a = admin_session.submit_ticket(make_submission(admin_session, repair_type="Desktop"), today=TODAY)
        b = admin_session.submit_ticket(make_submission(admin_session, priority="RUSH"), today=TODAY)
        c = admin_session.submit_ticket(make_submission(admin_session, repair_type="Internet"), today=TODAY)
        admin_session.update_ticket(a.id, TicketUpdate(status="Repaired"))

        assert admin_session.counts_by_repair_type() == {"Desktop": 1, "Laptop": 0, "Printer": 1, "Internet": 1}
        assert admin_session.counts_by_status() == {"Evaluation": 2, "Pending": 0, "Scheduled": 0, "Repaired": 1}
        assert [t.id for t in admin_session.triage_order()] == [b.id, c.id, a.id]
