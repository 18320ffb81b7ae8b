"""
Session: one connected client's view of the repair desk.

Design
- Holds a snapshot of all tickets (newest first) and the current admin
  message, loaded on open() and replaced whenever the change feed reports a
  write or this session finishes one of its own writes. Both paths may fire
  for the same write in any order; refreshing is idempotent.
- Snapshots are swapped whole under a lock and only by the most recently
  started refresh, so readers never see a partial or older list.
- A failed fetch raises StoreError and leaves the previous snapshot in place.
  A failed write raises and skips the refresh.
- close() releases every feed subscription, including an open conversation.
"""

import logging
import threading
from collections import OrderedDict
from datetime import date
from typing import Dict, List, Optional, Tuple

from allocator import next_ticket_number
from auth import AuthService
from config import MAX_ALLOCATION_ATTEMPTS
from errors import AllocationError, AuthError, DuplicateTicketNumber, NotFoundError, StoreError, ValidationError
from feed import ALL_EVENTS, ChangeFeed, INSERT, Subscription
from messaging import Conversation
from schemas import (
    AdminMessage, AdminUser, ChatMessage, PRIORITIES, REPAIR_TYPES, STATUS_ORDER,
    Ticket, TicketSubmission, TicketUpdate,
)
from store import ADMIN_MESSAGES, TICKETS, TicketStore
from verification import ADMIN_LOGIN, SUBMIT, VerificationGate

logger = logging.getLogger(__name__)


class Session:
    def __init__(self, store: TicketStore, feed: ChangeFeed, auth: AuthService,
                 gate: Optional[VerificationGate] = None,
                 max_allocation_attempts: int = MAX_ALLOCATION_ATTEMPTS):
        self.store = store
        self.feed = feed
        self.auth = auth
        self.gate = gate or VerificationGate()
        self.max_allocation_attempts = max_allocation_attempts

        self._lock = threading.Lock()
        self._tickets: Tuple[Ticket, ...] = ()
        self._admin_message: Optional[AdminMessage] = None
        self._ticket_gen = 0
        self._ticket_applied = 0
        self._message_gen = 0
        self._message_applied = 0

        self._subscriptions: List[Subscription] = []
        self.conversation: Optional[Conversation] = None
        self.user: Optional[AdminUser] = None
        self.tracked_ticket: Optional[Ticket] = None
        self.last_error: Optional[str] = None

    # ---------- lifetime ----------

    def open(self) -> "Session":
        # Subscribe first so a write landing during the initial load is not missed
        self._subscriptions.append(self.feed.subscribe(TICKETS, ALL_EVENTS, self._on_ticket_change))
        self._subscriptions.append(self.feed.subscribe(ADMIN_MESSAGES, {INSERT}, self._on_message_change))
        try:
            self.refresh_tickets()
            self.refresh_admin_message()
        except StoreError:
            self.close()
            raise
        return self

    def close(self) -> None:
        self.close_chat()
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions = []

    def __enter__(self) -> "Session":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    # ---------- snapshot ----------

    @property
    def tickets(self) -> Tuple[Ticket, ...]:
        return self._tickets

    @property
    def admin_message(self) -> str:
        msg = self._admin_message
        return msg.message if msg else ""

    def refresh_tickets(self) -> Tuple[Ticket, ...]:
        with self._lock:
            self._ticket_gen += 1
            generation = self._ticket_gen
        fetched = tuple(self.store.list_tickets("created_at", "desc"))
        with self._lock:
            if generation > self._ticket_applied:
                self._tickets = fetched
                self._ticket_applied = generation
            return self._tickets

    def refresh_admin_message(self) -> str:
        with self._lock:
            self._message_gen += 1
            generation = self._message_gen
        fetched = self.store.latest_admin_message()
        with self._lock:
            if generation > self._message_applied:
                self._admin_message = fetched
                self._message_applied = generation
        return self.admin_message

    def _on_ticket_change(self, table, event, record) -> None:
        try:
            self.refresh_tickets()
            self.last_error = None
        except StoreError as e:
            self.last_error = e.message
            logger.error("Ticket refresh after %s failed: %s", event, e.message)

    def _on_message_change(self, table, event, record) -> None:
        try:
            self.refresh_admin_message()
            self.last_error = None
        except StoreError as e:
            self.last_error = e.message
            logger.error("Admin message refresh failed: %s", e.message)

    # ---------- verification ----------

    def enter_view(self, view: str) -> str:
        return self.gate.enter_view(view)

    # ---------- requester actions ----------

    def submit_ticket(self, submission: TicketSubmission, today: Optional[date] = None) -> Ticket:
        """
        Verify the code, allocate a ticket number and insert the ticket.

        The number is computed from the cached snapshot, which can lag behind
        other sessions. When the store reports the number as taken the cache
        is reloaded and a new number computed, up to max_allocation_attempts.
        """
        self.gate.verify(SUBMIT, submission.verification_code)
        today = today or date.today()
        fields = submission.model_dump(exclude={"verification_code"})
        fields["status"] = "Evaluation"

        for attempt in range(1, self.max_allocation_attempts + 1):
            ticket_number = next_ticket_number((t.ticket_number for t in self._tickets), today)
            try:
                ticket = self.store.insert_ticket({**fields, "ticket_number": ticket_number})
            except DuplicateTicketNumber:
                logger.warning("Ticket number %s already taken (attempt %d of %d)",
                               ticket_number, attempt, self.max_allocation_attempts)
                self.refresh_tickets()
                continue
            logger.info("Ticket %s submitted by %s", ticket.ticket_number, ticket.requestee)
            self.refresh_tickets()
            return ticket
        raise AllocationError("Could not allocate a ticket number, please try again")

    def track(self, ticket_number: str) -> Ticket:
        value = (ticket_number or "").strip()
        if not value:
            self.tracked_ticket = None
            raise ValidationError("Please enter a ticket number.")
        found = next((t for t in self._tickets if t.ticket_number == value), None)
        self.tracked_ticket = found
        if found is None:
            raise NotFoundError("Ticket not found. Please check the ticket number.")
        return found

    # ---------- admin ----------

    @property
    def current_user(self) -> Optional[AdminUser]:
        return self.user

    @property
    def is_admin(self) -> bool:
        return self.user is not None

    def sign_in(self, email: str, password: str, code: str) -> AdminUser:
        self.gate.verify(ADMIN_LOGIN, code)
        self.user = self.auth.sign_in(email, password)
        logger.info("Admin %s signed in", self.user.email)
        return self.user

    def restore_user(self, user: AdminUser) -> None:
        """Resume an already authenticated user directly into the admin role."""
        self.user = user

    def sign_out(self) -> None:
        if self.user is not None:
            logger.info("Admin %s signed out", self.user.email)
        self.user = None

    def require_admin(self) -> AdminUser:
        if self.user is None:
            raise AuthError("Sign in as an administrator first")
        return self.user

    def update_ticket(self, ticket_id: str, update: TicketUpdate) -> Ticket:
        self.require_admin()
        fields = update.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("Nothing to update")
        ticket = self.store.update_ticket(ticket_id, fields)
        self.refresh_tickets()
        return ticket

    def delete_ticket(self, ticket_id: str) -> None:
        self.require_admin()
        self.store.delete_ticket(ticket_id)
        self.refresh_tickets()

    def post_admin_message(self, message: str) -> str:
        self.require_admin()
        self.store.replace_admin_message(message)
        logger.info("Admin message posted by %s", self.user.email)
        return self.refresh_admin_message()

    def counts_by_repair_type(self) -> Dict[str, int]:
        counts = OrderedDict((t, 0) for t in REPAIR_TYPES)
        for ticket in self._tickets:
            counts[ticket.repair_type] += 1
        return dict(counts)

    def counts_by_status(self) -> Dict[str, int]:
        counts = OrderedDict((s, 0) for s in STATUS_ORDER)
        for ticket in self._tickets:
            counts[ticket.status] += 1
        return dict(counts)

    def triage_order(self) -> List[Ticket]:
        """Status order first, RUSH ahead of NORMAL, newest first inside a group."""
        newest_first = sorted(self._tickets, key=lambda t: t.created_at, reverse=True)
        return sorted(
            newest_first,
            key=lambda t: (STATUS_ORDER.index(t.status), -PRIORITIES.index(t.priority)),
        )

    # ---------- chat ----------

    @property
    def sender_type(self) -> str:
        return "admin" if self.is_admin else "user"

    def open_chat(self, ticket_number: str) -> List[ChatMessage]:
        """Open the conversation for a ticket, closing any other open one."""
        if not any(t.ticket_number == ticket_number for t in self._tickets):
            raise NotFoundError("Ticket not found. Please check the ticket number.")
        if self.conversation is not None and self.conversation.ticket_number == ticket_number \
                and self.conversation.is_open:
            return self.conversation.messages
        self.close_chat()
        conversation = Conversation(self.store, self.feed, ticket_number)
        messages = conversation.open()
        self.conversation = conversation
        return messages

    def send_chat(self, message: str) -> List[ChatMessage]:
        if self.conversation is None:
            raise ValidationError("Open a conversation first")
        return self.conversation.send(message, self.sender_type)

    def close_chat(self) -> None:
        if self.conversation is not None:
            self.conversation.close()
            self.conversation = None
