"""
Per-ticket conversation between a requester and support staff.

A Conversation is Closed until open() loads the ticket's messages and
subscribes to new ones; close() releases the subscription and clears the
local copy. Sending re-fetches the whole ordered log so messages the other
party inserted concurrently land in the right place.
"""

import logging
import threading
from typing import List, Optional, Tuple

from errors import StoreError, ValidationError
from feed import ChangeFeed, INSERT, Subscription
from schemas import ChatMessage
from store import CHAT_MESSAGES, TicketStore

logger = logging.getLogger(__name__)


class Conversation:
    def __init__(self, store: TicketStore, feed: ChangeFeed, ticket_number: str):
        self.store = store
        self.feed = feed
        self.ticket_number = ticket_number
        self._messages: Tuple[ChatMessage, ...] = ()
        self._subscription: Optional[Subscription] = None
        self._lock = threading.Lock()
        self._generation = 0
        self._applied = 0
        self.last_error: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def open(self) -> List[ChatMessage]:
        if self.is_open:
            return self.messages
        self._subscription = self.feed.subscribe(
            CHAT_MESSAGES, {INSERT}, self._on_change, filter={"ticket_number": self.ticket_number}
        )
        try:
            self.refresh()
        except StoreError:
            self.close()
            raise
        return self.messages

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        with self._lock:
            self._messages = ()

    def refresh(self) -> List[ChatMessage]:
        with self._lock:
            self._generation += 1
            generation = self._generation
        fetched = tuple(self.store.list_chat_messages(self.ticket_number))
        with self._lock:
            if generation > self._applied:
                self._messages = fetched
                self._applied = generation
            return list(self._messages)

    def send(self, message: str, sender_type: str) -> List[ChatMessage]:
        if not self.is_open:
            raise ValidationError("Open the conversation before sending messages")
        if not message or not message.strip():
            raise ValidationError("Message must not be empty")
        self.store.insert_chat_message(self.ticket_number, sender_type, message.strip())
        return self.refresh()

    def _on_change(self, table, event, record) -> None:
        if not self.is_open:
            return
        try:
            self.refresh()
            self.last_error = None
        except StoreError as e:
            self.last_error = str(e)
            logger.error("Could not refresh conversation %s: %s", self.ticket_number, e)

    def __enter__(self) -> "Conversation":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()
