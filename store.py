"""
Ticket Store Adapter over MongoDB.

Wraps the tickets, admin_messages and chat_messages collections. Every
acknowledged write is announced on the change feed so connected sessions can
refresh. Driver failures surface as StoreError with a readable message.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pydantic import ValidationError as SchemaError
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_documents
from errors import DuplicateTicketNumber, NotFoundError, StoreError, ValidationError
from feed import ChangeFeed, DELETE, INSERT, UPDATE
from schemas import AdminMessage, ChatMessage, Ticket, TicketUpdate

logger = logging.getLogger(__name__)

TICKETS = "tickets"
ADMIN_MESSAGES = "admin_messages"
CHAT_MESSAGES = "chat_messages"


def _to_record(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc.pop("updated_at", None)
    return doc


def _object_id(ticket_id: str) -> ObjectId:
    try:
        return ObjectId(ticket_id)
    except (InvalidId, TypeError):
        raise NotFoundError(f"Ticket {ticket_id} not found")


def _storable(fields: Dict[str, Any]) -> Dict[str, Any]:
    # BSON has no plain date type
    return {k: v.isoformat() if isinstance(v, date) else v for k, v in fields.items()}


class TicketStore:
    def __init__(self, db: Database, feed: ChangeFeed):
        self.db = db
        self.feed = feed
        try:
            db[TICKETS].create_index("ticket_number", unique=True)
        except PyMongoError as e:
            raise StoreError(f"Could not prepare tickets collection: {e}")

    # ---------- tickets ----------

    def list_tickets(self, order_by: str = "created_at", direction: str = "desc") -> List[Ticket]:
        order = DESCENDING if direction == "desc" else ASCENDING
        try:
            docs = get_documents(TICKETS, sort=[(order_by, order), ("_id", order)], database=self.db)
        except PyMongoError as e:
            logger.error("Failed to load tickets: %s", e)
            raise StoreError(f"Failed to load tickets: {e}")
        return [Ticket(**_to_record(d)) for d in docs]

    def insert_ticket(self, fields: Dict[str, Any]) -> Ticket:
        try:
            ticket_id = create_document(TICKETS, _storable(fields), database=self.db)
            doc = self.db[TICKETS].find_one({"_id": ObjectId(ticket_id)})
        except DuplicateKeyError:
            raise DuplicateTicketNumber(f"Ticket number {fields.get('ticket_number')} is already taken")
        except PyMongoError as e:
            logger.error("Failed to submit ticket: %s", e)
            raise StoreError(f"Failed to submit ticket: {e}")
        record = _to_record(doc)
        self.feed.publish(TICKETS, INSERT, record)
        return Ticket(**record)

    def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> Ticket:
        oid = _object_id(ticket_id)
        # Only TicketUpdate fields are writable; id, ticket_number and created_at are dropped
        try:
            checked = TicketUpdate(**fields).model_dump(exclude_unset=True)
        except SchemaError as e:
            err = e.errors()[0]
            field = ".".join(str(p) for p in err["loc"])
            raise ValidationError(f"Invalid value for {field}: {err['msg']}")
        if not checked:
            raise ValidationError("Nothing to update")
        to_set = _storable(checked)
        to_set["updated_at"] = datetime.now(timezone.utc)
        try:
            doc = self.db[TICKETS].find_one_and_update(
                {"_id": oid}, {"$set": to_set}, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            logger.error("Failed to update ticket %s: %s", ticket_id, e)
            raise StoreError(f"Failed to update ticket: {e}")
        if not doc:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        record = _to_record(doc)
        self.feed.publish(TICKETS, UPDATE, record)
        return Ticket(**record)

    def delete_ticket(self, ticket_id: str) -> None:
        oid = _object_id(ticket_id)
        try:
            doc = self.db[TICKETS].find_one_and_delete({"_id": oid})
        except PyMongoError as e:
            logger.error("Failed to delete ticket %s: %s", ticket_id, e)
            raise StoreError(f"Failed to delete ticket: {e}")
        if not doc:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        self.feed.publish(TICKETS, DELETE, _to_record(doc))

    # ---------- admin message ----------

    def latest_admin_message(self) -> Optional[AdminMessage]:
        try:
            docs = get_documents(ADMIN_MESSAGES, sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
                                 limit=1, database=self.db)
        except PyMongoError as e:
            logger.error("Failed to load admin message: %s", e)
            raise StoreError(f"Failed to load admin message: {e}")
        if not docs:
            return None
        return AdminMessage(message=docs[0].get("message", ""), created_at=docs[0].get("created_at"))

    def replace_admin_message(self, message: str) -> AdminMessage:
        """Only one broadcast is current; posting discards the previous ones."""
        try:
            self.db[ADMIN_MESSAGES].delete_many({})
            msg_id = create_document(ADMIN_MESSAGES, {"message": message}, database=self.db)
            doc = self.db[ADMIN_MESSAGES].find_one({"_id": ObjectId(msg_id)})
        except PyMongoError as e:
            logger.error("Failed to post admin message: %s", e)
            raise StoreError(f"Failed to post message: {e}")
        record = _to_record(doc)
        self.feed.publish(ADMIN_MESSAGES, INSERT, record)
        return AdminMessage(message=record["message"], created_at=record["created_at"])

    # ---------- chat ----------

    def list_chat_messages(self, ticket_number: str) -> List[ChatMessage]:
        try:
            docs = get_documents(CHAT_MESSAGES, {"ticket_number": ticket_number},
                                 sort=[("created_at", ASCENDING), ("_id", ASCENDING)], database=self.db)
        except PyMongoError as e:
            logger.error("Failed to load messages for %s: %s", ticket_number, e)
            raise StoreError(f"Failed to load messages: {e}")
        return [ChatMessage(**_to_record(d)) for d in docs]

    def insert_chat_message(self, ticket_number: str, sender_type: str, message: str) -> ChatMessage:
        try:
            msg_id = create_document(
                CHAT_MESSAGES,
                {"ticket_number": ticket_number, "sender_type": sender_type, "message": message},
                database=self.db,
            )
            doc = self.db[CHAT_MESSAGES].find_one({"_id": ObjectId(msg_id)})
        except PyMongoError as e:
            logger.error("Failed to send message on %s: %s", ticket_number, e)
            raise StoreError(f"Failed to send message: {e}")
        record = _to_record(doc)
        self.feed.publish(CHAT_MESSAGES, INSERT, record)
        return ChatMessage(**record)
