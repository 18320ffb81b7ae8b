"""
Database Schemas for the Repair Desk

Each record model maps to a MongoDB collection:

- Ticket -> "tickets"
- AdminMessage -> "admin_messages"
- ChatMessage -> "chat_messages"

Fields added in later revisions (priority, equipment) are optional with
defaults so older documents still load.
"""

from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional, Literal
from datetime import date, datetime

RepairType = Literal["Desktop", "Laptop", "Printer", "Internet"]
Priority = Literal["NORMAL", "RUSH"]
Status = Literal["Evaluation", "Pending", "Scheduled", "Repaired"]
SenderType = Literal["user", "admin"]

REPAIR_TYPES = ("Desktop", "Laptop", "Printer", "Internet")
PRIORITIES = ("NORMAL", "RUSH")
STATUS_ORDER = ("Evaluation", "Pending", "Scheduled", "Repaired")


class TicketSubmission(BaseModel):
    """A repair request as entered by the requester"""
    office: str = Field(..., description="Office or department the equipment belongs to")
    repair_type: RepairType = Field("Desktop", description="Kind of equipment")
    equipment: str = Field("", description="Make, model or asset tag")
    problem: str = Field(..., description="What is wrong")
    requestee: str = Field(..., description="Name of the person requesting the repair")
    priority: Priority = Field("NORMAL")
    verification_code: str = Field("", description="Code shown on the submission form")

    @field_validator("office", "problem", "requestee")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class TicketUpdate(BaseModel):
    """Partial updates for tickets (admin only)"""
    office: Optional[str] = None
    equipment: Optional[str] = None
    problem: Optional[str] = None
    requestee: Optional[str] = None
    repair_type: Optional[RepairType] = None
    priority: Optional[Priority] = None
    status: Optional[Status] = None
    technician: Optional[str] = None
    scheduled_date: Optional[date] = None

    @field_validator("office", "problem", "requestee")
    @classmethod
    def not_blank(cls, v: Optional[str]) -> str:
        if v is None or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("equipment", "repair_type", "priority", "status")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("must not be null")
        return v


class Ticket(BaseModel):
    """Schema for repair tickets (collection: tickets)"""
    id: str
    ticket_number: str
    office: str
    repair_type: RepairType
    equipment: str = ""
    problem: str
    requestee: str
    priority: Priority = "NORMAL"
    status: Status = "Evaluation"
    technician: Optional[str] = None
    scheduled_date: Optional[date] = None
    created_at: datetime

    model_config = {"frozen": True}


class AdminMessage(BaseModel):
    """The current broadcast shown to every user (collection: admin_messages)"""
    message: str
    created_at: Optional[datetime] = None


class AdminMessagePost(BaseModel):
    message: str = Field(..., max_length=2000)


class ChatMessage(BaseModel):
    """One line of a ticket conversation (collection: chat_messages)"""
    id: str
    ticket_number: str
    sender_type: SenderType
    message: str
    created_at: datetime

    model_config = {"frozen": True}


class ChatMessageCreate(BaseModel):
    message: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
    verification_code: str = ""


class AdminUser(BaseModel):
    id: str
    email: str
