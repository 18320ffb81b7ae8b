"""
Ticket number allocation.

A ticket number is the submission date as YYYYMMDD followed by a five digit,
zero padded sequence that restarts every day, e.g. 2024031500007.
"""

import re
from datetime import date
from typing import Iterable, Optional

from errors import AllocationError

SEQUENCE_DIGITS = 5
MAX_SEQUENCE = 10 ** SEQUENCE_DIGITS - 1

TICKET_NUMBER_RE = re.compile(r"[0-9]{13}")
SEQUENCE_RE = re.compile(r"[0-9]{%d}" % SEQUENCE_DIGITS)


def date_prefix(day: date) -> str:
    return day.strftime("%Y%m%d")


def is_ticket_number(value: str) -> bool:
    return bool(value) and TICKET_NUMBER_RE.fullmatch(value) is not None


def sequence_of(ticket_number: str, prefix: str) -> Optional[int]:
    """Return the sequence part of `ticket_number` if it belongs to `prefix`."""
    if not ticket_number or not ticket_number.startswith(prefix):
        return None
    suffix = ticket_number[len(prefix):]
    if SEQUENCE_RE.fullmatch(suffix) is None:
        return None
    return int(suffix)


def next_ticket_number(existing: Iterable[str], day: date) -> str:
    """
    Compute the next ticket number for `day` given the numbers already issued.

    Uses the highest sequence seen for the day rather than the count of
    tickets, so gaps left by deleted tickets are never reissued.
    """
    prefix = date_prefix(day)
    used = [s for s in (sequence_of(n, prefix) for n in existing) if s is not None]
    nxt = max(used) + 1 if used else 1
    if nxt > MAX_SEQUENCE:
        raise AllocationError(f"No ticket numbers left for {day.isoformat()}")
    return f"{prefix}{nxt:0{SEQUENCE_DIGITS}d}"
