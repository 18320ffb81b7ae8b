"""
Verification Gate.

A four digit code is shown on the ticket submission and admin login views and
has to be typed back before the action goes through. Entering a view always
replaces its code. This slows down careless or scripted submissions; it is not
a security control since the code is displayed in the same response.
"""

import secrets
import threading
from typing import Dict

from config import VERIFICATION_CODE_LENGTH
from errors import ValidationError

SUBMIT = "submit"
ADMIN_LOGIN = "admin_login"
VIEWS = (SUBMIT, ADMIN_LOGIN)

_LOW = 10 ** (VERIFICATION_CODE_LENGTH - 1)
_SPAN = 10 ** VERIFICATION_CODE_LENGTH - _LOW


def generate_code() -> str:
    """Uniformly random code in [1000, 9999]."""
    return str(_LOW + secrets.randbelow(_SPAN))


class VerificationGate:
    def __init__(self):
        self._codes: Dict[str, str] = {}
        self._lock = threading.Lock()

    def enter_view(self, view: str) -> str:
        """Issue a fresh code for `view`, discarding any earlier one."""
        if view not in VIEWS:
            raise ValidationError(f"Unknown view: {view}")
        code = generate_code()
        with self._lock:
            self._codes[view] = code
        return code

    def current(self, view: str):
        with self._lock:
            return self._codes.get(view)

    def verify(self, view: str, entered: str) -> None:
        """Raise ValidationError unless `entered` equals the code on display.

        A mismatch leaves the displayed code unchanged.
        """
        entered = (entered or "").strip()
        expected = self.current(view)
        if (
            not entered
            or len(entered) != VERIFICATION_CODE_LENGTH
            or not entered.isdigit()
            or expected is None
            or entered != expected
        ):
            raise ValidationError(f"Please enter the correct {VERIFICATION_CODE_LENGTH}-digit verification code.")
