"""
Admin authentication against the admin_user collection.

Every account that can sign in is an administrator. Passwords are kept as
salted PBKDF2-SHA256 hashes.
"""

import hashlib
import hmac
import logging
import secrets

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document
from errors import AuthError, StoreError, ValidationError
from schemas import AdminUser

logger = logging.getLogger(__name__)

ADMIN_USERS = "admin_user"
PBKDF2_ITERATIONS = 240_000


def hash_password(password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), PBKDF2_ITERATIONS)
    return digest.hex()


class AuthService:
    def __init__(self, db: Database):
        self.db = db
        try:
            db[ADMIN_USERS].create_index("email", unique=True)
        except PyMongoError as e:
            raise StoreError(f"Could not prepare admin accounts: {e}")

    def register(self, email: str, password: str) -> AdminUser:
        """Provision an admin account."""
        email = (email or "").strip().lower()
        if not email or not password:
            raise ValidationError("Email and password are required")
        salt = secrets.token_hex(16)
        try:
            user_id = create_document(
                ADMIN_USERS,
                {"email": email, "salt": salt, "password_hash": hash_password(password, salt)},
                database=self.db,
            )
        except DuplicateKeyError:
            raise ValidationError(f"An account for {email} already exists")
        except PyMongoError as e:
            raise StoreError(f"Failed to create account: {e}")
        return AdminUser(id=user_id, email=email)

    def ensure_admin(self, email: str, password: str) -> AdminUser:
        """Create the account unless it exists. Used to seed an admin at startup."""
        email = (email or "").strip().lower()
        try:
            doc = self.db[ADMIN_USERS].find_one({"email": email})
        except PyMongoError as e:
            raise StoreError(f"Failed to look up account: {e}")
        if doc:
            return AdminUser(id=str(doc["_id"]), email=doc["email"])
        user = self.register(email, password)
        logger.info("Provisioned admin account %s", user.email)
        return user

    def sign_in(self, email: str, password: str) -> AdminUser:
        email = (email or "").strip().lower()
        try:
            doc = self.db[ADMIN_USERS].find_one({"email": email})
        except PyMongoError as e:
            raise StoreError(f"Login failed: {e}")
        if not doc or not hmac.compare_digest(hash_password(password or "", doc["salt"]), doc["password_hash"]):
            logger.warning("Failed sign-in for %s", email)
            raise AuthError("Invalid login credentials")
        return AdminUser(id=str(doc["_id"]), email=doc["email"])
