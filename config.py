"""
Runtime configuration for the Repair Desk API.

Values come from the environment; a local .env file is loaded first when present.
"""

import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# How many times a submission recomputes its ticket number after a collision
MAX_ALLOCATION_ATTEMPTS = int(os.getenv("MAX_ALLOCATION_ATTEMPTS", 5))

VERIFICATION_CODE_LENGTH = 4

# Sessions not seen for this many seconds are closed and their subscriptions released
SESSION_IDLE_TIMEOUT = int(os.getenv("SESSION_IDLE_TIMEOUT", 1800))

# Admin account created at startup when it does not exist yet
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
