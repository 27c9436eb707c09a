import os
import re
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "library")

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_IN = os.getenv("JWT_EXPIRES_IN", "7d")

RABBIT_MQ_CONN_STR = os.getenv("RABBIT_MQ_CONN_STR")
NOTIFICATION_QUEUE = os.getenv("NOTIFICATION_QUEUE", "notifications")

PORT = int(os.getenv("PORT", "3000"))

_UNITS = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}


def parse_expiry(value: str) -> timedelta:
    """Turn ``7d``, ``12h``, ``30m``, ``45s`` or a bare number of seconds into a timedelta."""
    match = re.fullmatch(r"\s*(\d+)\s*([dhms]?)\s*", value or "")
    if not match:
        raise ValueError(f"Invalid expiry value: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_UNITS[unit or "s"]: int(amount)})
