import os
from datetime import tzinfo
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from tzlocal import get_localzone

# Load environment variables from a .env file in the working directory or its parents
load_dotenv()

# Database configuration
MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017/?replicaSet=rs0")
DB_NAME = os.getenv("DB_NAME", "expense_control")
EXPENSES_COLLECTION = os.getenv("EXPENSES_COLLECTION", "expenses")

# IANA zone used for monthly buckets; unset means the host's local time
LOCAL_TIMEZONE = os.getenv("LOCAL_TIMEZONE")

# When true, updates and deletes only touch the signed-in user's expenses
VERIFY_OWNERSHIP = os.getenv("VERIFY_OWNERSHIP", "false").lower() == "true"

WRITE_RATE_LIMIT = os.getenv("WRITE_RATE_LIMIT", "30/minute")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def get_timezone() -> tzinfo:
    if LOCAL_TIMEZONE:
        return ZoneInfo(LOCAL_TIMEZONE)
    return get_localzone()
