import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./planner.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "30"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "300"))
DB_LOG_SLOW_QUERIES = os.getenv("DB_LOG_SLOW_QUERIES", "true").lower() == "true"
DB_SLOW_QUERY_THRESHOLD = float(os.getenv("DB_SLOW_QUERY_THRESHOLD", "1.0"))

# Slot capacity: assignments plus approved leave per (employee, date, slot)
SLOT_CAPACITY = int(os.getenv("SLOT_CAPACITY", "4"))

# Leave allocation defaults, created lazily per (employee, year)
DEFAULT_ANNUAL_LEAVE_DAYS = float(os.getenv("DEFAULT_ANNUAL_LEAVE_DAYS", "25"))
DEFAULT_SICK_DAYS = float(os.getenv("DEFAULT_SICK_DAYS", "10"))
DEFAULT_OTHER_LEAVE_DAYS = float(os.getenv("DEFAULT_OTHER_LEAVE_DAYS", "5"))
HOURS_PER_DAY = float(os.getenv("HOURS_PER_DAY", "8"))

# Change notifier: "memory" for a single process, "redis" for multi-worker fan-out
CHANGE_NOTIFIER_BACKEND = os.getenv("CHANGE_NOTIFIER_BACKEND", "memory").lower()
CHANGE_CHANNEL = os.getenv("CHANGE_CHANNEL", "planner:changes")
SSE_HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", "30"))
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "256"))

# Frontend origins allowed to call the API
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")
