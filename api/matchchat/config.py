import os

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/matchchat")
JWT_SECRET = os.getenv("JWT_SECRET", "")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
DEV_MODE = os.getenv("DEV_MODE", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

MATCH_EXPIRY_DAYS = int(os.getenv("MATCH_EXPIRY_DAYS", "7"))
LEVEL2_MESSAGE_THRESHOLD = int(os.getenv("LEVEL2_MESSAGE_THRESHOLD", "5"))
LEVEL3_MESSAGE_THRESHOLD = int(os.getenv("LEVEL3_MESSAGE_THRESHOLD", "10"))

MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "2000"))
MESSAGES_PAGE_DEFAULT = int(os.getenv("MESSAGES_PAGE_DEFAULT", "50"))
MESSAGES_PAGE_MAX = int(os.getenv("MESSAGES_PAGE_MAX", "100"))
UNSEND_WINDOW_HOURS = int(os.getenv("UNSEND_WINDOW_HOURS", "12"))

# 0 disables the background sweep; the admin trigger still works.
EXPIRY_SWEEP_INTERVAL_SECONDS = int(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "3600"))

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]
