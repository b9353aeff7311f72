"""Environment configuration and logging setup."""
import logging
import os

# Use PostgreSQL in production (from DATABASE_URL env var), SQLite locally
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./farm_safety.db")

# Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Optional HMAC key; when set every audit entry carries a signature
AUDIT_SIGNING_KEY = os.getenv("AUDIT_SIGNING_KEY") or None

# A reading older than this does not count as "has sensor reading"
SENSOR_MAX_AGE_MINUTES = int(os.getenv("SENSOR_MAX_AGE_MINUTES", "60"))

DEFAULT_AUTOMATION_LEVEL = int(os.getenv("DEFAULT_AUTOMATION_LEVEL", "2"))

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging once for the service process."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
