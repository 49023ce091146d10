import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"true", "1", "yes"}


CLINIC_ENV = os.getenv("CLINIC_ENV", "development")
IS_PRODUCTION = CLINIC_ENV.lower() == "production"
DB_FILE_NAME = os.getenv("DB_FILE_NAME", "./clinic.db")
DATA_DIR_NAME = os.getenv("CLINIC_DATA_DIR_NAME", "ClinicSystem")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3030")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin-dev-password")

# Login sessions
SESSION_SECRET = os.getenv("SESSION_SECRET", "")
SESSION_TTL_HOURS = float(os.getenv("SESSION_TTL_HOURS", "12"))

# Backups
BACKUP_ENABLED = _flag("BACKUP_ENABLED", "true")
BACKUP_INTERVAL_HOURS = float(os.getenv("BACKUP_INTERVAL_HOURS", "24"))
BACKUP_MAX_BACKUPS = max(1, int(os.getenv("BACKUP_MAX_BACKUPS", "10")))
BACKUP_DIR = os.getenv("BACKUP_DIR", "")
BACKUP_ON_SHUTDOWN = _flag("BACKUP_ON_SHUTDOWN", "true")
BACKUP_COMPRESS = _flag("BACKUP_COMPRESS", "false")
ENABLE_BACKUP_SCHEDULER = _flag("ENABLE_BACKUP_SCHEDULER", "true")

# Demo branches
DEMO_ENABLED = _flag("DEMO_ENABLED", "false")
DEMO_JWT_SECRET = os.getenv("DEMO_JWT_SECRET", "")
DEMO_SESSION_TTL_MINUTES = int(os.getenv("DEMO_SESSION_TTL_MINUTES", "30"))
DEMO_TOKEN_STRICT = _flag("DEMO_TOKEN_STRICT", "false")
DEMO_RATE_LIMIT = int(os.getenv("DEMO_RATE_LIMIT", "5"))
DEMO_RATE_WINDOW_SECONDS = int(os.getenv("DEMO_RATE_WINDOW_SECONDS", "60"))
DEMO_DB_TOKEN_EXPIRATION = os.getenv("DEMO_DB_TOKEN_EXPIRATION", "1d")

# Turso platform API
TURSO_ORG = os.getenv("TURSO_ORG", "")
TURSO_AUTH_TOKEN = os.getenv("TURSO_AUTH_TOKEN", "")
TURSO_API_URL = os.getenv("TURSO_API_URL", "https://api.turso.tech/v1")
TURSO_GROUP = os.getenv("TURSO_GROUP", "default")

# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "")
