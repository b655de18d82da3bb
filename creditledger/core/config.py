# creditledger/core/config.py
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env", override=False)

def env(*names: str, default: Optional[str] = None) -> str:
    for n in names:
        v = os.environ.get(n)
        if v is not None and str(v).strip() != "":
            return v
    if default is not None:
        return default
    raise KeyError(f"Missing required env var. Tried: {', '.join(names)}")


def env_flag(name: str, default: str = "false") -> bool:
    return env(name, default=default).lower() in {"1", "true", "yes"}

# ================== JWT ==================

JWT_SECRET = os.environ.get("JWT_SECRET", "default_secret_key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

# ================== INTERNAL CALLERS ==================

# Shared secret for the generation subsystem and admin tooling.
INTERNAL_API_TOKEN = os.environ.get("INTERNAL_API_TOKEN", "").strip()

# HMAC secret for billing-period / purchase notifications.
WEBHOOK_SECRET = env("WEBHOOK_SECRET", "SHOPIFY_API_SECRET", default="").strip()

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

# ================== PAYMENTS ==================

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
TEST_MODE = env_flag("TEST_MODE")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# ================== LEDGER POLICY ==================

TRIAL_CREDITS = int(env("TRIAL_CREDITS", default="100"))
TRIAL_DAYS = int(env("TRIAL_DAYS", default="30"))

# $0.20 per unit once every bucket is empty, capped at $50 per period
OVERAGE_UNIT_CENTS = int(env("OVERAGE_UNIT_CENTS", default="20"))
OVERAGE_CAPPED_AMOUNT_CENTS = int(env("OVERAGE_CAPPED_AMOUNT_CENTS", default="5000"))
PAYMENT_CHECK_TIMEOUT_SECONDS = float(env("PAYMENT_CHECK_TIMEOUT_SECONDS", default="5"))

# Cap usage at or above this share of the period cap is reported as approaching
OVERAGE_CAP_WARNING_PERCENT = int(env("OVERAGE_CAP_WARNING_PERCENT", default="90"))
# Annual plans settle accrued overage monthly; smaller totals roll into the next month
OVERAGE_MIN_SETTLEMENT_CENTS = int(env("OVERAGE_MIN_SETTLEMENT_CENTS", default="50"))

IDEMPOTENCY_RETENTION_DAYS = int(env("IDEMPOTENCY_RETENTION_DAYS", default="30"))
LEDGER_MAX_RETRIES = int(env("LEDGER_MAX_RETRIES", default="5"))

# ================== DATABASE ==================
# SQLite for local development and tests, MySQL in production

DATABASE_URL = os.environ.get("DATABASE_URL", "")

def get_database_url() -> str:
    """Get database URL - supports SQLite or MySQL."""
    if DATABASE_URL:
        return DATABASE_URL

    mysql_host = os.environ.get("MYSQL_HOST")
    if mysql_host:
        mysql_port = int(os.environ.get("MYSQL_PORT", "3306"))
        mysql_user = os.environ.get("MYSQL_USER", "root")
        mysql_password = os.environ.get("MYSQL_PASSWORD", "")
        mysql_db = os.environ.get("MYSQL_DB", "creditledger")
        return f"mysql+aiomysql://{mysql_user}:{mysql_password}@{mysql_host}:{mysql_port}/{mysql_db}?charset=utf8mb4"

    db_path = ROOT_DIR / "creditledger.db"
    return f"sqlite+aiosqlite:///{db_path}"
