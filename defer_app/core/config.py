# defer_app/core/config.py
import os
from dotenv import load_dotenv

load_dotenv()

# ---- Postgres ---------------------------------------------------------------
# DATABASE_URL wins when set (local docker); otherwise built from the RDS parts
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "defer")
DB_USER = os.getenv("DB_USER", "defer")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_SSLMODE = os.getenv("DB_SSLMODE", "require")

DATABASE_DSN = DATABASE_URL or (
    f"host={DB_HOST} port={DB_PORT} dbname={DB_NAME} user={DB_USER} "
    f"password={DB_PASSWORD} sslmode={DB_SSLMODE}"
)
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "5"))

# ---- Admin / services -------------------------------------------------------
ADMIN_KEY = os.getenv("ADMIN_KEY")
JS_DEFER_SERVICE_URL = os.getenv("JS_DEFER_SERVICE_URL", "http://localhost:3002").rstrip("/")

# ---- Loader release pacing (ms) ---------------------------------------------
DEFER_STAGGER_MS = int(os.getenv("DEFER_STAGGER_MS", "50"))
DEFER_GRACE_MS = int(os.getenv("DEFER_GRACE_MS", "3000"))

BUILD_ID = os.getenv("BUILD_ID", "dev")
