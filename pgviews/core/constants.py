"""
Centralized constants for the pgviews service.

Every value reads from an environment variable with a default, so a bare
checkout runs without any configuration.
"""
import os
from datetime import datetime, timezone

# --- API Version ---
API_VERSION = os.getenv("PGVIEWS_API_VERSION", "1.0.0")

# --- Metadata store ---
# Empty means the in-memory store is used.
DATABASE_URL = os.getenv("PGVIEWS_DATABASE_URL", "")

# --- Connections file (YAML) ---
CONNECTIONS_FILE = os.getenv("PGVIEWS_CONNECTIONS_FILE", "config/connections.yaml")

# --- Preview limits ---
DEFAULT_PREVIEW_ROWS = int(os.getenv("PGVIEWS_DEFAULT_PREVIEW_ROWS", "100"))
MAX_PREVIEW_ROWS = int(os.getenv("PGVIEWS_MAX_PREVIEW_ROWS", "1000"))

# --- Timeouts (seconds) ---
PREVIEW_TIMEOUT = float(os.getenv("PGVIEWS_PREVIEW_TIMEOUT", "30.0"))
ESTIMATE_TIMEOUT = float(os.getenv("PGVIEWS_ESTIMATE_TIMEOUT", "10.0"))
DB_CONNECT_TIMEOUT = int(os.getenv("PGVIEWS_DB_CONNECT_TIMEOUT", "10"))

# --- Connection Pool defaults (overridden per connection) ---
POOL_MIN_CONN = int(os.getenv("PGVIEWS_POOL_MIN_CONN", "1"))
POOL_MAX_CONN = int(os.getenv("PGVIEWS_POOL_MAX_CONN", "5"))
POOL_IDLE_TIMEOUT_MS = int(os.getenv("PGVIEWS_POOL_IDLE_TIMEOUT_MS", "30000"))
POOL_CONNECT_RETRIES = int(os.getenv("PGVIEWS_POOL_CONNECT_RETRIES", "3"))

# --- Versioning ---
INITIAL_VERSION = "1.0"

# --- Schema catalog cache (seconds) ---
CATALOG_CACHE_TTL = float(os.getenv("PGVIEWS_CATALOG_CACHE_TTL", "60.0"))

# --- Estimate performance after every save (best effort) ---
ESTIMATE_ON_SAVE = os.getenv("PGVIEWS_ESTIMATE_ON_SAVE", "false").lower() in ("1", "true", "yes")

# --- Dialect ---
DEFAULT_DIALECT = os.getenv("PGVIEWS_DEFAULT_DIALECT", "postgresql")

# --- CORS ---
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
